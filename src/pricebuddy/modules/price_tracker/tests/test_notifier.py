"""Tests for price change notifications."""

import json
import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from pricebuddy.core.config import DEFAULT_NOTIFICATION_TEXT
from pricebuddy.modules.price_tracker.errors import NotificationDeliveryError
from pricebuddy.modules.price_tracker.notifier import (
    ChannelSettings,
    HttpTransport,
    LocalCommandTransport,
    NotificationDispatcher,
    PriceChange,
    build_summary,
    evolution_glyph,
    make_url,
    render_template,
)


def make_change(**overrides: object) -> PriceChange:
    values: dict[str, object] = {
        "product_title": "Acme Widget",
        "url": "https://shop.example.com/widget",
        "new_price": 9.5,
        "previous_price": 10.0,
        "min_price": 9.5,
        "max_price": 12.0,
        "price_count": 3,
        "locale": "en_US",
        "currency": "USD",
    }
    values.update(overrides)
    return PriceChange(**values)  # type: ignore[arg-type]


class TestChannelSettings:
    """Merging recipient overrides onto the global defaults."""

    def test_override_wins_field_by_field(self) -> None:
        settings = ChannelSettings.resolve(
            {"url": "http://apprise:8000", "token": "global", "tags": "ops"},
            {"token": "mine", "tags": ""},
        )

        assert settings == ChannelSettings(url="http://apprise:8000", token="mine", tags="ops")

    def test_tags_default_to_all(self) -> None:
        settings = ChannelSettings.resolve({"url": "http://apprise:8000"}, {})

        assert settings.tags == "all"
        assert settings.token == ""
        assert not settings.is_local

    def test_local_token(self) -> None:
        settings = ChannelSettings.resolve({"url": "mailto://me@example.com", "token": "local"})
        assert settings.is_local

    def test_missing_url_raises(self) -> None:
        with pytest.raises(NotificationDeliveryError):
            ChannelSettings.resolve({"url": None}, {"token": "abc"})


def test_make_url() -> None:
    assert make_url("http://apprise:8000/", "abc") == "http://apprise:8000/notify/abc"
    assert make_url("http://apprise:8000/notify", "") == "http://apprise:8000/notify"


def test_make_url_keeps_existing_notify_endpoint() -> None:
    assert make_url("http://apprise:8000/notify/abc", "abc") == "http://apprise:8000/notify/abc"
    assert make_url("http://apprise:8000/notify/other/", "abc") == "http://apprise:8000/notify/other/"


def test_render_template_keeps_unknown_placeholders() -> None:
    text = render_template("{newPrice} at {url} {unknown}", {"newPrice": "$1.00", "url": "u"})
    assert text == "$1.00 at u {unknown}"


@pytest.mark.parametrize(
    ("new", "previous", "glyph"),
    [
        ("$9.50", "$10.00", "📈"),  # formatted strings compare lexically
        ("$12.00", "$10.00", "📈"),
        ("$10.00", "$12.00", "📉"),
        ("$10.00", "$10.00", "➖"),
    ],
)
def test_evolution_glyph(new: str, previous: str, glyph: str) -> None:
    assert evolution_glyph(new, previous) == glyph


class TestBuildSummary:
    def test_change_uses_template(self) -> None:
        summary = build_summary(make_change(new_price=8.0), DEFAULT_NOTIFICATION_TEXT)

        assert summary == (
            "📈 price changed from $10.00 to $8.00.\n\n"
            "Min: $9.50 Max: $12.00.\n\n"
            "https://shop.example.com/widget"
        )

    def test_single_price_is_tracking_message(self) -> None:
        summary = build_summary(
            make_change(price_count=1, previous_price=None), DEFAULT_NOTIFICATION_TEXT
        )

        assert summary == "Tracking new price $9.50.\n\nhttps://shop.example.com/widget"

    def test_without_new_price(self) -> None:
        summary = build_summary(make_change(new_price=None), DEFAULT_NOTIFICATION_TEXT)
        assert summary == "Price updated.\n\nhttps://shop.example.com/widget"


class TestLocalCommandTransport:
    @pytest.mark.asyncio
    async def test_runs_apprise_with_arguments(self) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="sent\n")
        settings = ChannelSettings(url="mailto://me@example.com", token="local", tags="alerts")

        with patch(
            "pricebuddy.modules.price_tracker.notifier.subprocess.run", return_value=completed
        ) as run:
            output = await LocalCommandTransport().send(settings, "Title", "Body")

        assert output == "sent"
        args = run.call_args.args[0]
        assert args == [
            "apprise", "mailto://me@example.com", "-t", "Title", "-b", "Body", "-g", "alerts"
        ]
        assert run.call_args.kwargs["stderr"] == subprocess.STDOUT

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises_with_output(self) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="bad url\n")
        settings = ChannelSettings(url="bogus://", token="local")

        with patch(
            "pricebuddy.modules.price_tracker.notifier.subprocess.run", return_value=completed
        ):
            with pytest.raises(NotificationDeliveryError) as exc_info:
                await LocalCommandTransport().send(settings, "Title", "Body")

        assert exc_info.value.output == "bad url"

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self) -> None:
        settings = ChannelSettings(url="mailto://me@example.com", token="local")

        with patch(
            "pricebuddy.modules.price_tracker.notifier.subprocess.run",
            side_effect=FileNotFoundError("apprise"),
        ):
            with pytest.raises(NotificationDeliveryError):
                await LocalCommandTransport().send(settings, "Title", "Body")


class TestHttpTransport:
    @pytest.mark.asyncio
    async def test_posts_payload_to_notify_endpoint(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="ok")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpTransport(client=client)
            settings = ChannelSettings(url="http://apprise:8000", token="abc", tags="all")
            await transport.send(settings, "Title", "Body")

        assert str(requests[0].url) == "http://apprise:8000/notify/abc"
        assert json.loads(requests[0].content) == {"title": "Title", "body": "Body", "tags": "all"}

    @pytest.mark.asyncio
    async def test_configured_notify_endpoint_is_not_extended(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="ok")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            settings = ChannelSettings(url="http://apprise:8000/notify/abc", token="abc")
            await HttpTransport(client=client).send(settings, "Title", "Body")

        assert str(requests[0].url) == "http://apprise:8000/notify/abc"

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpTransport(client=client)
            with pytest.raises(NotificationDeliveryError) as exc_info:
                await transport.send(ChannelSettings(url="http://apprise:8000"), "T", "B")

        assert exc_info.value.output == "boom"

    @pytest.mark.asyncio
    async def test_connection_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpTransport(client=client)
            with pytest.raises(NotificationDeliveryError):
                await transport.send(ChannelSettings(url="http://apprise:8000"), "T", "B")


class TestNotificationDispatcher:
    """Transport selection and rendering."""

    def make_dispatcher(self) -> tuple[NotificationDispatcher, MagicMock, MagicMock]:
        local = MagicMock()
        local.send = AsyncMock(return_value="local-ok")
        http = MagicMock()
        http.send = AsyncMock(return_value="http-ok")
        dispatcher = NotificationDispatcher(
            defaults={"url": "http://apprise:8000", "token": "abc", "tags": None},
            template=DEFAULT_NOTIFICATION_TEXT,
            local_transport=local,
            http_transport=http,
        )
        return dispatcher, local, http

    @pytest.mark.asyncio
    async def test_dispatch_uses_http_transport(self) -> None:
        dispatcher, local, http = self.make_dispatcher()

        output = await dispatcher.dispatch(make_change(), dispatcher.channel_settings())

        assert output == "http-ok"
        settings, title, body = http.send.call_args.args
        assert settings.tags == "all"
        assert title == "Acme Widget"
        assert "price changed from $10.00 to $9.50" in body
        local.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatch_uses_local_transport_for_local_token(self) -> None:
        dispatcher, local, http = self.make_dispatcher()
        settings = dispatcher.channel_settings({"url": "mailto://me@example.com", "token": "local"})

        output = await dispatcher.dispatch(make_change(), settings)

        assert output == "local-ok"
        http.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivery_errors_propagate(self) -> None:
        dispatcher, _, http = self.make_dispatcher()
        http.send.side_effect = NotificationDeliveryError("down")

        with pytest.raises(NotificationDeliveryError):
            await dispatcher.dispatch(make_change(), dispatcher.channel_settings())
        assert http.send.await_count == 1

    @pytest.mark.asyncio
    async def test_send_test_renders_custom_text(self) -> None:
        dispatcher, _, http = self.make_dispatcher()

        await dispatcher.send_test(text="Now {newPrice} (was {previousPrice})")

        _, title, body = http.send.call_args.args
        assert title == "Test notification"
        assert body == "Now $15.00 (was $20.00)"

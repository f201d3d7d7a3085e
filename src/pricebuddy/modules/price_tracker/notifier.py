"""Price change notifications via Apprise.

Two transports: the local ``apprise`` command when the channel token is
``local``, otherwise an HTTP POST to an Apprise API server.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from pricebuddy.core.config import get_settings
from pricebuddy.modules.price_tracker.currency import to_string
from pricebuddy.modules.price_tracker.errors import NotificationDeliveryError

logger = logging.getLogger(__name__)

CHANNEL = "apprise"
LOCAL_TOKEN = "local"
DEFAULT_TAGS = "all"

_TEMPLATE_VAR_RE = re.compile(r"\{(\w+)\}")
_NOTIFY_PATH_RE = re.compile(r"/notify/[^/?#]+/?$")


@dataclass(frozen=True)
class ChannelSettings:
    url: str
    token: str = ""
    tags: str = DEFAULT_TAGS

    @property
    def is_local(self) -> bool:
        return self.token == LOCAL_TOKEN

    @classmethod
    def resolve(
        cls,
        defaults: dict[str, Any] | None,
        overrides: dict[str, Any] | None = None,
    ) -> ChannelSettings:
        """Merge a recipient's overrides onto the global defaults.

        Non-empty override values win; ``tags`` falls back to ``"all"``.

        Raises:
            NotificationDeliveryError: No Apprise URL is configured.
        """
        defaults = defaults or {}
        overrides = overrides or {}

        def pick(key: str) -> str:
            return str(overrides.get(key) or defaults.get(key) or "")

        url = pick("url")
        if not url:
            raise NotificationDeliveryError("Apprise URL is not configured")
        return cls(url=url, token=pick("token"), tags=pick("tags") or DEFAULT_TAGS)


def make_url(api_url: str, token: str) -> str:
    """Apprise API endpoint for a config token.

    A URL that already points at a ``/notify/<key>`` endpoint is used as is.
    """
    if not token or _NOTIFY_PATH_RE.search(api_url):
        return api_url
    return f"{api_url.rstrip('/')}/notify/{token}"


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute ``{name}`` placeholders; unknown names are left as is."""

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return _TEMPLATE_VAR_RE.sub(replace, template)


def evolution_glyph(new_price: str | None, previous_price: str | None) -> str:
    # Compares the formatted strings, not the amounts.
    new_price = new_price or ""
    previous_price = previous_price or ""
    if new_price > previous_price:
        return "📈"
    if new_price < previous_price:
        return "📉"
    return "➖"


@dataclass(frozen=True)
class PriceChange:
    """What a price alert is about, decoupled from the ORM."""

    product_title: str
    url: str
    new_price: float | None
    previous_price: float | None = None
    min_price: float | None = None
    max_price: float | None = None
    price_count: int = 1
    locale: str | None = None
    currency: str | None = None

    def format(self, value: float | None) -> str | None:
        if value is None:
            return None
        return to_string(value, locale=self.locale, currency=self.currency)


def build_summary(change: PriceChange, template: str) -> str:
    new_price = change.format(change.new_price)
    previous_price = change.format(change.previous_price)

    if change.price_count > 1 and new_price and previous_price:
        return render_template(
            template,
            {
                "evolution": evolution_glyph(new_price, previous_price),
                "previousPrice": previous_price,
                "newPrice": new_price,
                "min": change.format(change.min_price) or "",
                "max": change.format(change.max_price) or "",
                "url": change.url,
            },
        )
    if new_price:
        return f"Tracking new price {new_price}.\n\n{change.url}"
    return f"Price updated.\n\n{change.url}"


class Transport(Protocol):
    async def send(self, settings: ChannelSettings, title: str, body: str) -> str: ...


class LocalCommandTransport:
    """Deliver through the ``apprise`` command line tool."""

    def __init__(self, command: str = "apprise", timeout: float = 60.0) -> None:
        self.command = command
        self.timeout = timeout

    async def send(self, settings: ChannelSettings, title: str, body: str) -> str:
        args = [self.command, settings.url, "-t", title, "-b", body, "-g", settings.tags]
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise NotificationDeliveryError(f"Local Apprise notification failed: {e}") from e

        output = (result.stdout or "").strip()
        if result.returncode != 0:
            raise NotificationDeliveryError(
                f"Local Apprise notification failed with exit code {result.returncode}",
                output=output,
            )
        return output


class HttpTransport:
    """POST ``{title, body, tags}`` to an Apprise API server."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client
        self.timeout = timeout

    async def send(self, settings: ChannelSettings, title: str, body: str) -> str:
        target = make_url(settings.url, settings.token)
        payload = {"title": title, "body": body, "tags": settings.tags}
        try:
            if self._client is not None:
                response = await self._client.post(target, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(target, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryError(
                f"Apprise API returned {e.response.status_code}",
                output=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Apprise API request failed: {e}") from e
        return response.text


class NotificationDispatcher:
    """Render price changes and deliver them to a recipient's channel."""

    def __init__(
        self,
        defaults: dict[str, Any] | None = None,
        template: str | None = None,
        local_transport: Transport | None = None,
        http_transport: Transport | None = None,
    ) -> None:
        settings = get_settings()
        self.defaults = defaults if defaults is not None else settings.apprise_settings()
        self.template = template or settings.notification_text
        self.local_transport = local_transport or LocalCommandTransport()
        self.http_transport = http_transport or HttpTransport()

    def channel_settings(self, overrides: dict[str, Any] | None = None) -> ChannelSettings:
        return ChannelSettings.resolve(self.defaults, overrides)

    async def deliver(self, settings: ChannelSettings, title: str, body: str) -> str:
        """Send through the transport the settings select.

        Raises:
            NotificationDeliveryError: The transport failed. Never retried.
        """
        transport = self.local_transport if settings.is_local else self.http_transport
        output = await transport.send(settings, title, body)
        logger.info(
            "Notification sent",
            extra={"title": title, "local": settings.is_local, "tags": settings.tags},
        )
        return output

    async def dispatch(self, change: PriceChange, settings: ChannelSettings) -> str:
        return await self.deliver(settings, change.product_title, build_summary(change, self.template))

    async def send_test(
        self,
        overrides: dict[str, Any] | None = None,
        text: str | None = None,
    ) -> str:
        """Send a sample price change rendered with ``text`` (or the configured template)."""
        settings = self.channel_settings(overrides)
        body = render_template(
            text or self.template,
            {
                "evolution": "📉",
                "previousPrice": "$20.00",
                "newPrice": "$15.00",
                "min": "$10.00",
                "max": "$30.00",
                "url": "https://example.com/product",
            },
        )
        return await self.deliver(settings, "Test notification", body)


__all__ = [
    "ChannelSettings",
    "HttpTransport",
    "LocalCommandTransport",
    "NotificationDispatcher",
    "PriceChange",
    "build_summary",
    "evolution_glyph",
    "make_url",
    "render_template",
]

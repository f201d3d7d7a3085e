"""Pytest fixtures for price tracker tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pricebuddy.core.db.models import Base
from pricebuddy.core.protocols import FetchError
from pricebuddy.modules.price_tracker.models import Product, Store, StoreDomain, Url, User


class FakeClock:
    """Naive UTC clock that tests move forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeFetcher:
    """In-memory fetcher returning canned documents per url."""

    def __init__(self, pages: dict[str, str] | None = None) -> None:
        self.pages = dict(pages or {})
        self.calls: list[dict[str, Any]] = []
        self.failures: dict[str, int] = {}

    async def fetch(
        self,
        url: str,
        *,
        service: str = "http",
        service_settings: str = "",
        timeout: float = 30.0,
    ) -> str:
        self.calls.append({"url": url, "service": service, "timeout": timeout})
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise FetchError(f"Failed to fetch {url}")
        if url not in self.pages:
            raise FetchError(f"Failed to fetch {url}: 404")
        return self.pages[url]

    async def close(self) -> None:
        return None


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over an in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def seed(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Insert a user, a store, a product and a url; returns their ids."""

    async def _seed(
        email: str = "owner@example.com",
        store_strategy: dict[str, Any] | None = None,
        page_url: str = "https://shop.example.com/widget",
        store_slug: str = "shop-example-com",
        notification_settings: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with session_factory() as session:
            user = User(email=email, name="Owner", notification_settings=notification_settings or {})
            store = Store(
                name="Shop.example.com",
                slug=store_slug,
                scrape_strategy=store_strategy
                or {
                    "title": {"type": "selector", "value": "h1.product-title"},
                    "price": {"type": "selector", "value": "span.price"},
                },
                locale="en_US",
                currency="USD",
            )
            store.domains = [
                StoreDomain(domain="shop.example.com", position=0),
                StoreDomain(domain="www.shop.example.com", position=1),
            ]
            session.add_all([user, store])
            await session.flush()

            product = Product(title="Acme Widget", user_id=user.id)
            session.add(product)
            await session.flush()

            url = Url(url=page_url, product_id=product.id, store_id=store.id)
            session.add(url)
            await session.commit()

            return {
                "user_id": user.id,
                "store_id": store.id,
                "product_id": product.id,
                "url_id": url.id,
                "url": page_url,
            }

    return _seed

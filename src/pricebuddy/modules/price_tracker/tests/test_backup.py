"""Tests for backup export and import."""

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pricebuddy.core.db.models import Base
from pricebuddy.modules.price_tracker.backup import EXPORT_VERSION, DatabaseBackupService
from pricebuddy.modules.price_tracker.errors import ImportValidationError
from pricebuddy.modules.price_tracker.models import Price, Product, Store, User
from pricebuddy.modules.price_tracker.service import PriceTrackerService


@pytest_asyncio.fixture
async def target_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A second, empty database to restore into."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def payload(session_factory: Any, seed: Any, clock: Any) -> dict[str, Any]:
    ids = await seed()
    tracker = PriceTrackerService(session_factory, clock=clock)
    await tracker.record_price(ids["url_id"], 12.0)
    clock.advance(days=1)
    await tracker.record_price(ids["url_id"], 10.5)
    return await DatabaseBackupService(session_factory).export()


async def _count(factory: Any, model: Any) -> int:
    async with factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _add_user(factory: Any, email: str) -> User:
    async with factory() as session:
        user = User(email=email)
        session.add(user)
        await session.commit()
        return user


class TestExport:
    @pytest.mark.asyncio
    async def test_payload_structure(self, payload: dict[str, Any]) -> None:
        assert payload["version"] == EXPORT_VERSION
        assert len(payload["products"]) == 1

        entry = payload["products"][0]
        assert entry["product"]["title"] == "Acme Widget"
        assert entry["user"] == {"email": "owner@example.com"}

        url = entry["urls"][0]
        assert url["url"]["url"] == "https://shop.example.com/widget"
        assert url["store"]["slug"] == "shop-example-com"
        assert url["store"]["domains"] == ["shop.example.com", "www.shop.example.com"]
        assert [p["price"] for p in url["prices"]] == [12.0, 10.5]
        assert url["prices"][0]["created_at"] == "2024-05-01T09:00:00"

    @pytest.mark.asyncio
    async def test_export_json_is_parseable(self, session_factory: Any, seed: Any) -> None:
        await seed()
        text = await DatabaseBackupService(session_factory).export_json()
        assert '"version": 1' in text


class TestImport:
    @pytest.mark.asyncio
    async def test_restores_into_empty_database(
        self, payload: dict[str, Any], target_factory: Any
    ) -> None:
        await _add_user(target_factory, "owner@example.com")

        summary = await DatabaseBackupService(target_factory).import_payload(payload)

        assert summary.products_created == 1
        assert summary.stores_created == 1
        assert summary.urls_created == 1
        assert summary.prices_created == 2
        async with target_factory() as session:
            product = (await session.execute(select(Product))).scalar_one()
            assert product.price_cache["count"] == 2
            assert product.price_cache["min"] == 10.5
            assert product.price_cache["latest"] == 10.5
            store = (await session.execute(select(Store))).scalar_one()
            assert store.domain_names == ["shop.example.com", "www.shop.example.com"]

    @pytest.mark.asyncio
    async def test_reimport_does_not_duplicate_prices(
        self, payload: dict[str, Any], target_factory: Any
    ) -> None:
        await _add_user(target_factory, "owner@example.com")
        service = DatabaseBackupService(target_factory)
        await service.import_payload(payload)

        summary = await service.import_payload(payload)

        assert summary.products_reused == 1
        assert summary.products_created == 0
        assert summary.urls_created == 0
        assert summary.prices_created == 0
        assert summary.prices_skipped == 2
        assert await _count(target_factory, Price) == 2
        assert await _count(target_factory, Product) == 1

    @pytest.mark.asyncio
    async def test_reimport_into_source_is_idempotent(
        self, payload: dict[str, Any], session_factory: Any
    ) -> None:
        summary = await DatabaseBackupService(session_factory).import_payload(payload)

        assert summary.prices_skipped == 2
        assert await _count(session_factory, Price) == 2

    @pytest.mark.asyncio
    async def test_default_user_is_used_for_unknown_email(
        self, payload: dict[str, Any], target_factory: Any
    ) -> None:
        await _add_user(target_factory, "first@example.com")
        fallback = await _add_user(target_factory, "fallback@example.com")

        await DatabaseBackupService(target_factory).import_payload(payload, fallback.id)

        async with target_factory() as session:
            product = (await session.execute(select(Product))).scalar_one()
            assert product.user_id == fallback.id

    @pytest.mark.asyncio
    async def test_existing_store_is_matched_by_name(
        self, payload: dict[str, Any], target_factory: Any
    ) -> None:
        await _add_user(target_factory, "owner@example.com")
        async with target_factory() as session:
            session.add(Store(name="Shop.example.com", slug="legacy-slug", scrape_strategy={}))
            await session.commit()

        summary = await DatabaseBackupService(target_factory).import_payload(payload)

        assert summary.stores_created == 0
        async with target_factory() as session:
            store = (await session.execute(select(Store))).scalar_one()
            assert store.slug == "legacy-slug"
            assert store.scrape_strategy["price"] == {"type": "selector", "value": "span.price"}

    @pytest.mark.asyncio
    async def test_missing_user_rolls_back(
        self, payload: dict[str, Any], target_factory: Any
    ) -> None:
        with pytest.raises(ImportValidationError):
            await DatabaseBackupService(target_factory).import_payload(payload)

        assert await _count(target_factory, Product) == 0
        assert await _count(target_factory, Store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [{}, {"products": "nope"}, []])
    async def test_malformed_payload_is_rejected(self, target_factory: Any, bad: Any) -> None:
        with pytest.raises(ImportValidationError):
            await DatabaseBackupService(target_factory).import_payload(bad)

    @pytest.mark.asyncio
    async def test_invalid_json_is_rejected(self, target_factory: Any) -> None:
        with pytest.raises(ImportValidationError):
            await DatabaseBackupService(target_factory).import_json("{not json")

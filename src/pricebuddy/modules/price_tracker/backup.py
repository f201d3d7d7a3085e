"""Versioned JSON export and import of products, urls and their prices.

Payload layout::

    {
        "version": 1,
        "exported_at": "2024-05-01T10:00:00+00:00",
        "products": [
            {
                "product": {"title": ..., "image": ..., "favourite": ..., ...},
                "user": {"email": ...} | null,
                "urls": [
                    {"url": {"url": ...}, "store": {"slug": ..., "name": ...}, "prices": [...]}
                ]
            }
        ]
    }

Import is idempotent: products are matched by owner and title, urls by
product and address, and a price already present for the same url, rounded
value and day is not inserted again.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pricebuddy.core.db.models import _utc_now
from pricebuddy.modules.price_tracker.errors import ImportValidationError
from pricebuddy.modules.price_tracker.models import Price, Product, Store, StoreDomain, Url, User
from pricebuddy.modules.price_tracker.service import refresh_price_cache, slugify, unique_slug

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1

PRODUCT_FIELDS = ("title", "image", "favourite", "created_at", "updated_at")
URL_FIELDS = ("url", "created_at")
PRICE_FIELDS = ("price", "notified", "created_at")
STORE_FIELDS = (
    "name",
    "slug",
    "initials",
    "scrape_strategy",
    "scraper_service",
    "scraper_service_settings",
    "test_url",
    "locale",
    "currency",
    "notes",
    "created_at",
    "updated_at",
)
# Copied onto an existing store matched by slug or name.
STORE_UPDATE_FIELDS = ("name", "initials", "scrape_strategy", "notes")


@dataclass
class ImportSummary:
    products_created: int = 0
    products_reused: int = 0
    stores_created: int = 0
    urls_created: int = 0
    prices_created: int = 0
    prices_skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _columns(obj: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    return {field: _serialize(getattr(obj, field)) for field in fields}


def _parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp into naive UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


class DatabaseBackupService:
    """Export the price ledger to a JSON document and import it back."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def export(self) -> dict[str, Any]:
        """Build the backup payload."""
        async with self.session_factory() as session:
            stmt = (
                select(Product)
                .options(
                    selectinload(Product.user),
                    selectinload(Product.urls).selectinload(Url.store),
                    selectinload(Product.urls).selectinload(Url.prices),
                )
                .order_by(Product.created_at, Product.title)
            )
            products = (await session.execute(stmt)).scalars().all()

            payload = {
                "version": EXPORT_VERSION,
                "exported_at": datetime.now(UTC).isoformat(),
                "products": [self._export_product(product) for product in products],
            }

        logger.info(f"Exported {len(payload['products'])} products")
        return payload

    async def export_json(self) -> str:
        return json.dumps(await self.export(), indent=4, ensure_ascii=False)

    def _export_product(self, product: Product) -> dict[str, Any]:
        return {
            "product": _columns(product, PRODUCT_FIELDS),
            "user": {"email": product.user.email} if product.user else None,
            "urls": [
                {
                    "url": _columns(url, URL_FIELDS),
                    "store": (
                        {**_columns(url.store, STORE_FIELDS), "domains": url.store.domain_names}
                        if url.store
                        else None
                    ),
                    "prices": [
                        {**_columns(price, PRICE_FIELDS), "price": float(price.price)}
                        for price in sorted(url.prices, key=lambda p: p.created_at)
                    ],
                }
                for url in sorted(product.urls, key=lambda u: u.created_at)
            ],
        }

    async def import_payload(
        self,
        payload: Any,
        default_user_id: uuid.UUID | None = None,
    ) -> ImportSummary:
        """Import a backup payload in a single transaction.

        Raises:
            ImportValidationError: The payload is malformed or a product owner
                cannot be resolved. Nothing is written.
        """
        products = payload.get("products") if isinstance(payload, dict) else None
        if not isinstance(products, list):
            raise ImportValidationError("Invalid backup payload: missing products.")

        summary = ImportSummary()
        async with self.session_factory() as session:
            async with session.begin():
                default_user = (
                    await session.get(User, default_user_id) if default_user_id else None
                )
                for entry in products:
                    await self._import_product(session, entry, default_user, summary)

        logger.info("Backup imported", extra=summary.to_dict())
        return summary

    async def import_json(self, text: str, default_user_id: uuid.UUID | None = None) -> ImportSummary:
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise ImportValidationError(f"Invalid backup payload: {e}") from e
        return await self.import_payload(payload, default_user_id)

    async def _import_product(
        self,
        session: AsyncSession,
        entry: Any,
        default_user: User | None,
        summary: ImportSummary,
    ) -> None:
        if not isinstance(entry, dict):
            return
        attributes = entry.get("product")
        if not isinstance(attributes, dict) or not attributes.get("title"):
            return

        user = await self._resolve_user(session, entry.get("user"), default_user)
        if user is None:
            raise ImportValidationError("Unable to resolve user for product import.")

        product = await self._resolve_product(session, attributes, user, summary)

        for url_data in entry.get("urls") or []:
            if not isinstance(url_data, dict):
                continue
            store = await self._resolve_store(session, url_data.get("store"), summary)
            if store is None:
                continue
            url = await self._resolve_url(session, product, store, url_data.get("url"), summary)
            if url is None:
                continue
            await self._import_prices(session, url, url_data.get("prices"), summary)

        await session.flush()
        await refresh_price_cache(session, product.id)

    async def _resolve_user(
        self, session: AsyncSession, user_data: Any, default_user: User | None
    ) -> User | None:
        if isinstance(user_data, dict) and (email := user_data.get("email")):
            result = await session.execute(select(User).where(User.email == email))
            if user := result.scalar_one_or_none():
                return user

        if default_user is not None:
            return default_user

        result = await session.execute(select(User).order_by(User.created_at).limit(1))
        return result.scalar_one_or_none()

    async def _resolve_product(
        self,
        session: AsyncSession,
        attributes: dict[str, Any],
        user: User,
        summary: ImportSummary,
    ) -> Product:
        title = str(attributes["title"])
        result = await session.execute(
            select(Product).where(Product.user_id == user.id, Product.title == title).limit(1)
        )
        if product := result.scalar_one_or_none():
            summary.products_reused += 1
            return product

        product = Product(
            title=title,
            image=attributes.get("image"),
            favourite=bool(attributes.get("favourite", False)),
            user_id=user.id,
        )
        if created_at := _parse_datetime(attributes.get("created_at")):
            product.created_at = created_at
        if updated_at := _parse_datetime(attributes.get("updated_at")):
            product.updated_at = updated_at
        session.add(product)
        await session.flush()
        summary.products_created += 1
        return product

    async def _resolve_store(
        self, session: AsyncSession, store_data: Any, summary: ImportSummary
    ) -> Store | None:
        if not isinstance(store_data, dict):
            return None

        store = None
        slug = store_data.get("slug")
        name = store_data.get("name")

        if slug:
            result = await session.execute(select(Store).where(Store.slug == slug))
            store = result.scalar_one_or_none()
        if store is None and name:
            result = await session.execute(select(Store).where(Store.name == name).limit(1))
            store = result.scalar_one_or_none()

        if store is not None:
            for field in STORE_UPDATE_FIELDS:
                if store_data.get(field) is not None:
                    setattr(store, field, store_data[field])
            return store

        if not name:
            return None

        store = Store(
            name=name,
            slug=slug or await unique_slug(session, slugify(name)),
            initials=store_data.get("initials"),
            scrape_strategy=store_data.get("scrape_strategy") or {},
            scraper_service=store_data.get("scraper_service") or "http",
            scraper_service_settings=store_data.get("scraper_service_settings") or "",
            test_url=store_data.get("test_url"),
            locale=store_data.get("locale"),
            currency=store_data.get("currency"),
            notes=store_data.get("notes"),
        )
        if created_at := _parse_datetime(store_data.get("created_at")):
            store.created_at = created_at
        domains = [str(d).lower() for d in store_data.get("domains") or [] if d]
        store.domains = [
            StoreDomain(domain=domain, position=position)
            for position, domain in enumerate(dict.fromkeys(domains))
        ]
        session.add(store)
        await session.flush()
        summary.stores_created += 1
        return store

    async def _resolve_url(
        self,
        session: AsyncSession,
        product: Product,
        store: Store,
        url_data: Any,
        summary: ImportSummary,
    ) -> Url | None:
        if not isinstance(url_data, dict) or not url_data.get("url"):
            return None

        address = str(url_data["url"])
        result = await session.execute(
            select(Url).where(Url.product_id == product.id, Url.url == address).limit(1)
        )
        if url := result.scalar_one_or_none():
            return url

        url = Url(
            url=address,
            product_id=product.id,
            store_id=store.id,
            created_at=_parse_datetime(url_data.get("created_at")) or _utc_now(),
        )
        session.add(url)
        await session.flush()
        summary.urls_created += 1
        return url

    async def _import_prices(
        self,
        session: AsyncSession,
        url: Url,
        prices: Any,
        summary: ImportSummary,
    ) -> None:
        """Insert prices without triggering alerts, skipping ones already present."""
        if not isinstance(prices, list):
            return

        result = await session.execute(
            select(Price.price, Price.created_at).where(Price.url_id == url.id)
        )
        seen = {(round(float(value), 2), created.date()) for value, created in result.all()}

        for price_data in prices:
            if not isinstance(price_data, dict) or price_data.get("price") is None:
                continue
            try:
                value = round(float(price_data["price"]), 2)
            except (TypeError, ValueError):
                logger.warning("Skipping invalid price in backup", extra={"value": price_data["price"]})
                continue

            created_at = _parse_datetime(price_data.get("created_at")) or _utc_now()
            key = (value, created_at.date())
            if key in seen:
                summary.prices_skipped += 1
                continue

            seen.add(key)
            session.add(
                Price(
                    url_id=url.id,
                    store_id=url.store_id,
                    price=value,
                    notified=bool(price_data.get("notified", False)),
                    created_at=created_at,
                )
            )
            summary.prices_created += 1


__all__ = ["EXPORT_VERSION", "DatabaseBackupService", "ImportSummary"]

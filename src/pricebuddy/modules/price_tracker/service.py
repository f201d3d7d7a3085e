"""Price Tracker Service implementation."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pricebuddy.core.db.models import _utc_now
from pricebuddy.modules.price_tracker.autodetect import (
    StoreAttributes,
    StoreAutoDetector,
    store_host,
)
from pricebuddy.modules.price_tracker.currency import Unparseable, parse_price
from pricebuddy.modules.price_tracker.errors import ProductOwnerRequiredError
from pricebuddy.modules.price_tracker.extraction import ScrapedFields
from pricebuddy.modules.price_tracker.models import Price, Product, Store, StoreDomain, Url, User
from pricebuddy.modules.price_tracker.scraper import MAX_STR_LENGTH, StoreScraper
from pricebuddy.modules.price_tracker.strategies import ScraperService

logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "store"


def _as_id(obj: Any) -> uuid.UUID:
    return obj if isinstance(obj, uuid.UUID) else obj.id


async def unique_slug(session: AsyncSession, base: str) -> str:
    """``base``, or ``base-N`` with the lowest free N."""
    result = await session.execute(
        select(Store.slug).where((Store.slug == base) | Store.slug.like(f"{base}-%"))
    )
    taken = set(result.scalars().all())
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


async def refresh_price_cache(session: AsyncSession, product_id: uuid.UUID) -> dict[str, Any]:
    """Recompute the min/avg/max/latest/count projection of a product's ledger.

    The caller commits.
    """
    product = await session.get(Product, product_id)
    if product is None:
        return {}

    stmt = (
        select(
            func.min(Price.price),
            func.max(Price.price),
            func.avg(Price.price),
            func.count(Price.id),
        )
        .join(Url, Price.url_id == Url.id)
        .where(Url.product_id == product_id)
    )
    minimum, maximum, average, count = (await session.execute(stmt)).one()

    latest_stmt = (
        select(Price.price)
        .join(Url, Price.url_id == Url.id)
        .where(Url.product_id == product_id)
        .order_by(Price.created_at.desc())
        .limit(1)
    )
    latest = (await session.execute(latest_stmt)).scalar_one_or_none()

    cache: dict[str, Any] = {
        "min": float(minimum) if minimum is not None else None,
        "max": float(maximum) if maximum is not None else None,
        "avg": round(float(average), 2) if average is not None else None,
        "latest": float(latest) if latest is not None else None,
        "count": int(count or 0),
    }
    product.price_cache = cache
    return cache


class PriceTrackerService:
    """Service owning the price ledger of tracked urls.

    Handles store lookup and creation, url creation, price recording with
    same-day deduplication, and the notification suppression decision.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scraper: StoreScraper | None = None,
        detector: StoreAutoDetector | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the price tracker service.

        Args:
            session_factory: SQLAlchemy async session factory.
            scraper: Scraper used when a price has to be fetched. Optional.
            detector: Store auto-detector for urls of unknown stores. Optional.
            clock: Returns the current naive UTC time.
        """
        self.session_factory = session_factory
        self.scraper = scraper
        self.detector = detector
        self.clock = clock
        # Single writer per url for the check-then-insert in record_price.
        self._url_locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._url_lock_users: Counter[uuid.UUID] = Counter()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def find_user(self, email: str) -> User | None:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.email == email.lower()))
            return result.scalar_one_or_none()

    async def get_or_create_user(
        self,
        email: str,
        name: str | None = None,
        notification_settings: dict[str, Any] | None = None,
    ) -> User:
        if existing := await self.find_user(email):
            return existing
        async with self.session_factory() as session:
            user = User(
                email=email.lower(),
                name=name,
                notification_settings=notification_settings or {},
            )
            session.add(user)
            await session.commit()
            logger.info(f"Created user {user.email}")
            return user

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    async def find_store_for_host(self, host: str) -> Store | None:
        host = host.lower()
        candidates = {host, host.removeprefix("www.")}
        async with self.session_factory() as session:
            stmt = (
                select(Store)
                .join(StoreDomain, StoreDomain.store_id == Store.id)
                .where(StoreDomain.domain.in_(candidates))
                .order_by(Store.created_at)
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def find_store_for_url(self, url: str) -> Store | None:
        host = store_host(url)
        if not host:
            return None
        return await self.find_store_for_host(host)

    async def create_store(self, attributes: StoreAttributes) -> Store:
        """Create a store with a unique slug derived from its name."""
        async with self.session_factory() as session:
            slug = await unique_slug(session, slugify(attributes.name))
            store = Store(
                name=attributes.name,
                slug=slug,
                scrape_strategy=attributes.scrape_strategy,
                scraper_service=ScraperService(attributes.scraper_service).value,
                scraper_service_settings=attributes.scraper_service_settings,
                test_url=attributes.test_url,
                locale=attributes.locale,
                currency=attributes.currency,
            )
            store.domains = [
                StoreDomain(domain=domain, position=position)
                for position, domain in enumerate(dict.fromkeys(d.lower() for d in attributes.domains))
            ]
            session.add(store)
            await session.commit()
            await session.refresh(store, attribute_names=["domains"])

            logger.info(f"Created store {store.name} (slug: {store.slug})")
            return store

    async def create_store_from_url(self, url: str, document: str | None = None) -> Store | None:
        """Return the store of a url, auto-detecting and creating it when unknown.

        The domain lookup happens before any fetch, so known stores cost no
        network round trip.
        """
        if existing := await self.find_store_for_url(url):
            return existing

        if self.detector is None:
            logger.warning("No store auto-detector configured", extra={"url": url})
            return None

        if document is None:
            if self.scraper is None:
                raise RuntimeError("A scraper is required to auto create stores")
            logger.info("Auto create store", extra={"url": url})
            document = await self.scraper.fetch_document(url)

        attributes = self.detector.detect(url, document)
        if attributes is None:
            return None
        return await self.create_store(attributes)

    # ------------------------------------------------------------------
    # Urls
    # ------------------------------------------------------------------

    async def get_url(self, url_id: uuid.UUID) -> Url | None:
        """Load a url with its store, product and product owner."""
        async with self.session_factory() as session:
            stmt = (
                select(Url)
                .options(
                    selectinload(Url.store),
                    selectinload(Url.product).selectinload(Product.user),
                )
                .where(Url.id == url_id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_url_ids(self) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            result = await session.execute(select(Url.id).order_by(Url.created_at))
            return list(result.scalars().all())

    async def create_url(
        self,
        raw_url: str,
        product_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        create_store: bool = True,
    ) -> Url | None:
        """Start tracking a page.

        Resolves (or auto-creates) the store, scrapes the page, creates the
        product when ``product_id`` is not given and records the first price.

        Returns:
            The new Url, or None when no store or no price could be found.

        Raises:
            ProductOwnerRequiredError: A product must be created but no user was given.
        """
        if self.scraper is None:
            raise RuntimeError("A scraper is required to create urls")
        if product_id is None and user_id is None:
            raise ProductOwnerRequiredError("User is required to create a product.")

        store = await self.find_store_for_url(raw_url)
        document: str | None = None
        if store is None and create_store:
            document = await self.scraper.fetch_document(raw_url)
            store = await self.create_store_from_url(raw_url, document=document)
        if store is None:
            logger.warning("No store found for url", extra={"url": raw_url})
            return None

        if store.scraper_service != ScraperService.HTTP.value:
            document = None
        fields = await self.scraper.scrape(raw_url, store, document=document)
        if not fields.price:
            logger.warning("No price found for url", extra={"url": raw_url, "store": store.slug})
            return None

        async with self.session_factory() as session:
            if product_id is None:
                image = fields.image if fields.image and len(fields.image) < MAX_STR_LENGTH else None
                product = Product(
                    title=(fields.title or raw_url)[:MAX_STR_LENGTH],
                    image=image,
                    user_id=user_id,
                    favourite=True,
                )
                session.add(product)
                await session.flush()
                product_id = product.id

            url = Url(url=raw_url, store_id=store.id, product_id=product_id)
            session.add(url)
            await session.commit()

        logger.info(f"Tracking {raw_url} (Url ID: {url.id}, store: {store.slug})")
        await self.record_price(url.id, fields.price)
        return url

    async def delete_url(self, url_id: uuid.UUID) -> None:
        """Delete a url and its price ledger.

        Raises:
            ValueError: If the url does not exist.
        """
        async with self.session_factory() as session:
            url = await session.get(Url, url_id)
            if url is None:
                raise ValueError(f"Url not found: {url_id}")
            product_id = url.product_id
            await session.delete(url)
            await session.flush()
            await refresh_price_cache(session, product_id)
            await session.commit()

        logger.info(f"Deleted url {url_id}")

    async def _scrape_url(self, url: Url) -> ScrapedFields | None:
        if self.scraper is None:
            logger.warning("No scraper configured, cannot fetch price", extra={"url": url.url})
            return None
        return await self.scraper.scrape(url.url, url.store)

    # ------------------------------------------------------------------
    # Price ledger
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _url_lock(self, url_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the lock of a url; it is dropped once no caller holds or awaits it."""
        lock = self._url_locks.setdefault(url_id, asyncio.Lock())
        self._url_lock_users[url_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._url_lock_users[url_id] -= 1
            if not self._url_lock_users[url_id]:
                del self._url_lock_users[url_id]
                del self._url_locks[url_id]

    async def record_price(
        self, url: Url | uuid.UUID, price: str | int | float | None = None
    ) -> Price | None:
        """Append a price to the ledger of a url.

        When no price is given the url is scraped with its store strategy.
        A row with the same rounded value on the same calendar day as the
        latest row is not recorded again.

        Returns:
            The created Price, or None when nothing was recorded.

        Raises:
            FetchError: When scraping is needed and the page cannot be fetched.
        """
        url_id = _as_id(url)
        async with self._url_lock(url_id):
            async with self.session_factory() as session:
                url_row = await session.get(Url, url_id, options=[selectinload(Url.store)])

            if url_row is None:
                logger.warning(f"Url {url_id} not found")
                return None

            logger.info(
                f"Updating price for URL: '{url_row.url}'",
                extra={"url_id": str(url_id), "store_id": str(url_row.store_id), "provided_price": price},
            )

            if not url_row.store_id:
                return None

            if price is None or price == "":
                fields = await self._scrape_url(url_row)
                price = fields.price if fields else None

            if price is None or price == "":
                return None

            parsed = parse_price(price)
            if isinstance(parsed, Unparseable):
                logger.warning(
                    "Skipping unparseable price",
                    extra={"url_id": str(url_id), "value": parsed.raw},
                )
                return None

            value = round(parsed.value, 2)
            now = self.clock()

            async with self.session_factory() as session:
                last = await self._latest_price(session, url_id)
                if last is not None:
                    last_value = round(float(last.price), 2)
                    if last_value == value and last.created_at.date() == now.date():
                        logger.info(
                            "Skipping creating price for URL because value and date unchanged",
                            extra={
                                "url_id": str(url_id),
                                "price": value,
                                "last_date": last.created_at.date().isoformat(),
                            },
                        )
                        return None

                new_price = Price(
                    url_id=url_id,
                    store_id=url_row.store_id,
                    price=value,
                    created_at=now,
                    notified=False,
                )
                session.add(new_price)
                await session.flush()
                await refresh_price_cache(session, url_row.product_id)
                await session.commit()

            logger.info(f"Recorded price {value} for Url {url_id}")
            return new_price

    async def _latest_price(self, session: AsyncSession, url_id: uuid.UUID) -> Price | None:
        stmt = (
            select(Price)
            .where(Price.url_id == url_id)
            .order_by(Price.created_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_prices(self, url_id: uuid.UUID, limit: int = 2) -> list[Price]:
        """Most recent prices of a url, newest first."""
        async with self.session_factory() as session:
            stmt = (
                select(Price)
                .where(Price.url_id == url_id)
                .order_by(Price.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_prices(self, url_id: uuid.UUID) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Price).where(Price.url_id == url_id)
            )
            return int(result.scalar_one())

    async def last_notified_price(self, url_id: uuid.UUID) -> Price | None:
        """The notified price that opens the current notification epoch."""
        async with self.session_factory() as session:
            stmt = (
                select(Price)
                .where(Price.url_id == url_id, Price.notified.is_(True))
                .order_by(Price.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def should_notify(self, url: Url | uuid.UUID, price: Price | float) -> bool:
        """Only notify if some price since the last notification differs from ``price``.

        The first price of a url always notifies.
        """
        url_id = _as_id(url)
        value = float(price.price) if isinstance(price, Price) else float(price)

        anchor = await self.last_notified_price(url_id)
        if anchor is None:
            return True

        async with self.session_factory() as session:
            since_anchor = (
                select(func.count())
                .select_from(Price)
                .where(Price.url_id == url_id, Price.created_at >= anchor.created_at)
            )
            total = (await session.execute(since_anchor)).scalar_one()
            same = (await session.execute(since_anchor.where(Price.price == value))).scalar_one()

        logger.debug(
            "Notification decision",
            extra={"url_id": str(url_id), "total": total, "same_as_new": same},
        )
        return total > same

    async def mark_notified(self, price: Price | uuid.UUID) -> bool:
        """Flag a price as notified. Returns False when it already was."""
        price_id = _as_id(price)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Price)
                .where(Price.id == price_id, Price.notified.is_(False))
                .values(notified=True)
            )
            await session.commit()
        changed = result.rowcount == 1
        if changed and isinstance(price, Price):
            price.notified = True
        return changed

    async def get_price_history(self, url_id: uuid.UUID) -> list[dict[str, Any]]:
        """Price ledger of a url, oldest first."""
        async with self.session_factory() as session:
            stmt = select(Price).where(Price.url_id == url_id).order_by(Price.created_at)
            result = await session.execute(stmt)
            return [
                {
                    "created_at": price.created_at,
                    "price": float(price.price),
                    "notified": price.notified,
                }
                for price in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Product projection
    # ------------------------------------------------------------------

    async def update_price_cache(self, product_id: uuid.UUID) -> dict[str, Any]:
        async with self.session_factory() as session:
            cache = await refresh_price_cache(session, product_id)
            await session.commit()
            return cache


__all__ = ["PriceTrackerService", "refresh_price_cache", "slugify", "unique_slug"]

"""Scrape a url with the strategy of its store."""

from __future__ import annotations

import logging

from pricebuddy.core.config import get_settings
from pricebuddy.core.protocols.fetcher import IFetcher
from pricebuddy.modules.price_tracker.extraction import ScrapedFields, scrape_fields
from pricebuddy.modules.price_tracker.models import Store
from pricebuddy.modules.price_tracker.strategies import ScraperService, parse_store_strategies

logger = logging.getLogger(__name__)

MAX_STR_LENGTH = 255


class StoreScraper:
    """Fetch a page through the injected fetcher and extract its fields."""

    def __init__(self, fetcher: IFetcher, timeout: float | None = None) -> None:
        self.fetcher = fetcher
        self.timeout = timeout if timeout is not None else get_settings().scrape_timeout

    async def fetch_document(self, url: str, store: Store | None = None) -> str:
        """Fetch a page with the store's scraper service (HTTP when unknown).

        Raises:
            FetchError: When the fetcher cannot retrieve the page.
        """
        service = store.scraper_service if store else ScraperService.HTTP.value
        return await self.fetcher.fetch(
            url,
            service=service,
            service_settings=(store.scraper_service_settings or "") if store else "",
            timeout=self.timeout,
        )

    async def scrape(self, url: str, store: Store, document: str | None = None) -> ScrapedFields:
        if document is None:
            document = await self.fetch_document(url, store)
        fields = scrape_fields(document, parse_store_strategies(store.scrape_strategy))
        logger.debug(
            "Scraped url",
            extra={"url": url, "store": store.slug, "price": fields.price, "title": fields.title},
        )
        return fields


__all__ = ["MAX_STR_LENGTH", "StoreScraper"]

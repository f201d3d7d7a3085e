"""Plain HTTP page fetcher."""

import logging

import httpx

from pricebuddy.core.config import get_settings
from pricebuddy.core.protocols.fetcher import FetchError

logger = logging.getLogger(__name__)


class HttpFetcher:
    """Fetch documents with httpx.

    Only the ``http`` scraper service is implemented here. Stores configured
    for the browser-backed ``api`` service are fetched over plain HTTP with a
    warning, since rendering pages is left to a dedicated fetcher.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.http_client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": settings.user_agent, "Accept-Language": "en,*;q=0.5"},
        )

    async def close(self) -> None:
        await self.http_client.aclose()

    async def fetch(
        self,
        url: str,
        *,
        service: str = "http",
        service_settings: str = "",
        timeout: float = 30.0,
    ) -> str:
        if service != "http":
            logger.warning(
                "Scraper service %s is not supported by HttpFetcher, using plain HTTP",
                service,
                extra={"url": url},
            )
        try:
            response = await self.http_client.get(url, timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e
        return response.text


__all__ = ["HttpFetcher"]

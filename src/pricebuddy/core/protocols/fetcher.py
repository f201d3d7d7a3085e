"""Protocol for page fetching."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class IFetcher(Protocol):
    """Abstract interface for fetching product pages.

    The price tracker only consumes the fetched document; whether it comes
    from a plain HTTP client or a headless browser is up to the implementation.
    """

    async def fetch(
        self,
        url: str,
        *,
        service: str = "http",
        service_settings: str = "",
        timeout: float = 30.0,
    ) -> str:
        """Fetch a document.

        Args:
            url: The page to fetch.
            service: Scraper service requested by the store ("http" or "api").
            service_settings: Free-form, service specific settings of the store.
            timeout: Connect and read timeout in seconds.

        Returns:
            The raw document body (HTML or JSON text).

        Raises:
            FetchError: If the document could not be retrieved.
        """
        ...

    async def close(self) -> None:
        """Clean up resources."""
        ...


class FetchError(Exception):
    """Raised by fetchers when a document could not be retrieved."""


__all__ = ["FetchError", "IFetcher"]

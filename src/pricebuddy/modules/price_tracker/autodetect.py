"""Store auto-detection from an unknown domain.

The detector runs a global heuristic catalog (not tied to any store) against
a fetched page. For each field every ``selector`` candidate is tried before
any ``regex`` candidate. Title and price must resolve; the image is optional.
The winning candidate per field becomes the new store's scrape strategy.
"""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field

from pricebuddy.modules.price_tracker.currency import get_currency, get_locale, to_float
from pricebuddy.modules.price_tracker.extraction import Document, extract
from pricebuddy.modules.price_tracker.strategies import (
    ExtractionResult,
    FieldName,
    FieldStrategy,
    ScraperService,
    StrategyType,
)

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_RESOURCE = "config/auto_create_store.yaml"

# Candidate groups in the order they are tried for every field.
GROUP_ORDER = (StrategyType.SELECTOR, StrategyType.REGEX)


class HeuristicCatalog(BaseModel):
    """Ordered auto-detection candidates per field."""

    model_config = ConfigDict(frozen=True)

    title: tuple[FieldStrategy, ...] = ()
    price: tuple[FieldStrategy, ...] = ()
    image: tuple[FieldStrategy, ...] = ()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> HeuristicCatalog:
        """Build from ``{field: {type: [value, ...]}}``."""
        fields: dict[str, tuple[FieldStrategy, ...]] = {}
        for field in FieldName:
            groups = config.get(field.value) or {}
            fields[field.value] = tuple(
                FieldStrategy(type=StrategyType(type_name), value=value)
                for type_name, values in groups.items()
                for value in values or []
            )
        return cls(**fields)

    @classmethod
    def load(cls, path: Path | None = None) -> HeuristicCatalog:
        """Load a YAML catalog, defaulting to the one bundled with the package."""
        if path is not None:
            text = Path(path).read_text(encoding="utf-8")
        else:
            text = (
                resources.files("pricebuddy.modules.price_tracker")
                .joinpath(DEFAULT_CATALOG_RESOURCE)
                .read_text(encoding="utf-8")
            )
        return cls.from_config(yaml.safe_load(text) or {})

    def candidates(self, field: FieldName, strategy_type: StrategyType) -> list[FieldStrategy]:
        return [c for c in getattr(self, field.value) if c.type is strategy_type]


class StoreAttributes(BaseModel):
    """Everything needed to create a store detected from a url."""

    name: str
    domains: list[str] = Field(min_length=1)
    scrape_strategy: dict[str, dict[str, str]]
    scraper_service: ScraperService = ScraperService.HTTP
    scraper_service_settings: str = ""
    test_url: str | None = None
    locale: str | None = None
    currency: str | None = None


def store_host(url: str) -> str:
    """Lowercase hostname of a url without a leading ``www.``."""
    host = (urlparse(url).hostname or "").lower()
    return host.removeprefix("www.")


def _price_validator(value: str) -> float:
    # 0.0 doubles as "unparseable", so a real zero price is not a match either.
    return to_float(value)


class StoreAutoDetector:
    """Bootstrap store definitions from the heuristic catalog."""

    def __init__(self, catalog: HeuristicCatalog, log_errors: bool = True) -> None:
        self.catalog = catalog
        self.log_errors = log_errors

    def parse_field(self, document: Document, field: FieldName) -> ExtractionResult | None:
        validate = _price_validator if field is FieldName.PRICE else None
        for strategy_type in GROUP_ORDER:
            match = extract(document, self.catalog.candidates(field, strategy_type), validate)
            if match is not None:
                return match
        return None

    def strategy_parse(self, document: str | Document) -> dict[FieldName, ExtractionResult | None]:
        if not isinstance(document, Document):
            document = Document(document)
        return {field: self.parse_field(document, field) for field in FieldName}

    def detect(self, host_url: str, document: str | Document) -> StoreAttributes | None:
        """Derive store attributes from a page, or None when title or price is missing.

        No existing-store check happens here; callers look the host up first.
        """
        matches = self.strategy_parse(document)

        if matches[FieldName.TITLE] is None or matches[FieldName.PRICE] is None:
            if self.log_errors:
                logger.error(
                    "Unable to auto create store",
                    extra={
                        "url": host_url,
                        "matched": [f.value for f, m in matches.items() if m is not None],
                    },
                )
            return None

        host = store_host(host_url)
        if not host:
            logger.error("Unable to auto create store without a host", extra={"url": host_url})
            return None

        attributes = StoreAttributes(
            name=host[:1].upper() + host[1:],
            domains=[host, f"www.{host}"],
            scrape_strategy={
                field.value: match.to_strategy()
                for field, match in matches.items()
                if match is not None
            },
            scraper_service=ScraperService.HTTP,
            scraper_service_settings="",
            test_url=host_url,
            locale=get_locale(),
            currency=get_currency(),
        )
        logger.info(
            "Detected store attributes",
            extra={"url": host_url, "store": attributes.name, "strategy": attributes.scrape_strategy},
        )
        return attributes


__all__ = [
    "HeuristicCatalog",
    "StoreAttributes",
    "StoreAutoDetector",
    "store_host",
]

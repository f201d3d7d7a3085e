"""Extraction strategy types."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class StrategyType(str, Enum):
    """How a strategy value is evaluated against a document."""

    SELECTOR = "selector"  # CSS selector, optional "|attribute" suffix
    XPATH = "xpath"
    REGEX = "regex"  # first capture group of the first match
    JSON = "json"  # dot-notation path


class ScraperService(str, Enum):
    """Fetch mode of a store."""

    HTTP = "http"  # plain HTTP, faster and lighter
    API = "api"  # browser-backed scraper API, for script rendered pages


class FieldName(str, Enum):
    TITLE = "title"
    PRICE = "price"
    IMAGE = "image"


class FieldStrategy(BaseModel):
    """Declarative rule for extracting one field from a document."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    type: StrategyType = StrategyType.SELECTOR
    value: str = Field(min_length=1)
    prepend: str = ""
    append: str = ""

    @classmethod
    def from_config(cls, data: dict[str, Any] | None) -> FieldStrategy | None:
        """Build a strategy from a stored config entry, None when it is empty."""
        if not data or not data.get("value"):
            return None
        return cls(
            type=StrategyType(data.get("type") or StrategyType.SELECTOR.value),
            value=data["value"],
            prepend=data.get("prepend") or "",
            append=data.get("append") or "",
        )

    def to_config(self) -> dict[str, str]:
        config = {"type": self.type.value, "value": self.value}
        if self.prepend:
            config["prepend"] = self.prepend
        if self.append:
            config["append"] = self.append
        return config

    def compose(self, value: str) -> str:
        return f"{self.prepend}{value}{self.append}"


@dataclass(frozen=True)
class ExtractionResult:
    """The candidate that matched and what it produced.

    ``raw`` is the extracted text with prepend/append applied; ``data`` is the
    validated value when a validator was given, otherwise ``raw``.
    """

    type: StrategyType
    value: str
    data: Any
    raw: str

    def to_strategy(self) -> dict[str, str]:
        return {"type": self.type.value, "value": self.value}


def parse_store_strategies(config: dict[str, Any] | None) -> dict[FieldName, FieldStrategy]:
    """Read a store's persisted ``scrape_strategy`` into typed strategies.

    Entries that cannot be read are skipped with a warning.
    """
    strategies: dict[FieldName, FieldStrategy] = {}
    for field in FieldName:
        entry = (config or {}).get(field.value)
        if entry is not None and not isinstance(entry, dict):
            logger.warning("Ignoring malformed strategy", extra={"field": field.value, "entry": entry})
            continue
        try:
            strategy = FieldStrategy.from_config(entry)
        except ValueError as e:
            logger.warning(
                f"Ignoring invalid {field.value} strategy: {e}",
                extra={"field": field.value, "entry": entry},
            )
            continue
        if strategy is not None:
            strategies[field] = strategy
    return strategies


__all__ = [
    "ExtractionResult",
    "FieldName",
    "FieldStrategy",
    "ScraperService",
    "StrategyType",
    "parse_store_strategies",
]

"""Currency parsing and formatting helpers.

Prices scraped from store pages rarely follow the store's locale, so parsing
is a separator heuristic rather than a locale-aware parser:

- when both ``,`` and ``.`` appear, the later one is the decimal point;
- a lone ``,`` is a decimal comma only when exactly two digits follow it;
- otherwise the string is parsed as a plain decimal number.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from babel.numbers import format_currency

from pricebuddy.core.config import get_settings

logger = logging.getLogger(__name__)

_NON_NUMERIC_RE = re.compile(r"[^0-9,.\-]")

# Running count of unparseable inputs since process start.
_unparseable_count = 0


@dataclass(frozen=True)
class Parsed:
    value: float


@dataclass(frozen=True)
class Unparseable:
    raw: str
    reason: str


ParseResult = Parsed | Unparseable


def _normalize_separators(cleaned: str) -> str:
    last_comma = cleaned.rfind(",")
    last_dot = cleaned.rfind(".")

    if last_comma != -1 and last_dot != -1:
        if last_comma > last_dot:
            return cleaned.replace(".", "").replace(",", ".")
        return cleaned.replace(",", "")

    if last_comma != -1:
        if len(cleaned[last_comma + 1 :]) == 2:
            return cleaned.replace(",", ".")
        return cleaned.replace(",", "")

    return cleaned


def parse_price(raw: str | int | float | None) -> ParseResult:
    """Parse a scraped price string.

    Never raises; inputs that cannot be read come back as ``Unparseable``
    and are logged.
    """
    global _unparseable_count

    if isinstance(raw, bool):
        result: ParseResult = Unparseable(str(raw), "boolean is not a price")
    elif isinstance(raw, int | float):
        result = Parsed(float(raw))
    elif raw is None:
        result = Unparseable("", "no value")
    else:
        cleaned = _normalize_separators(_NON_NUMERIC_RE.sub("", raw.strip()))
        try:
            result = Parsed(float(cleaned))
        except ValueError as e:
            result = Unparseable(raw, str(e))

    if isinstance(result, Unparseable):
        _unparseable_count += 1
        logger.warning(
            "Currency to float conversion error: %s",
            result.reason,
            extra={"value": result.raw, "unparseable_total": _unparseable_count},
        )
    return result


def to_float(raw: str | int | float | None) -> float:
    """Parse a scraped price, returning ``0.0`` when it cannot be read."""
    result = parse_price(raw)
    if isinstance(result, Parsed):
        return result.value
    return 0.0


def unparseable_count() -> int:
    return _unparseable_count


def get_locale() -> str:
    return get_settings().default_locale


def get_currency() -> str:
    return get_settings().default_currency


def to_string(
    value: str | int | float | None,
    locale: str | None = None,
    currency: str | None = None,
    max_precision: int = 2,
) -> str:
    """Format a price as a localized money string, e.g. ``$1,234.56``."""
    amount = round(to_float(value) if value is not None else 0.0, max_precision)
    return format_currency(
        amount,
        currency or get_currency(),
        locale=(locale or get_locale()).replace("-", "_"),
    )


__all__ = [
    "ParseResult",
    "Parsed",
    "Unparseable",
    "get_currency",
    "get_locale",
    "parse_price",
    "to_float",
    "to_string",
    "unparseable_count",
]

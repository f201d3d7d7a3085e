"""Strategy based field extraction.

``extract`` walks an ordered list of candidate strategies and returns the
first one that produces a value. Evaluation of a single candidate never
raises: malformed selectors, XPath expressions and patterns, unparsable
documents and missing JSON paths all count as a non-match.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import cached_property
from typing import Any

import lxml.html
from bs4 import BeautifulSoup
from lxml import etree

from pricebuddy.modules.price_tracker.currency import to_float
from pricebuddy.modules.price_tracker.strategies import (
    ExtractionResult,
    FieldName,
    FieldStrategy,
    StrategyType,
)

logger = logging.getLogger(__name__)

Validator = Callable[[str], Any]

_ATTRIBUTE_RE = re.compile(r"^[A-Za-z_:][\w:.\-]*$")


class Document:
    """A fetched page, parsed lazily for each strategy type."""

    def __init__(self, text: str) -> None:
        self.text = text or ""

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.text, "lxml")

    @cached_property
    def tree(self) -> Any:
        return lxml.html.fromstring(self.text)

    @cached_property
    def json_roots(self) -> list[Any]:
        """JSON documents to evaluate paths against, in priority order.

        The whole body when it is JSON, otherwise every embedded
        ``application/ld+json`` block.
        """
        try:
            return [json.loads(self.text)]
        except (ValueError, RecursionError):
            pass

        roots: list[Any] = []
        for tag in self.soup.find_all("script", type=lambda t: t and "ld+json" in t):
            try:
                roots.append(json.loads(tag.string or ""))
            except (ValueError, RecursionError):
                continue
        return roots


def split_selector(selector: str) -> tuple[str, str | None]:
    """Split ``"css|attribute"`` into the selector and the attribute name."""
    if "|" in selector:
        css, attribute = selector.rsplit("|", 1)
        attribute = attribute.strip()
        if css.strip() and _ATTRIBUTE_RE.match(attribute):
            return css.strip(), attribute
    return selector.strip(), None


def _stringify(value: Any) -> str | None:
    if value is None or isinstance(value, dict | list):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def _eval_selector(document: Document, value: str) -> str | None:
    css, attribute = split_selector(value)
    try:
        node = document.soup.select_one(css)
    except Exception as e:  # malformed or unsupported selector
        logger.debug("Invalid selector %r: %s", css, e)
        return None
    if node is None:
        return None
    if attribute:
        found = node.get(attribute)
        if isinstance(found, list):
            found = " ".join(found)
        return _stringify(found)
    return node.get_text(" ", strip=True)


def _eval_xpath(document: Document, value: str) -> str | None:
    try:
        result = document.tree.xpath(value)
    except (etree.XPathError, etree.ParserError, ValueError) as e:
        logger.debug("XPath %r failed: %s", value, e)
        return None

    if isinstance(result, list):
        if not result:
            return None
        result = result[0]
    if isinstance(result, lxml.html.HtmlElement):
        return result.text_content().strip()
    return _stringify(result)


def _eval_regex(document: Document, value: str) -> str | None:
    try:
        match = re.search(value, document.text)
        return _stringify(match.group(1)) if match else None
    except (re.error, IndexError) as e:
        logger.debug("Regex %r failed: %s", value, e)
        return None


def _resolve_path(root: Any, path: str) -> Any:
    node = root
    for key in path.split("."):
        if isinstance(node, dict):
            if key not in node:
                return None
            node = node[key]
        elif isinstance(node, list):
            try:
                node = node[int(key)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return node


def _eval_json(document: Document, value: str) -> str | None:
    path = value.strip().removeprefix("$.")
    for root in document.json_roots:
        found = _stringify(_resolve_path(root, path))
        if found:
            return found
    return None


_EVALUATORS: dict[StrategyType, Callable[[Document, str], str | None]] = {
    StrategyType.SELECTOR: _eval_selector,
    StrategyType.XPATH: _eval_xpath,
    StrategyType.REGEX: _eval_regex,
    StrategyType.JSON: _eval_json,
}


def evaluate(document: Document, strategy: FieldStrategy) -> str | None:
    """Evaluate a single strategy, returning its raw (uncomposed) value."""
    return _EVALUATORS[strategy.type](document, strategy.value) or None


def extract(
    document: str | Document,
    candidates: Iterable[FieldStrategy],
    validate: Validator | None = None,
) -> ExtractionResult | None:
    """Return the first candidate that yields a (valid) value, or None."""
    if not isinstance(document, Document):
        document = Document(document)

    for candidate in candidates:
        found = evaluate(document, candidate)
        if not found:
            continue

        data: Any = found
        if validate is not None:
            data = validate(found)
            if not data:
                continue

        raw = candidate.compose(found)
        return ExtractionResult(
            type=candidate.type,
            value=candidate.value,
            data=data if validate is not None else raw,
            raw=raw,
        )

    return None


@dataclass(frozen=True)
class ScrapedFields:
    title: str | None = None
    price: str | None = None
    image: str | None = None


def scrape_fields(
    document: str | Document, strategies: dict[FieldName, FieldStrategy]
) -> ScrapedFields:
    """Apply a store's persisted strategy to each field of a document."""
    if not isinstance(document, Document):
        document = Document(document)

    values: dict[str, str | None] = {}
    for field in FieldName:
        strategy = strategies.get(field)
        if strategy is None:
            values[field.value] = None
            continue
        validate = to_float if field is FieldName.PRICE else None
        result = extract(document, [strategy], validate=validate)
        values[field.value] = result.raw if result else None

    return ScrapedFields(**values)


__all__ = [
    "Document",
    "ScrapedFields",
    "Validator",
    "evaluate",
    "extract",
    "scrape_fields",
    "split_selector",
]

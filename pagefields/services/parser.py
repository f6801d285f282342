from __future__ import annotations

import re
from typing import Any, Iterable, Optional

import structlog
from bs4 import BeautifulSoup, FeatureNotFound
from bs4.element import Tag
from soupsieve import SelectorSyntaxError

from pagefields.services.exceptions import ParsingError
from pagefields.services.fields import ExtractedField, FieldSpec

logger = structlog.get_logger(__name__)

MAX_CONTENT_SIZE = 10 * 1024 * 1024
MAX_SELECTOR_LENGTH = 1000
SUSPICIOUS_SELECTOR_PATTERNS = (
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
)
META_ATTRIBUTES = ("name", "property", "http-equiv")
_WHITESPACE_RE = re.compile(r"\s+")

NO_MATCH_ERROR = "selector matched no elements"
META_NOT_FOUND_ERROR = "meta tag not found"


def clean_text(text: Optional[str]) -> str:
    """Collapse whitespace runs (including non-breaking spaces) to one space."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


class HtmlParser:
    """Parses a fetched body once into a queryable BeautifulSoup document."""

    def __init__(self, features: str = "lxml") -> None:
        self.features = features

    def parse(self, html: Optional[str]) -> BeautifulSoup:
        if html is None or not html.strip():
            raise ParsingError("HTML content cannot be empty")
        size = len(html.encode("utf-8", errors="replace"))
        if size > MAX_CONTENT_SIZE:
            raise ParsingError(
                f"HTML content too large (max {MAX_CONTENT_SIZE} bytes)",
                context={"size": size},
            )
        try:
            return BeautifulSoup(html, self.features)
        except FeatureNotFound:
            logger.warning("parser.feature_missing", features=self.features)
            return BeautifulSoup(html, "html.parser")
        except (ValueError, TypeError, AssertionError) as exc:
            raise ParsingError(f"HTML parsing failed: {exc}") from exc


def _selector_problem(selector: str) -> Optional[str]:
    if not selector or not selector.strip():
        return "selector cannot be empty"
    if len(selector) > MAX_SELECTOR_LENGTH:
        return f"selector too long (max {MAX_SELECTOR_LENGTH} characters)"
    if any(pattern.search(selector) for pattern in SUSPICIOUS_SELECTOR_PATTERNS):
        return "potentially malicious selector detected"
    return None


def _element_value(element: Tag, field: FieldSpec) -> Any:
    if field.type == "html":
        return element.decode_contents()
    if field.type == "attribute" or field.attribute:
        if not field.attribute:
            raise ValueError("attribute name required for attribute extraction")
        value = element.get(field.attribute)
        if value is None:
            raise ValueError(f"element has no {field.attribute} attribute")
        # Multi-valued attributes (class, rel) come back as lists.
        if isinstance(value, list):
            return " ".join(value)
        return value
    return clean_text(element.get_text())


class CssExtractionStrategy:
    """Resolves CSS fields against a parsed document."""

    def extract(self, document: BeautifulSoup, field: FieldSpec) -> ExtractedField:
        selector = field.selector
        problem = _selector_problem(selector)
        if problem:
            return ExtractedField.failure(selector, problem)

        try:
            elements = document.select(selector)
        except SelectorSyntaxError as exc:
            return ExtractedField.failure(
                selector, f"invalid selector syntax: {str(exc).splitlines()[0]}"
            )

        if not elements:
            return ExtractedField.failure(selector, NO_MATCH_ERROR)

        try:
            if field.multiple:
                value: Any = [_element_value(element, field) for element in elements]
            else:
                value = _element_value(elements[0], field)
        except ValueError as exc:
            return ExtractedField.failure(selector, str(exc))
        return ExtractedField.ok(selector, value)

    def extract_all(
        self, document: BeautifulSoup, fields: Iterable[FieldSpec]
    ) -> list[ExtractedField]:
        return [self.extract(document, field) for field in fields]


class MetaExtractionStrategy:
    """Looks up ``<meta>`` tags by name, property or http-equiv."""

    def find_meta(self, document: BeautifulSoup, meta_name: str) -> Optional[Tag]:
        wanted = meta_name.strip().lower()
        tags = document.find_all("meta")
        for attr in META_ATTRIBUTES:
            for tag in tags:
                value = tag.get(attr)
                if isinstance(value, str) and value.strip().lower() == wanted:
                    return tag
        return None

    def extract(self, document: BeautifulSoup, field: FieldSpec) -> ExtractedField:
        meta_name = field.selector or field.name
        if not meta_name or not meta_name.strip():
            return ExtractedField.failure(meta_name, "meta tag name cannot be empty")

        element = self.find_meta(document, meta_name)
        if element is None:
            return ExtractedField.failure(meta_name, META_NOT_FOUND_ERROR)

        attribute = field.attribute or "content"
        value = element.get(attribute)
        if value is None:
            return ExtractedField.failure(
                meta_name, f"meta tag has no {attribute} attribute"
            )
        if isinstance(value, list):
            value = " ".join(value)
        return ExtractedField.ok(meta_name, value)

    def extract_all(
        self, document: BeautifulSoup, fields: Iterable[FieldSpec]
    ) -> list[ExtractedField]:
        return [self.extract(document, field) for field in fields]

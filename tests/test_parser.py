import pytest

from pagefields.services.exceptions import ParsingError
from pagefields.services.fields import FieldSpec
from pagefields.services.parser import (
    CssExtractionStrategy,
    HtmlParser,
    MetaExtractionStrategy,
    clean_text,
)

from conftest import SAMPLE_HTML


@pytest.fixture()
def document():
    return HtmlParser().parse(SAMPLE_HTML)


def test_clean_text_collapses_whitespace():
    assert clean_text("  Hello\n\t  world ! ") == "Hello world !"
    assert clean_text(None) == ""


@pytest.mark.parametrize("body", [None, "", "   \n"])
def test_parse_rejects_empty_content(body):
    with pytest.raises(ParsingError, match="empty"):
        HtmlParser().parse(body)


def test_parse_rejects_oversized_content(monkeypatch):
    monkeypatch.setattr("pagefields.services.parser.MAX_CONTENT_SIZE", 10)

    with pytest.raises(ParsingError, match="too large"):
        HtmlParser().parse("<html><body>way too long</body></html>")


def test_parse_falls_back_when_parser_feature_is_missing():
    document = HtmlParser(features="no-such-parser").parse("<p>hi</p>")

    assert document.select_one("p").get_text() == "hi"


def test_css_extracts_cleaned_text(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="title", selector="h1")
    )

    assert result.success
    assert result.value == "Example Domain"
    assert result.selector == "h1"


def test_css_extracts_attribute_and_multiple(document):
    strategy = CssExtractionStrategy()

    link = strategy.extract(
        document, FieldSpec(name="link", selector="a.more", attribute="href")
    )
    items = strategy.extract(document, FieldSpec(name="items", selector="li", multiple=True))

    assert link.value == "https://www.iana.org/domains/example"
    assert items.value == ["One", "Two"]


def test_css_extracts_inner_html(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="list", selector="ul", type="html")
    )

    assert "<li>One</li>" in result.value


def test_css_reports_no_match_as_field_failure(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="missing", selector=".does-not-exist")
    )

    assert result.failed
    assert result.error == "selector matched no elements"
    assert result.value is None


def test_css_reports_invalid_selector_syntax(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="broken", selector="div[[")
    )

    assert result.failed
    assert result.error.startswith("invalid selector syntax")


@pytest.mark.parametrize(
    "selector, message",
    [
        ("", "selector cannot be empty"),
        ("a" * 1001, "selector too long"),
        ("a[href^='javascript:']", "potentially malicious selector"),
    ],
)
def test_css_rejects_unsafe_selectors(document, selector, message):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="x", selector=selector)
    )

    assert result.failed
    assert message in result.error


def test_css_attribute_type_requires_attribute_name(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="x", selector="a", type="attribute")
    )

    assert result.error == "attribute name required for attribute extraction"


def test_meta_matches_name_property_and_http_equiv(document):
    strategy = MetaExtractionStrategy()

    description = strategy.extract(document, FieldSpec(name="description", type="meta"))
    og_title = strategy.extract(document, FieldSpec(name="og:title", type="meta"))
    content_type = strategy.extract(
        document, FieldSpec(name="Content-Type", type="meta")
    )

    assert description.value == "A great page description"
    assert og_title.value == "Example OG Title"
    assert content_type.value == "text/html; charset=UTF-8"


def test_meta_prefers_selector_over_name(document):
    result = MetaExtractionStrategy().extract(
        document, FieldSpec(name="summary", selector="description", type="meta")
    )

    assert result.value == "A great page description"
    assert result.selector == "description"


def test_meta_reports_missing_tag(document):
    result = MetaExtractionStrategy().extract(
        document, FieldSpec(name="author", type="meta")
    )

    assert result.failed
    assert result.error == "meta tag not found"


def test_css_missing_attribute_is_a_field_failure(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="x", selector="h1", attribute="href")
    )

    assert result.failed
    assert result.value is None
    assert result.error == "element has no href attribute"


def test_css_multi_valued_attribute_is_joined(document):
    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="classes", selector="p", attribute="class")
    )

    assert result.value == "lead"


def test_css_multi_valued_attribute_keeps_every_class():
    document = HtmlParser().parse('<div class="card featured wide">x</div>')

    result = CssExtractionStrategy().extract(
        document, FieldSpec(name="classes", selector="div", attribute="class")
    )

    assert result.value == "card featured wide"

import pytest

from radar_crawler.crawler.extractor import (
    TRUNCATION_MARKER, ContentExtractor, ExtractionError, PageContent, normalize_text,
)
from radar_crawler.utils.config import ExtractorConfig

from helpers import load_fixture, make_article, make_page


BASE_URL = "https://www.example.gov/circulars/42"


def _extract(name="article.html", **kwargs):
    return ContentExtractor(**kwargs).extract(BASE_URL, load_fixture(name))


def test_main_text_strips_boilerplate_and_normalizes_whitespace():
    content = _extract()
    assert content.main_text.startswith(
        "Circular No. 42 The Monetary Board approved the new reserve requirement."
    )
    assert "var tracking" not in content.main_text
    assert "In-page navigation" not in content.main_text
    assert "editorial note" not in content.main_text
    assert "Home" not in content.main_text
    assert "Copyright" not in content.main_text
    assert "  " not in content.main_text
    assert content.main_text == content.main_text.strip()


def test_main_text_is_stable_across_runs():
    extractor = ContentExtractor()
    html = load_fixture("article.html")
    first = extractor.extract(BASE_URL, html)
    second = extractor.extract(BASE_URL, html)
    assert first.main_text == second.main_text


def test_boilerplate_removal_does_not_touch_the_parsed_page():
    # Links in header/nav are still discovered after main text extraction
    content = _extract()
    assert "https://www.example.gov/about" in content.links


def test_title_prefers_title_tag():
    assert _extract().title == "Central Bank Circular No. 42"


def test_title_falls_back_to_h1_then_untitled():
    assert _extract("no_main.html").title == "Weekly Market Wrap"
    untitled = ContentExtractor().extract(BASE_URL, "<html><body><p>Just text</p></body></html>")
    assert untitled.title == "Untitled"


def test_falls_back_to_body_without_main_element():
    content = _extract("no_main.html")
    assert content.main_text == "Weekly Market Wrap Shares closed higher."


def test_tables_without_data_rows_are_dropped():
    content = _extract()
    assert len(content.tables) == 1
    table = content.tables[0]
    assert table.headers == ["Instrument", "Rate"]
    assert table.rows == [["Overnight RRP", "6.50%"], ["Overnight lending", "7.00%"]]
    assert all(len(row) == len(table.headers) for row in table.rows)


def test_metadata_and_description():
    content = _extract()
    assert content.metadata == {
        "description": "Monetary board decisions",
        "og:title": "Circular 42",
    }
    assert content.meta_description == "Monetary board decisions"


def test_empty_meta_values_are_ignored():
    html = ('<html><head><meta name="keywords" content="">'
            '<meta name="robots" content="  "><meta name="author" content="BSP"></head>'
            "<body><p>Text</p></body></html>")
    content = ContentExtractor().extract(BASE_URL, html)
    assert content.metadata == {"author": "BSP"}
    assert content.meta_description is None


def test_announcements_need_more_than_twenty_characters():
    content = _extract()
    assert content.announcements == ["Deadline for comments extended to 30 June 2024."]


def test_links_are_absolute_unique_and_fragment_free():
    content = _extract()
    assert content.links == [
        "https://www.example.gov/",
        "https://www.example.gov/about",
        "https://www.example.gov/news/",
        "https://www.example.gov/circulars/43",
        "https://www.example.gov/circulars/41",
        "https://www.example.gov/circulars/docs/annex.html",
    ]


def test_long_text_is_truncated():
    extractor = ContentExtractor(max_text_length=10)
    content = extractor.extract(BASE_URL, "<html><body><main>abcdefghijklmnop</main></body></html>")
    assert content.main_text == "abcdefghij" + TRUNCATION_MARKER


def test_custom_selectors():
    config = ExtractorConfig(content_selectors=[".story"], exclusion_selectors=[".ad"])
    html = ('<html><body><div class="story">Kept <span class="ad">Buy now</span> text</div>'
            '<div>Elsewhere</div></body></html>')
    content = ContentExtractor(config).extract(BASE_URL, html)
    assert content.main_text == "Kept text"


def test_missing_html_raises():
    with pytest.raises(ExtractionError):
        ContentExtractor().extract(BASE_URL, None)


def test_relevance_filter():
    extractor = ContentExtractor()
    assert extractor.is_likely_relevant(_extract()) is True
    assert extractor.is_likely_relevant(_extract("no_main.html")) is False

    late_keyword = PageContent(url=BASE_URL, title="Weekly", main_text="x" * 1000 + " regulation")
    assert extractor.is_likely_relevant(late_keyword) is False


def test_normalize_text():
    assert normalize_text("  a \n\t b  ") == "a b"
    assert normalize_text(None) == ""


ARTICLE_URL = "https://www.example.gov/news/2024/rate-decision"


def test_article_pages_are_recognized():
    extractor = ContentExtractor()
    content = extractor.extract(ARTICLE_URL, make_article("Rate decision", "The board kept rates unchanged."))
    # article element with long text, a time element and og:type=article
    assert content.article_score == 6
    assert content.body_length > 500
    assert extractor.is_article_page(content)


def test_listing_pages_are_not_articles():
    extractor = ContentExtractor()
    article = make_article("Economy", "Stories about the economy and markets.")

    for url in ("https://www.example.gov/category/economy/latest",
                "https://www.example.gov/news/page/2",
                "https://www.example.gov/economy"):
        assert not extractor.is_article_page(extractor.extract(url, article))

    short = extractor.extract(ARTICLE_URL, make_page("Brief", "Too short to be an article"))
    assert not extractor.is_article_page(short)


def test_article_schema_counts_towards_the_score():
    html = ('<html><head><script type="application/ld+json">'
            '{"@context": "https://schema.org", "@type": "Article"}</script></head>'
            f'<body><p>{"Plain paragraph text. " * 40}</p></body></html>')
    extractor = ContentExtractor()
    content = extractor.extract(ARTICLE_URL, html)
    assert content.article_score == 3
    assert extractor.is_article_page(content)


def test_article_indicators_can_be_replaced():
    extractor = ContentExtractor(max_text_length=100).with_article_indicators([".byline"])
    content = extractor.extract(ARTICLE_URL, make_article("Rate decision", "The board kept rates unchanged."))
    assert extractor.max_text_length == 100
    assert extractor.config.article_indicators == [".byline"]
    assert content.article_score == 2
    assert not extractor.is_article_page(content)

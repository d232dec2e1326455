"""
Content extraction: main text, tables, metadata, announcements and links.
"""

import copy
import re
import logging
from typing import List, Dict, Optional
from urllib.parse import urljoin, urldefrag, urlparse
from dataclasses import dataclass, field, replace

from bs4 import BeautifulSoup, Comment, Tag

from ..utils.config import ExtractorConfig


WHITESPACE_PATTERN = re.compile(r'\s+')
TRUNCATION_MARKER = '...[truncated]'
SKIPPED_LINK_SCHEMES = ('javascript:', 'mailto:', 'tel:', 'data:')

CATEGORY_PATH_MARKERS = ('/category/', '/tag/', '/author/', '/page/', '/archives/', '-archives', '/index')
ARTICLE_SCHEMA_PATTERN = re.compile(r'"@type"\s*:\s*"Article"')
MIN_ARTICLE_BODY_LENGTH = 500
ARTICLE_SCORE_THRESHOLD = 3


class ExtractionError(Exception):
    """The page could not be turned into content."""
    pass


def normalize_text(text: Optional[str]) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    if not text:
        return ""
    return WHITESPACE_PATTERN.sub(' ', text).strip()


@dataclass
class Table:
    headers: List[str]
    rows: List[List[str]]


@dataclass
class PageContent:
    """Structured content of one page."""
    url: str
    title: str = ""
    meta_description: Optional[str] = None
    main_text: str = ""
    tables: List[Table] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    announcements: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    body_length: int = 0
    article_score: int = 0

    @property
    def word_count(self) -> int:
        return len(self.main_text.split())


class ContentExtractor:
    """
    Turns raw HTML into PageContent.

    Pure function of (url, html) and the selector configuration: the same
    input always yields the same main text, which the fingerprint depends on.
    """

    def __init__(self, config: Optional[ExtractorConfig] = None, max_text_length: int = 0):
        self.config = config or ExtractorConfig()
        self.max_text_length = max_text_length
        self.keywords = [k.lower() for k in self.config.relevance_keywords]
        self.logger = logging.getLogger(__name__)

    def extract(self, url: str, html: str) -> PageContent:
        """
        Parse HTML fetched from `url` (the final URL after redirects).

        Raises:
            ExtractionError: if the document cannot be parsed
        """
        if html is None:
            raise ExtractionError(f"No HTML to extract for {url}")

        try:
            soup = BeautifulSoup(html, 'lxml')
        except Exception as e:
            raise ExtractionError(f"Could not parse {url}: {e}") from e

        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        content = PageContent(url=url)
        content.title = self._extract_title(soup)
        content.metadata = self._extract_metadata(soup)
        content.meta_description = content.metadata.get('description')
        content.main_text = self._extract_main_text(soup)
        content.tables = self._extract_tables(soup)
        content.announcements = self._extract_announcements(soup)
        content.links = self._extract_links(soup, url)
        body = soup.body or soup
        content.body_length = len(normalize_text(body.get_text(separator=' ')))
        content.article_score = self._score_article(soup)

        self.logger.debug(f"Extracted {url}: {content.word_count} words, "
                          f"{len(content.tables)} tables, {len(content.links)} links")
        return content

    def _extract_title(self, soup: BeautifulSoup) -> str:
        title_tag = soup.find('title')
        title = normalize_text(title_tag.get_text()) if title_tag else ""
        if not title:
            h1 = soup.find('h1')
            title = normalize_text(h1.get_text()) if h1 else ""
        return title or "Untitled"

    def _find_main_element(self, soup: BeautifulSoup) -> Tag:
        for selector in self.config.content_selectors:
            element = soup.select_one(selector)
            if element is not None:
                return element
        return soup.body or soup

    def _extract_main_text(self, soup: BeautifulSoup) -> str:
        """Text of the main element, with boilerplate elements removed from a copy."""
        clone = copy.copy(self._find_main_element(soup))
        if self.config.exclusion_selectors:
            for unwanted in clone.select(', '.join(self.config.exclusion_selectors)):
                unwanted.decompose()

        text = normalize_text(clone.get_text(separator=' '))
        if self.max_text_length and len(text) > self.max_text_length:
            text = text[:self.max_text_length] + TRUNCATION_MARKER
        return text

    def _extract_tables(self, soup: BeautifulSoup) -> List[Table]:
        """Every table with at least one non-empty data row."""
        tables = []
        for table in soup.find_all('table'):
            headers = [normalize_text(th.get_text()) for th in table.find_all('th')]
            rows = []
            for tr in table.find_all('tr'):
                cells = [normalize_text(td.get_text()) for td in tr.find_all('td')]
                if any(cells):
                    rows.append(cells)
            if rows:
                tables.append(Table(headers=headers, rows=rows))
        return tables

    def _extract_metadata(self, soup: BeautifulSoup) -> Dict[str, str]:
        metadata = {}
        for tag in soup.find_all('meta'):
            key = tag.get('name') or tag.get('property')
            value = tag.get('content')
            if key and value and value.strip():
                metadata[key] = value.strip()
        return metadata

    def _extract_announcements(self, soup: BeautifulSoup) -> List[str]:
        if not self.config.announcement_selectors:
            return []
        announcements = []
        # One combined select keeps document order and returns each element once
        for element in soup.select(', '.join(self.config.announcement_selectors)):
            text = normalize_text(element.get_text(separator=' '))
            if len(text) > self.config.min_announcement_length and text not in announcements:
                announcements.append(text)
        return announcements

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> List[str]:
        """Absolute, fragment-free anchor targets in document order."""
        links = []
        seen = set()
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith('#') or href.lower().startswith(SKIPPED_LINK_SCHEMES):
                continue

            try:
                absolute_url, _ = urldefrag(urljoin(base_url, href))
            except ValueError:
                continue

            if absolute_url.startswith(('http://', 'https://')) and absolute_url not in seen:
                seen.add(absolute_url)
                links.append(absolute_url)
        return links

    def is_likely_relevant(self, content: PageContent) -> bool:
        """
        Cheap keyword pre-filter over the title and the first 1000 characters
        of main text. Gates downstream classification; never drops pages.
        """
        search_text = f"{content.title} {content.main_text[:1000]}".lower()
        return any(keyword in search_text for keyword in self.keywords)

    def _score_article(self, soup: BeautifulSoup) -> int:
        """One point per article indicator present, more for content-rich ones and article markup."""
        score = 0
        for indicator in self.config.article_indicators:
            element = soup.select_one(indicator)
            if element is None:
                continue
            score += 1
            if ('content' in indicator or indicator == 'article') \
                    and len(normalize_text(element.get_text())) > 200:
                score += 2

        schemas = ' '.join(script.string or '' for script in
                           soup.find_all('script', attrs={'type': 'application/ld+json'}))
        if ARTICLE_SCHEMA_PATTERN.search(schemas):
            score += 3

        og_type = soup.find('meta', attrs={'property': 'og:type'})
        if og_type is not None and og_type.get('content') == 'article':
            score += 2
        return score

    def is_article_page(self, content: PageContent) -> bool:
        """
        Tell article pages apart from category, tag and listing pages.

        Rejects category-style paths, paths with fewer than two segments and
        short bodies; the rest must reach the article score threshold.
        """
        path = urlparse(content.url).path
        if any(marker in path for marker in CATEGORY_PATH_MARKERS):
            return False
        if len([segment for segment in path.split('/') if segment]) < 2:
            return False
        if content.body_length < MIN_ARTICLE_BODY_LENGTH:
            return False
        return content.article_score >= ARTICLE_SCORE_THRESHOLD

    def with_article_indicators(self, indicators: List[str]) -> 'ContentExtractor':
        """Copy of this extractor scoring articles with other indicator selectors."""
        return type(self)(replace(self.config, article_indicators=list(indicators)),
                          max_text_length=self.max_text_length)

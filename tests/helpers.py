"""Fakes and page builders shared by the test modules."""

import asyncio
from pathlib import Path

from radar_crawler.crawler.fetcher import FetchResult


FIXTURES = Path(__file__).parent / "fixtures"
SITE = "https://www.example.gov"


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def make_page(title, body, links=()):
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><p>{body}</p>{anchors}</main></body></html>"
    )


def make_article(title, body, links=()):
    """A long dated page marked up as an article."""
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    paragraph = " ".join([body] * 30)
    return (
        f'<html><head><title>{title}</title><meta property="og:type" content="article"></head>'
        f"<body><main><article><h1>{title}</h1><time>2024-06-30</time><p>{paragraph}</p></article>"
        f"{anchors}</main></body></html>"
    )


class FakeFetcher:
    """Serves canned pages keyed by URL and records what was requested."""

    def __init__(self, pages=None, redirects=None, delay=0.0, fail_all=False):
        self.pages = dict(pages or {})
        self.redirects = dict(redirects or {})
        self.delay = delay
        self.fail_all = fail_all
        self.requested = []
        self.gate = None

    async def fetch(self, url):
        self.requested.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        if self.fail_all:
            return FetchResult(url=url, status_code=0, error="Client error: connection refused")

        final_url = self.redirects.get(url, url)
        html = self.pages.get(final_url)
        if html is None:
            return FetchResult(url=url, final_url=final_url, status_code=404, error="HTTP 404")
        return FetchResult(
            url=url,
            final_url=final_url,
            status_code=200,
            content=html,
            content_type="text/html"
        )


class FakeRobots:
    def __init__(self, disallowed=()):
        self.disallowed = set(disallowed)
        self.checked = []

    async def is_allowed(self, url):
        self.checked.append(url)
        return url not in self.disallowed

    def get_stats(self):
        blocked = sum(1 for url in self.checked if url in self.disallowed)
        return {'checks': len(self.checked), 'blocked': blocked, 'downloads': 0,
                'download_failures': 0, 'cached_origins': 0}

    async def close(self):
        pass

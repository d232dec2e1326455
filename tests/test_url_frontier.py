import asyncio

import pytest

from radar_crawler.crawler.url_frontier import (
    FrontierError, LinkScope, URLFrontier, canonicalize_url, is_crawlable_url,
)
from radar_crawler.utils.config import DEFAULT_BLOCKED_PATH_PATTERNS


def test_canonicalize_url():
    assert canonicalize_url("HTTP://Example.COM:80/Path/?q=1#frag") == "http://example.com/Path?q=1"
    assert canonicalize_url("https://example.com/") == "https://example.com"
    assert canonicalize_url("https://example.com") == "https://example.com"
    assert canonicalize_url("https://example.com:443/a") == "https://example.com/a"
    assert canonicalize_url("https://example.com:8443/a/") == "https://example.com:8443/a"


def test_is_crawlable_url():
    assert is_crawlable_url("https://example.com/page")
    assert not is_crawlable_url("ftp://example.com/file")
    assert not is_crawlable_url("/relative/path")
    assert not is_crawlable_url("http://example.com:notaport/")


def test_offer_is_idempotent_on_canonical_form():
    async def scenario():
        frontier = URLFrontier(max_depth=2, max_pages=10)
        assert await frontier.offer("https://example.com/a", 1)
        assert not await frontier.offer("https://example.com/a/", 1)
        assert not await frontier.offer("https://EXAMPLE.com/a#section", 1)
        entry = await frontier.next()
        assert not await frontier.offer("https://example.com/a", 1)
        return entry, await frontier.next()

    entry, empty = asyncio.run(scenario())
    assert entry.url == "https://example.com/a"
    assert empty is None


def test_offer_rejects_entries_beyond_max_depth():
    async def scenario():
        frontier = URLFrontier(max_depth=1, max_pages=10)
        return (
            await frontier.offer("https://example.com/one", 1),
            await frontier.offer("https://example.com/two", 2),
            await frontier.offer("mailto:someone@example.com", 1),
        )

    assert asyncio.run(scenario()) == (True, False, False)


def test_next_is_fifo():
    async def scenario():
        frontier = URLFrontier(max_depth=3, max_pages=10)
        await frontier.seed("https://example.com/")
        await frontier.offer_many(
            ["https://example.com/b", "https://example.com/a", "https://example.com/c"],
            depth=1, parent_url="https://example.com/"
        )
        entries = []
        while True:
            entry = await frontier.next()
            if entry is None:
                break
            entries.append(entry)
        return entries

    entries = asyncio.run(scenario())
    assert [e.url for e in entries] == [
        "https://example.com/",
        "https://example.com/b",
        "https://example.com/a",
        "https://example.com/c",
    ]
    assert [e.order for e in entries] == [0, 1, 2, 3]
    assert entries[1].parent_url == "https://example.com/"


def test_page_budget_caps_dequeues():
    async def scenario():
        frontier = URLFrontier(max_depth=1, max_pages=2)
        await frontier.offer_many([f"https://example.com/{i}" for i in range(5)], depth=0)
        first = await frontier.next()
        second = await frontier.next()
        third = await frontier.next()
        return frontier, first, second, third

    frontier, first, second, third = asyncio.run(scenario())
    assert first is not None and second is not None
    assert third is None
    assert frontier.budget_exhausted
    assert frontier.is_exhausted()
    assert frontier.get_stats()["total_queued"] == 3
    assert frontier.dequeued_count == 2


def test_mark_visited_drops_queued_entry():
    async def scenario():
        frontier = URLFrontier(max_depth=1, max_pages=10)
        await frontier.offer("https://example.com/new", 1)
        await frontier.mark_visited("https://example.com/new/")
        return frontier, await frontier.next()

    frontier, entry = asyncio.run(scenario())
    assert entry is None
    assert frontier.is_visited("https://example.com/new")


def test_concurrent_workers_never_dequeue_twice():
    urls = [f"https://example.com/page/{i % 20}" for i in range(100)]

    async def scenario():
        frontier = URLFrontier(max_depth=1, max_pages=50)

        async def producer(chunk):
            for url in chunk:
                await frontier.offer(url, 1)
                await asyncio.sleep(0)

        async def consumer():
            taken = []
            for _ in range(30):
                entry = await frontier.next()
                if entry is not None:
                    taken.append(entry.canonical_url)
                await asyncio.sleep(0)
            return taken

        results = await asyncio.gather(
            producer(urls[:50]), producer(urls[50:]), consumer(), consumer(), consumer()
        )
        return [url for taken in results[2:] for url in taken]

    dequeued = asyncio.run(scenario())
    assert len(dequeued) == len(set(dequeued))
    assert len(dequeued) <= 20


def test_invalid_budgets_and_seed():
    with pytest.raises(FrontierError):
        URLFrontier(max_depth=-1, max_pages=10)
    with pytest.raises(FrontierError):
        URLFrontier(max_depth=1, max_pages=0)

    async def bad_seed():
        await URLFrontier(max_depth=1, max_pages=1).seed("not a url")

    with pytest.raises(FrontierError):
        asyncio.run(bad_seed())


def test_link_scope_stays_on_seed_host():
    scope = LinkScope("https://www.example.gov/news", blocked_path_patterns=DEFAULT_BLOCKED_PATH_PATTERNS)
    assert scope.allows("https://www.example.gov/news/item-1")
    assert scope.allows("https://WWW.example.gov/about")
    assert not scope.allows("https://other.example.org/news")
    assert not scope.allows("https://www.example.gov/files/report.pdf")
    assert not scope.allows("https://www.example.gov/wp-admin/settings")
    assert not scope.allows("mailto:info@example.gov")


def test_link_scope_external_and_allowed_patterns():
    scope = LinkScope(
        "https://www.example.gov/",
        follow_external_links=True,
        allowed_path_patterns=[r"/circulars/"],
    )
    assert scope.allows("https://mirror.example.org/circulars/42")
    assert not scope.allows("https://www.example.gov/about")

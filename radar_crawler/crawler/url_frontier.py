"""
URL frontier for a single crawl job.
Breadth-first queue with a canonical visited set and depth/page budgets.
"""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set
from urllib.parse import urlparse, urlunparse


DEFAULT_PORTS = {'http': 80, 'https': 443}


class FrontierError(Exception):
    """Frontier invariant violated."""
    pass


def canonicalize_url(url: str) -> str:
    """
    Canonical form used as the frontier dedup key.

    Lower-cases scheme and host, drops default ports, the fragment and any
    trailing slash on the path. Path and query keep their case.
    """
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or '').lower()
    port = parsed.port
    netloc = host
    if port and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    if parsed.username:
        netloc = f"{parsed.username}@{netloc}"

    path = parsed.path.rstrip('/')
    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ''))


def is_crawlable_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(url)
        parsed.port
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.hostname)


@dataclass
class FrontierEntry:
    """A URL waiting to be crawled."""
    url: str
    depth: int
    order: int
    parent_url: Optional[str] = None
    discovered_time: float = field(default_factory=time.time)

    @property
    def canonical_url(self) -> str:
        return canonicalize_url(self.url)


class LinkScope:
    """
    Decides whether a discovered link belongs to the crawl.

    Links must be http(s), stay on the seed host unless external links are
    followed, avoid every blocked pattern and, when allowed patterns are
    given, match at least one of them.
    """

    def __init__(self, seed_url: str, follow_external_links: bool = False,
                 allowed_path_patterns: Optional[List[str]] = None,
                 blocked_path_patterns: Optional[List[str]] = None):
        self.base_host = (urlparse(seed_url).hostname or '').lower()
        self.follow_external_links = follow_external_links
        self.allowed = [re.compile(p, re.IGNORECASE) for p in allowed_path_patterns or []]
        self.blocked = [re.compile(p, re.IGNORECASE) for p in blocked_path_patterns or []]

    def allows(self, url: str) -> bool:
        if not is_crawlable_url(url):
            return False

        host = (urlparse(url).hostname or '').lower()
        if not self.follow_external_links and host != self.base_host:
            return False

        if any(pattern.search(url) for pattern in self.blocked):
            return False

        if self.allowed and not any(pattern.search(url) for pattern in self.allowed):
            return False

        return True


class URLFrontier:
    """
    FIFO frontier owned by one crawl job.

    offer() never queues a canonical URL twice and rejects entries deeper
    than max_depth. next() stops handing out entries once max_pages entries
    have been dequeued, whatever is left in the queue. All mutations run
    under one lock so concurrent workers see a consistent budget.
    """

    def __init__(self, max_depth: int, max_pages: int):
        if max_depth < 0 or max_pages < 1:
            raise FrontierError(f"Invalid frontier budget: max_depth={max_depth}, max_pages={max_pages}")

        self.max_depth = max_depth
        self.max_pages = max_pages
        self.logger = logging.getLogger(__name__)

        self._queue: Deque[FrontierEntry] = deque()
        self._queued: Set[str] = set()
        self._visited: Set[str] = set()
        self._enqueued_count = 0
        self._dequeued_count = 0
        self._max_depth_seen = 0
        self._lock = asyncio.Lock()

    async def seed(self, url: str) -> bool:
        """Queue a depth-0 entry."""
        if not is_crawlable_url(url):
            raise FrontierError(f"Seed URL is not crawlable: {url}")
        return await self.offer(url, 0)

    async def offer(self, url: str, depth: int, parent_url: Optional[str] = None) -> bool:
        """
        Queue a URL at the given depth.
        Returns True if it was queued, False if rejected or already known.
        """
        if depth > self.max_depth or not is_crawlable_url(url):
            return False

        canonical = canonicalize_url(url)
        async with self._lock:
            if canonical in self._visited or canonical in self._queued:
                return False

            entry = FrontierEntry(
                url=url,
                depth=depth,
                order=self._enqueued_count,
                parent_url=parent_url
            )
            self._queue.append(entry)
            self._queued.add(canonical)
            self._enqueued_count += 1

        self.logger.debug(f"Queued {url} at depth {depth}")
        return True

    async def offer_many(self, urls: List[str], depth: int, parent_url: Optional[str] = None) -> int:
        """Offer several URLs at one depth; returns how many were queued."""
        added = 0
        for url in urls:
            if await self.offer(url, depth, parent_url):
                added += 1
        return added

    async def next(self) -> Optional[FrontierEntry]:
        """
        Dequeue the oldest entry, or None when the queue is empty or the
        page budget is spent.
        """
        async with self._lock:
            if self._dequeued_count >= self.max_pages or not self._queue:
                return None

            entry = self._queue.popleft()
            canonical = entry.canonical_url
            self._queued.discard(canonical)
            if canonical in self._visited:
                raise FrontierError(f"URL dequeued twice: {canonical}")
            if entry.depth > self.max_depth:
                raise FrontierError(f"Entry beyond max depth dequeued: {entry.url} ({entry.depth})")

            self._visited.add(canonical)
            self._dequeued_count += 1
            self._max_depth_seen = max(self._max_depth_seen, entry.depth)
            return entry

    async def mark_visited(self, url: str):
        """Record a URL reached another way (e.g. a redirect target)."""
        if not is_crawlable_url(url):
            return
        canonical = canonicalize_url(url)
        async with self._lock:
            if canonical in self._queued:
                self._queue = deque(e for e in self._queue if e.canonical_url != canonical)
                self._queued.discard(canonical)
            self._visited.add(canonical)

    def is_visited(self, url: str) -> bool:
        return canonicalize_url(url) in self._visited

    @property
    def budget_exhausted(self) -> bool:
        return self._dequeued_count >= self.max_pages

    def is_exhausted(self) -> bool:
        """True when nothing more will be handed out."""
        return self.budget_exhausted or not self._queue

    @property
    def dequeued_count(self) -> int:
        return self._dequeued_count

    def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            'total_queued': len(self._queue),
            'total_enqueued': self._enqueued_count,
            'total_dequeued': self._dequeued_count,
            'total_visited': len(self._visited),
            'max_depth_seen': self._max_depth_seen,
        }

"""
robots.txt policy with a per-origin, single-flight cache.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from .url_frontier import DEFAULT_PORTS


def origin_of(url: str) -> str:
    """scheme://host[:port] of a URL, lower-cased, without the scheme's default port."""
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or '').lower()
    port = parsed.port
    if port and DEFAULT_PORTS.get(scheme) != port:
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def parse_disallow_rules(robots_txt: str) -> List[str]:
    """
    Collect Disallow path prefixes.

    Every other directive, comments and blank lines are ignored, as are
    empty Disallow values (which allow everything).
    """
    rules = []
    for raw_line in robots_txt.splitlines():
        line = raw_line.split('#', 1)[0].strip()
        if not line or ':' not in line:
            continue
        directive, value = line.split(':', 1)
        if directive.strip().lower() != 'disallow':
            continue
        value = value.strip()
        if value:
            rules.append(value)
    return rules


def path_matches(path: str, rule: str) -> bool:
    """
    Whether a Disallow rule covers a path.

    A rule matches the identical path, anything under it as a path segment
    ("/admin" covers "/admin/users" but not "/admins"), anything starting
    with the part before a trailing "*", and anything under a rule ending in "/".
    """
    if path == rule:
        return True
    if rule.endswith('*'):
        return path.startswith(rule[:-1])
    if rule.endswith('/'):
        return path.startswith(rule)
    return path.startswith(rule + '/') or path.startswith(rule + '?')


@dataclass
class RobotsRuleSet:
    """Disallow prefixes for one origin."""
    origin: str
    disallow: List[str] = field(default_factory=list)
    fetched_at: float = field(default_factory=time.time)

    def is_allowed(self, path: str) -> bool:
        if not path:
            path = '/'
        return not any(path_matches(path, rule) for rule in self.disallow)


class RobotsPolicy:
    """
    Answers allow/deny queries from cached robots.txt rules.

    Each origin is downloaded at most once per process (until invalidate()).
    Concurrent first lookups for an origin share one download. Any download
    problem (timeout, network error, non-2xx) yields an empty rule set, so
    crawling continues: availability wins over strict compliance here.
    """

    def __init__(self, user_agent: str, timeout: float = 5.0,
                 session: Optional[ClientSession] = None, metrics=None):
        self.user_agent = user_agent
        self.timeout = timeout
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self.session = session
        self._owns_session = session is None
        self._cache: Dict[str, RobotsRuleSet] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

        self.stats = {
            'checks': 0,
            'blocked': 0,
            'downloads': 0,
            'download_failures': 0,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(headers={'User-Agent': self.user_agent})
            self._owns_session = True

    async def close(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def is_allowed(self, url: str) -> bool:
        """Check a URL against its origin's Disallow rules."""
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return True

        self.stats['checks'] += 1
        rules = await self.get_rules(origin_of(url))

        path = parsed.path or '/'
        if parsed.query:
            path = f"{path}?{parsed.query}"

        allowed = rules.is_allowed(path)
        if not allowed:
            self.stats['blocked'] += 1
            self.logger.debug(f"robots.txt disallows {url}")
        return allowed

    async def get_rules(self, origin: str) -> RobotsRuleSet:
        """Cached rules for an origin, downloading them on first use."""
        async with self._lock:
            rules = self._cache.get(origin)
            if rules is not None:
                return rules

            future = self._in_flight.get(origin)
            if future is None:
                future = asyncio.ensure_future(self._load(origin))
                self._in_flight[origin] = future

        # Shielded so one cancelled caller does not cancel the shared download
        return await asyncio.shield(future)

    async def _load(self, origin: str) -> RobotsRuleSet:
        try:
            robots_txt = await self._download(f"{origin}/robots.txt")
            rules = RobotsRuleSet(origin=origin, disallow=parse_disallow_rules(robots_txt or ''))
            self._cache[origin] = rules
            self.logger.info(f"Cached robots.txt for {origin}: {len(rules.disallow)} disallow rules")
            return rules
        finally:
            self._in_flight.pop(origin, None)

    async def _download(self, robots_url: str) -> Optional[str]:
        """Body of a robots.txt, or None when it cannot be used."""
        if self.session is None:
            await self.start()

        self.stats['downloads'] += 1
        try:
            async with self.session.get(
                robots_url,
                timeout=ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.user_agent}
            ) as response:
                if 200 <= response.status < 300:
                    body = await response.text(errors='replace')
                    self._record('ok')
                    return body

                self.logger.info(f"No robots.txt rules for {robots_url} (HTTP {response.status})")
                self._record(f"http_{response.status // 100}xx")
                return None

        except asyncio.TimeoutError:
            self.logger.warning(f"Timeout fetching {robots_url}, allowing all paths")
            self._record('timeout')
        except ClientError as e:
            self.logger.warning(f"Could not fetch {robots_url}: {e}, allowing all paths")
            self._record('error')

        self.stats['download_failures'] += 1
        return None

    def _record(self, result: str):
        if self.metrics:
            self.metrics.record_robots_fetch(result)

    def invalidate(self, origin: Optional[str] = None):
        """Drop one origin's rules, or all of them."""
        if origin is None:
            self._cache.clear()
        else:
            self._cache.pop(origin, None)

    def cached_origins(self) -> List[str]:
        return list(self._cache)

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, 'cached_origins': len(self._cache)}

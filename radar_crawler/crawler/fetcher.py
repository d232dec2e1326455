"""
Web page fetcher with bounded timeouts and size limits.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Optional, Dict
from dataclasses import dataclass
from aiohttp import ClientSession, ClientTimeout, ClientError


CHALLENGE_MARKERS = ('Just a moment', '__cf_chl')


class FetchError(Exception):
    """A page could not be fetched."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        super().__init__(f"{reason} ({url})")
        self.url = url
        self.reason = reason
        self.status_code = status_code


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status_code: int
    final_url: Optional[str] = None
    content: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    error: Optional[str] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300 and self.content is not None

    def raise_for_error(self):
        """Raise FetchError unless this result carries a usable page."""
        if not self.ok:
            raise FetchError(self.url, self.error or "empty response", self.status_code or None)


def looks_like_challenge(html: Optional[str]) -> bool:
    """True for anti-bot interstitials that need a real browser."""
    if not html:
        return False
    return any(marker in html for marker in CHALLENGE_MARKERS)


class WebFetcher:
    """
    Fetches web pages over HTTP with error handling.

    Failures never raise: they come back as a FetchResult with `error` set.
    """

    def __init__(self, user_agent: str, request_timeout: float = 30,
                 max_concurrent_requests: int = 10,
                 max_content_bytes: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_content_bytes = max_content_bytes

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_requests)

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={
                    'User-Agent': self.user_agent,
                    'Accept': 'text/html,application/xhtml+xml',
                },
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    limit_per_host=10,
                    ttl_dns_cache=300
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL, following redirects.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult with the body and final URL, or with `error` set
        """
        if self.session is None:
            await self.start()

        start_time = time.monotonic()

        async with self.semaphore:
            self.stats['total_requests'] += 1
            try:
                async with self.session.get(url, max_redirects=5) as response:
                    headers = dict(response.headers)
                    content_type = response.headers.get('content-type', '').lower()
                    final_url = str(response.url)

                    if not 200 <= response.status < 300:
                        self.stats['failed_requests'] += 1
                        return FetchResult(
                            url=url,
                            final_url=final_url,
                            status_code=response.status,
                            headers=headers,
                            content_type=content_type,
                            error=f"HTTP {response.status}",
                            fetch_time=time.monotonic() - start_time
                        )

                    if not self._is_html_content(content_type):
                        self.stats['failed_requests'] += 1
                        self.logger.debug(f"Skipping non-HTML content: {url} ({content_type})")
                        return FetchResult(
                            url=url,
                            final_url=final_url,
                            status_code=response.status,
                            headers=headers,
                            content_type=content_type,
                            error="Non-HTML content type",
                            fetch_time=time.monotonic() - start_time
                        )

                    content = await self._read_content_safely(response)
                    if content is None:
                        self.stats['failed_requests'] += 1
                        return FetchResult(
                            url=url,
                            final_url=final_url,
                            status_code=response.status,
                            headers=headers,
                            content_type=content_type,
                            error="Content too large or unreadable",
                            fetch_time=time.monotonic() - start_time
                        )

                    self.stats['successful_requests'] += 1
                    self.stats['total_bytes_downloaded'] += len(content)
                    self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} chars)")
                    return FetchResult(
                        url=url,
                        final_url=final_url,
                        status_code=response.status,
                        content=content,
                        headers=headers,
                        content_type=content_type,
                        encoding=response.charset,
                        fetch_time=time.monotonic() - start_time
                    )

            except asyncio.TimeoutError:
                error_msg = "Request timeout"
                self.logger.warning(f"Timeout fetching {url}")

            except ClientError as e:
                error_msg = f"Client error: {e}"
                self.logger.warning(f"Client error fetching {url}: {e}")

            self.stats['failed_requests'] += 1
            return FetchResult(
                url=url,
                status_code=0,
                error=error_msg,
                fetch_time=time.monotonic() - start_time
            )

    def _is_html_content(self, content_type: str) -> bool:
        """Missing content types are given the benefit of the doubt."""
        if not content_type:
            return True
        html_types = ['text/html', 'application/xhtml+xml', 'text/plain']
        return any(html_type in content_type for html_type in html_types)

    async def _read_content_safely(self, response) -> Optional[str]:
        """
        Read the body up to max_content_bytes.

        Returns:
            Decoded text, or None if the body is too large
        """
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_bytes:
            self.logger.warning(f"Content too large ({content_length} bytes): {response.url}")
            return None

        chunks = []
        size = 0
        async for chunk in response.content.iter_chunked(8192):
            size += len(chunk)
            if size > self.max_content_bytes:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                return None
            chunks.append(chunk)

        content_bytes = b''.join(chunks)
        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue
            return content_bytes.decode('latin-1')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()

"""
Headless browser fetcher for pages that refuse plain HTTP clients.
Needs the optional `playwright` dependency (pip install csv-radar-crawler[browser]).
"""

import asyncio
import logging
import time
from typing import Optional

from .fetcher import FetchResult, looks_like_challenge


class BrowserFetcher:
    """
    Fetches one page per navigation in a shared headless Chromium.

    Has the same fetch()/start()/close() surface as WebFetcher and, like it,
    reports failures in FetchResult.error instead of raising.
    """

    def __init__(self, user_agent: str, navigation_timeout: float = 60.0,
                 challenge_wait: float = 8.0, max_concurrent_pages: int = 3):
        self.user_agent = user_agent
        self.navigation_timeout = navigation_timeout
        self.challenge_wait = challenge_wait
        self.logger = logging.getLogger(__name__)
        self.semaphore = asyncio.Semaphore(max_concurrent_pages)

        self._playwright = None
        self._browser = None
        self._context = None
        self._start_lock = asyncio.Lock()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Launch Chromium on first use."""
        async with self._start_lock:
            if self._browser is not None:
                return

            from playwright.async_api import async_playwright

            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=[
                        '--no-sandbox',
                        '--disable-setuid-sandbox',
                        '--disable-blink-features=AutomationControlled',
                        '--disable-dev-shm-usage',
                    ],
                )
                self._context = await self._browser.new_context(user_agent=self.user_agent)
            except Exception:
                # Release a half-started playwright before reporting the launch failure
                await self.close()
                raise
            self.logger.info("Headless browser started")

    async def close(self):
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            self.logger.info("Headless browser closed")

    async def fetch(self, url: str) -> FetchResult:
        """Navigate to a URL and snapshot the rendered DOM."""
        from playwright.async_api import Error as PlaywrightError

        await self.start()
        start_time = time.monotonic()

        async with self.semaphore:
            page = None
            try:
                page = await self._context.new_page()
                response = await page.goto(
                    url,
                    wait_until='domcontentloaded',
                    timeout=self.navigation_timeout * 1000
                )
                status = response.status if response is not None else 200

                html = await page.content()
                if looks_like_challenge(html):
                    # Interstitials usually clear themselves after a few seconds
                    self.logger.debug(f"Challenge page at {url}, waiting {self.challenge_wait}s")
                    await page.wait_for_timeout(self.challenge_wait * 1000)
                    html = await page.content()

                if not 200 <= status < 300:
                    return FetchResult(
                        url=url,
                        final_url=page.url,
                        status_code=status,
                        error=f"HTTP {status}",
                        fetch_time=time.monotonic() - start_time
                    )

                return FetchResult(
                    url=url,
                    final_url=page.url,
                    status_code=status,
                    content=html,
                    content_type='text/html',
                    fetch_time=time.monotonic() - start_time
                )

            except PlaywrightError as e:
                self.logger.warning(f"Browser error fetching {url}: {e}")
                return FetchResult(
                    url=url,
                    status_code=0,
                    error=f"Browser error: {e}",
                    fetch_time=time.monotonic() - start_time
                )
            finally:
                if page is not None:
                    await page.close()

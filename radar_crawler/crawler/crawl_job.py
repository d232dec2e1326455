"""
Crawl job state machine and orchestrator.

A job walks its frontier with a bounded pool of workers: robots check,
polite fetch, extraction, dedup, persistence, then link discovery. Per-page
problems are counted and logged; only frontier corruption, store failures
and cancellation end a job as failed.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from .extractor import ContentExtractor, ExtractionError, PageContent
from .fetcher import FetchError, FetchResult, looks_like_challenge
from .rate_limiter import DomainRateLimiter
from .robots import RobotsPolicy
from .url_frontier import (
    FrontierEntry, FrontierError, LinkScope, URLFrontier, canonicalize_url, is_crawlable_url,
)
from ..storage.database import CrawlJobStore, StoreError, utcnow
from ..storage.duplicate_detector import Deduplicator
from ..storage.models import Document, JobRecord, Source
from ..utils.config import CrawlerConfig
from ..utils.logger import get_crawler_logger


class CrawlConfigError(ValueError):
    """A crawl request that cannot be started."""
    pass


class JobStateError(Exception):
    """Illegal transition, or mutation of a finished job."""
    pass


class CrawlCancelled(Exception):
    pass


class JobStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    DONE = 'done'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.DONE, JobStatus.FAILED},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
}


class PageOutcome(str, Enum):
    STORED = 'stored'
    DUPLICATE = 'duplicate'
    LISTING = 'listing'
    FAILED = 'failed'
    ROBOTS_BLOCKED = 'robots_blocked'


SOURCE_OVERRIDE_KEYS = {
    'max_pages', 'max_depth', 'follow_links', 'respect_robots_txt', 'concurrency',
    'skip_category_pages', 'article_indicators',
}


@dataclass
class CrawlRequest:
    """What to crawl and how far."""
    source_id: str
    start_url: str
    max_pages: int = 50
    max_depth: int = 2
    follow_links: bool = True
    respect_robots_txt: bool = True
    concurrency: int = 3
    source_type: Optional[str] = None
    skip_category_pages: bool = False
    article_indicators: Optional[List[str]] = None

    @classmethod
    def from_config(cls, config: CrawlerConfig, source_id: str, start_url: str,
                    **overrides) -> 'CrawlRequest':
        """Request using configured defaults for anything not overridden."""
        values = {
            'max_pages': config.max_pages,
            'max_depth': config.max_depth,
            'follow_links': config.follow_links,
            'respect_robots_txt': config.respect_robots_txt,
            'concurrency': config.max_concurrent_requests,
            'skip_category_pages': config.skip_category_pages,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(source_id=source_id, start_url=start_url, **values)

    @classmethod
    def from_source(cls, config: CrawlerConfig, source: Source, **overrides) -> 'CrawlRequest':
        """
        Request for a stored source. The source's crawler_config overrides the
        configured defaults, explicit keyword overrides win over both.
        """
        if not source.active:
            raise CrawlConfigError(f"Source {source.id} is not active")

        unknown = set(source.crawler_config) - SOURCE_OVERRIDE_KEYS
        if unknown:
            raise CrawlConfigError(f"Unknown crawler_config keys for source {source.id}: "
                                   f"{', '.join(sorted(unknown))}")

        values = dict(source.crawler_config)
        values['source_type'] = source.type
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_config(config, source_id=source.id, start_url=source.url, **values)

    def validate(self):
        """Raise CrawlConfigError for requests that must not become jobs."""
        if not self.source_id:
            raise CrawlConfigError("source_id is required")
        if not isinstance(self.start_url, str) or not is_crawlable_url(self.start_url):
            raise CrawlConfigError(f"Invalid seed URL: {self.start_url!r}")
        if self.max_pages < 1:
            raise CrawlConfigError("max_pages must be at least 1")
        if self.max_depth < 0:
            raise CrawlConfigError("max_depth must be non-negative")
        if self.concurrency < 1:
            raise CrawlConfigError("concurrency must be at least 1")

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class CrawlCounters:
    pages_crawled: int = 0
    pages_new: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class PageResult:
    """Outcome of one dequeued frontier entry."""
    url: str
    depth: int
    outcome: PageOutcome
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    error: Optional[str] = None
    title: Optional[str] = None
    fingerprint: Optional[str] = None
    links: List[str] = field(default_factory=list)
    elapsed: float = 0.0


class CrawlJob:
    """
    One traversal run over a source.

    Owns its frontier and page results for the lifetime of the run. Status
    moves pending -> running -> done | failed and is frozen afterwards.
    """

    def __init__(self, request: CrawlRequest, store: CrawlJobStore, fetcher,
                 extractor: Optional[ContentExtractor] = None,
                 deduplicator: Optional[Deduplicator] = None,
                 robots: Optional[RobotsPolicy] = None,
                 rate_limiter: Optional[DomainRateLimiter] = None,
                 config: Optional[CrawlerConfig] = None,
                 metrics=None,
                 browser_factory: Optional[Callable] = None,
                 job_id: Optional[str] = None):
        request.validate()

        self.id = job_id or str(uuid.uuid4())
        self.request = request
        self.config = config or CrawlerConfig()
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor or ContentExtractor(max_text_length=self.config.max_text_length)
        if request.article_indicators is not None:
            self.extractor = self.extractor.with_article_indicators(request.article_indicators)
        self.deduplicator = deduplicator or Deduplicator()
        self.robots = robots
        self.rate_limiter = rate_limiter or DomainRateLimiter(self.config.politeness_delay)
        self.metrics = metrics
        self.browser_factory = browser_factory

        self.status = JobStatus.PENDING
        self.counters = CrawlCounters()
        self.created_at = utcnow()
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.error_message: Optional[str] = None
        self.results: List[PageResult] = []

        self.frontier = URLFrontier(max_depth=request.max_depth, max_pages=request.max_pages)
        self.scope = LinkScope(
            request.start_url,
            follow_external_links=self.config.follow_external_links,
            allowed_path_patterns=self.config.allowed_path_patterns,
            blocked_path_patterns=self.config.blocked_path_patterns,
        )

        self._dedup_key = request.source_id if self.config.dedup_scope == 'source' else self.id
        self._active_fetcher = fetcher
        self._browser = None
        self._browser_lock = asyncio.Lock()
        self._browser_error: Optional[Exception] = None
        self._cancel_event = asyncio.Event()
        self._cancel_reason: Optional[str] = None
        self._fatal_error: Optional[BaseException] = None
        self._finished = asyncio.Event()
        self._in_flight = 0
        self._pages_since_update = 0

        self.logger = get_crawler_logger(__name__, job_id=self.id, source_id=request.source_id)

    # -- status ---------------------------------------------------------

    def snapshot(self) -> JobRecord:
        """Immutable view for pollers and the store."""
        return JobRecord(
            id=self.id,
            source_id=self.request.source_id,
            status=self.status.value,
            config=self.request.to_dict(),
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error_message=self.error_message,
            **self.counters.as_dict()
        )

    async def _transition(self, status: JobStatus, error_message: Optional[str] = None,
                          persist: bool = True):
        """Move to a new status; the store sees it before this object does."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise JobStateError(f"Cannot move job {self.id} from {self.status.value} to {status.value}")

        now = utcnow()
        started_at = now if status == JobStatus.RUNNING else None
        completed_at = now if status.is_terminal else None

        if persist:
            await self.store.update_job_status(
                self.id, status.value, self.counters.as_dict(),
                started_at=started_at,
                completed_at=completed_at,
                error_message=error_message
            )

        self.status = status
        if started_at:
            self.started_at = started_at
        if completed_at:
            self.completed_at = completed_at
            self.error_message = error_message
        self.logger.info(f"Status -> {status.value}" + (f" ({error_message})" if error_message else ""))

    async def _fail(self, error_message: str):
        if self.status.is_terminal:
            return
        try:
            await self._transition(JobStatus.FAILED, error_message)
        except StoreError as e:
            self.logger.error(f"Could not persist failure: {e}")
            await self._transition(JobStatus.FAILED, error_message, persist=False)

    def _count(self, counter: str):
        if self.status.is_terminal:
            raise JobStateError(f"Job {self.id} is {self.status.value}; counters are frozen")
        setattr(self.counters, counter, getattr(self.counters, counter) + 1)

    async def _page_finished(self, result: PageResult):
        self.results.append(result)
        self._pages_since_update += 1
        if self._pages_since_update >= self.config.progress_update_every:
            self._pages_since_update = 0
            await self.store.update_job_status(self.id, self.status.value, self.counters.as_dict())

    # -- control --------------------------------------------------------

    def cancel(self, reason: str = "Manually cancelled"):
        """Stop issuing new fetches; the run ends failed once in-flight pages finish."""
        if self.status.is_terminal:
            raise JobStateError(f"Cannot cancel job with status '{self.status.value}'")
        if not self._cancel_event.is_set():
            self._cancel_reason = reason
            self._cancel_event.set()
            self.logger.info(f"Cancellation requested: {reason}")

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    async def wait(self) -> JobRecord:
        await self._finished.wait()
        return self.snapshot()

    def _should_stop(self) -> bool:
        return self._cancel_event.is_set() or self._fatal_error is not None

    def _abort(self, error: BaseException):
        if self._fatal_error is None:
            self._fatal_error = error

    # -- run ------------------------------------------------------------

    async def run(self) -> JobRecord:
        """Drive the job to a terminal status and return its final snapshot."""
        if self.status != JobStatus.PENDING:
            raise JobStateError(f"Job {self.id} already started")

        if self.metrics:
            self.metrics.job_started()

        try:
            if self._cancel_event.is_set():
                raise CrawlCancelled(f"Cancelled: {self._cancel_reason}")

            await self._transition(JobStatus.RUNNING)
            self.logger.info(f"Crawling {self.request.start_url} (max_pages={self.request.max_pages}, "
                             f"max_depth={self.request.max_depth}, follow_links={self.request.follow_links}, "
                             f"concurrency={self.request.concurrency})")

            await self.frontier.seed(self.request.start_url)
            if self.config.browser_mode == 'always':
                await self._switch_to_browser()

            workers = [
                asyncio.create_task(self._worker(f"worker-{i}"))
                for i in range(self.request.concurrency)
            ]
            await asyncio.gather(*workers)

            if self._fatal_error is not None:
                raise self._fatal_error
            if self._cancel_event.is_set():
                raise CrawlCancelled(f"Cancelled: {self._cancel_reason}")

            reason = "page budget reached" if self.frontier.budget_exhausted else "frontier empty"
            self.logger.info(f"Frontier exhausted ({reason}): {self.counters.as_dict()}")
            await self._transition(JobStatus.DONE)

        except asyncio.CancelledError:
            await self._fail("Cancelled: crawl task cancelled")
            raise
        except CrawlCancelled as e:
            await self._fail(str(e))
        except (FrontierError, StoreError) as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            await self._fail(str(e))
        except Exception as e:
            self.logger.error(f"Unexpected fatal error: {e}", exc_info=True)
            await self._fail(f"Unexpected error: {e}")
        finally:
            await self._cleanup()

        return self.snapshot()

    async def _cleanup(self):
        try:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self.config.dedup_scope == 'job':
                await self.deduplicator.forget(self._dedup_key)
        finally:
            if self.metrics:
                self.metrics.job_finished(self.status.value)
            self._finished.set()

    async def _worker(self, worker_id: str):
        self.logger.debug(f"{worker_id} started")

        while not self._should_stop():
            try:
                entry = await self.frontier.next()
                if entry is None:
                    # Others still in flight may discover more links
                    if self.frontier.budget_exhausted or self._in_flight == 0:
                        break
                    await asyncio.sleep(self.config.idle_poll_interval)
                    continue

                self._in_flight += 1
                try:
                    await self._process_entry(entry)
                finally:
                    self._in_flight -= 1

            except Exception as e:
                self.logger.error(f"{worker_id} stopping job: {e}")
                self._abort(e)
                break

        self.logger.debug(f"{worker_id} finished")

    async def _process_entry(self, entry: FrontierEntry):
        start_time = time.monotonic()
        url = entry.url

        if self.request.respect_robots_txt and self.robots is not None:
            if not await self.robots.is_allowed(url):
                self._count('pages_skipped')
                self._record_metric('robots')
                self.logger.log_page_event(logging.INFO, url, 'skipped', "(robots.txt)")
                await self._page_finished(PageResult(
                    url=url, depth=entry.depth, outcome=PageOutcome.ROBOTS_BLOCKED,
                    elapsed=time.monotonic() - start_time
                ))
                return

        fetch_result = await self._fetch(url)
        try:
            fetch_result.raise_for_error()
        except FetchError as e:
            await self._page_failed(entry, e.reason, start_time, e.status_code)
            return

        final_url = fetch_result.final_url or url
        if is_crawlable_url(final_url) and canonicalize_url(final_url) != canonicalize_url(url):
            await self.frontier.mark_visited(final_url)

        try:
            content = await asyncio.wait_for(
                asyncio.to_thread(self.extractor.extract, final_url, fetch_result.content),
                timeout=self.config.extract_timeout
            )
        except asyncio.TimeoutError:
            await self._page_failed(entry, "extraction timeout", start_time, fetch_result.status_code)
            return
        except ExtractionError as e:
            await self._page_failed(entry, str(e), start_time, fetch_result.status_code)
            return
        except Exception as e:
            self.logger.debug(f"Extractor raised for {url}", exc_info=True)
            await self._page_failed(entry, f"extraction error: {e}", start_time, fetch_result.status_code)
            return

        if (self.request.skip_category_pages and entry.depth < self.request.max_depth
                and not self.extractor.is_article_page(content)):
            await self._page_listing(entry, fetch_result, final_url, content, start_time)
            return

        fingerprint = self.deduplicator.fingerprint(content.main_text)
        if not await self.deduplicator.claim(self._dedup_key, fingerprint):
            await self._page_duplicate(entry, fetch_result, content, fingerprint, start_time)
            return

        document = self._build_document(entry, fetch_result, final_url, content, fingerprint)
        if not await self.store.insert_document(document):
            await self._page_duplicate(entry, fetch_result, content, fingerprint, start_time)
            return

        self._count('pages_crawled')
        self._count('pages_new')
        self._record_metric('crawled', fetch_result.fetch_time)
        self._record_metric('new')

        await self._offer_links(entry, final_url, content)

        self.logger.log_page_event(logging.INFO, url, 'stored', f"(depth {entry.depth})")
        await self._page_finished(PageResult(
            url=url,
            depth=entry.depth,
            outcome=PageOutcome.STORED,
            status_code=fetch_result.status_code,
            final_url=final_url,
            title=content.title,
            fingerprint=fingerprint,
            links=content.links,
            elapsed=time.monotonic() - start_time
        ))

    async def _fetch(self, url: str) -> FetchResult:
        """Polite, time-bounded fetch. Never raises for page-level problems."""
        await self.rate_limiter.acquire(url)
        result = await self._fetch_once(url, "Request timeout")

        if (self.config.browser_mode == 'auto' and self._browser is None
                and result.ok and looks_like_challenge(result.content)):
            if self._browser_error is not None:
                return FetchResult(url=url, status_code=result.status_code,
                                   error=f"Challenge page, browser unavailable: {self._browser_error}")

            self.logger.info(f"Challenge page at {url}, switching to headless browser")
            try:
                await self._switch_to_browser()
            except Exception as e:
                self.logger.warning(f"Headless browser unavailable, staying on HTTP fetcher: {e}")
                return FetchResult(url=url, status_code=result.status_code,
                                   error=f"Challenge page, browser unavailable: {e}")

            await self.rate_limiter.acquire(url)
            result = await self._fetch_once(url, "Browser timeout")

        return result

    async def _fetch_once(self, url: str, timeout_error: str) -> FetchResult:
        try:
            return await asyncio.wait_for(
                self._active_fetcher.fetch(url), timeout=self.config.request_timeout
            )
        except asyncio.TimeoutError:
            return FetchResult(url=url, status_code=0, error=timeout_error)
        except Exception as e:
            self.logger.debug(f"Fetcher raised for {url}", exc_info=True)
            return FetchResult(url=url, status_code=0, error=f"Fetch error: {e}")

    async def _switch_to_browser(self):
        """Start the headless browser once; a failed start is remembered and re-raised."""
        async with self._browser_lock:
            if self._browser is not None:
                return
            if self._browser_error is not None:
                raise self._browser_error

            try:
                if self.browser_factory is None:
                    from .browser import BrowserFetcher
                    browser = BrowserFetcher(
                        user_agent=self.config.user_agent,
                        max_concurrent_pages=self.request.concurrency
                    )
                else:
                    browser = self.browser_factory()
                await browser.start()
            except Exception as e:
                self._browser_error = e
                raise

            self._browser = browser
            self._active_fetcher = browser

    async def _offer_links(self, entry: FrontierEntry, final_url: str, content: PageContent):
        if not self.request.follow_links:
            return
        candidates = [link for link in content.links if self.scope.allows(link)]
        added = await self.frontier.offer_many(candidates, entry.depth + 1, parent_url=final_url)
        self.logger.debug(f"Queued {added}/{len(content.links)} links from {final_url}")

    async def _page_listing(self, entry: FrontierEntry, fetch_result: FetchResult, final_url: str,
                            content: PageContent, start_time: float):
        """Category or listing page: not stored, but its links are still followed."""
        self._count('pages_skipped')
        self._record_metric('skipped')
        await self._offer_links(entry, final_url, content)
        self.logger.log_page_event(logging.DEBUG, entry.url, 'skipped', "(not an article page)")
        await self._page_finished(PageResult(
            url=entry.url,
            depth=entry.depth,
            outcome=PageOutcome.LISTING,
            status_code=fetch_result.status_code,
            final_url=final_url,
            title=content.title,
            links=content.links,
            elapsed=time.monotonic() - start_time
        ))

    async def _page_failed(self, entry: FrontierEntry, reason: str, start_time: float,
                           status_code: Optional[int] = None):
        self._count('pages_failed')
        self._record_metric('failed')
        self.logger.log_page_event(logging.WARNING, entry.url, 'failed', f"({reason})")
        await self._page_finished(PageResult(
            url=entry.url,
            depth=entry.depth,
            outcome=PageOutcome.FAILED,
            status_code=status_code,
            error=reason,
            elapsed=time.monotonic() - start_time
        ))

    async def _page_duplicate(self, entry: FrontierEntry, fetch_result: FetchResult,
                              content: PageContent, fingerprint: str, start_time: float):
        self._count('pages_skipped')
        self._record_metric('duplicate')
        self.logger.log_page_event(logging.DEBUG, entry.url, 'duplicate')
        await self._page_finished(PageResult(
            url=entry.url,
            depth=entry.depth,
            outcome=PageOutcome.DUPLICATE,
            status_code=fetch_result.status_code,
            final_url=fetch_result.final_url,
            title=content.title,
            fingerprint=fingerprint,
            elapsed=time.monotonic() - start_time
        ))

    def _build_document(self, entry: FrontierEntry, fetch_result: FetchResult, final_url: str,
                        content: PageContent, fingerprint: str) -> Document:
        return Document(
            id=str(uuid.uuid4()),
            source_id=self.request.source_id,
            crawl_job_id=self.id,
            url=final_url,
            title=content.title,
            content=content.main_text,
            content_hash=fingerprint,
            meta_description=content.meta_description,
            tables=[asdict(table) for table in content.tables],
            metadata=content.metadata,
            announcements=content.announcements,
            depth=entry.depth,
            status_code=fetch_result.status_code,
            likely_relevant=self.extractor.is_likely_relevant(content),
            is_alert=self.request.source_type == 'policy',
            crawled_at=utcnow(),
        )

    def _record_metric(self, outcome: str, fetch_time: Optional[float] = None):
        if self.metrics:
            self.metrics.record_page(outcome, fetch_time)

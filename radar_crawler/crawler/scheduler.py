"""
Crawl scheduler: accepts crawl requests, runs them as background jobs and
answers status queries.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis

from .crawl_job import CrawlJob, CrawlRequest, JobStatus
from .extractor import ContentExtractor
from .fetcher import WebFetcher
from .rate_limiter import DomainRateLimiter
from .robots import RobotsPolicy
from ..storage.database import CrawlJobStore, create_job_store
from ..storage.duplicate_detector import (
    Deduplicator, FingerprintStore, MemoryFingerprintStore, RedisFingerprintStore,
)
from ..storage.models import JobRecord, Source
from ..utils.config import Config


class CrawlScheduler:
    """
    Runs crawl jobs on the current event loop.

    Jobs share one HTTP fetcher, one robots.txt cache and one per-origin rate
    limiter, so politeness holds across concurrent jobs hitting the same site.
    Each job keeps its own frontier and counters.
    """

    def __init__(self, config: Config,
                 store: Optional[CrawlJobStore] = None,
                 fetcher=None,
                 robots: Optional[RobotsPolicy] = None,
                 fingerprint_store: Optional[FingerprintStore] = None,
                 metrics=None,
                 browser_factory: Optional[Callable] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        # Components passed in are owned (and closed) by the caller
        self.store = store
        self.fetcher = fetcher
        self.robots = robots
        self._owns_store = store is None
        self._owns_fetcher = fetcher is None
        self._owns_robots = robots is None
        self._fingerprint_store = fingerprint_store

        self.metrics = metrics
        self.browser_factory = browser_factory
        self.redis_client: Optional[redis.Redis] = None
        self.deduplicator: Optional[Deduplicator] = None
        self.extractor = ContentExtractor(
            config.extractor, max_text_length=config.crawler.max_text_length
        )
        self.rate_limiter = DomainRateLimiter(config.crawler.politeness_delay)

        self.jobs: Dict[str, CrawlJob] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self._initialized = False

    async def initialize(self):
        """Create and connect the shared components."""
        if self._initialized:
            return

        try:
            if self.store is None:
                self.store = create_job_store(self.config.storage)
                await self.store.initialize()

            if self._fingerprint_store is None:
                self._fingerprint_store = await self._create_fingerprint_store()
            self.deduplicator = Deduplicator(self._fingerprint_store)

            if self.fetcher is None:
                crawler_config = self.config.crawler
                self.fetcher = WebFetcher(
                    user_agent=crawler_config.user_agent,
                    request_timeout=crawler_config.request_timeout,
                    max_concurrent_requests=crawler_config.max_concurrent_requests,
                    max_content_bytes=crawler_config.max_content_bytes
                )
                await self.fetcher.start()

            if self.robots is None:
                self.robots = RobotsPolicy(
                    user_agent=self.config.crawler.user_agent,
                    timeout=self.config.crawler.robots_timeout,
                    metrics=self.metrics
                )
                await self.robots.start()

            self._initialized = True
            self.logger.info("Crawl scheduler initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawl scheduler: {e}")
            raise

    async def _create_fingerprint_store(self) -> FingerprintStore:
        redis_config = self.config.redis
        if not redis_config.enabled:
            return MemoryFingerprintStore()

        self.redis_client = redis.Redis(
            host=redis_config.host,
            port=redis_config.port,
            db=redis_config.db,
            password=redis_config.password,
            decode_responses=True
        )
        await self.redis_client.ping()
        self.logger.info("Redis connection established")
        return RedisFingerprintStore(self.redis_client, redis_config.key_prefix)

    async def submit(self, request: CrawlRequest) -> str:
        """
        Validate a request, record the pending job and start it in the background.

        Raises:
            CrawlConfigError: if the request is invalid; no job is created
            StoreError: if the job record cannot be written
        """
        request.validate()
        await self.initialize()

        job = CrawlJob(
            request,
            store=self.store,
            fetcher=self.fetcher,
            extractor=self.extractor,
            deduplicator=self.deduplicator,
            robots=self.robots,
            rate_limiter=self.rate_limiter,
            config=self.config.crawler,
            metrics=self.metrics,
            browser_factory=self.browser_factory
        )
        await self.store.insert_job(job.snapshot())

        self.jobs[job.id] = job
        task = asyncio.create_task(job.run(), name=f"crawl-{job.id}")
        task.add_done_callback(lambda t, job_id=job.id: self._on_job_done(job_id, t))
        self.tasks[job.id] = task

        self.logger.info(f"Submitted job {job.id} for {request.start_url} (source {request.source_id})")
        return job.id

    async def submit_source(self, source: Source, **overrides) -> str:
        """Submit a crawl of a stored source, applying its crawler_config overrides."""
        return await self.submit(CrawlRequest.from_source(self.config.crawler, source, **overrides))

    def _on_job_done(self, job_id: str, task: asyncio.Task):
        self.tasks.pop(job_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Job {job_id} task raised: {error!r}")

    def _get_job(self, job_id: str) -> CrawlJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown crawl job: {job_id}")
        return job

    def get_status(self, job_id: str) -> JobRecord:
        """Snapshot of a job's status, counters and timestamps."""
        return self._get_job(job_id).snapshot()

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobRecord]:
        records = [job.snapshot() for job in self.jobs.values()]
        if status is not None:
            records = [r for r in records if r.status == status.value]
        return records

    def cancel(self, job_id: str, reason: str = "Cancelled by user"):
        """
        Request cancellation. The job stops dequeuing, lets in-flight pages
        finish and ends failed with "Cancelled: <reason>".

        Raises:
            JobStateError: if the job already finished
        """
        self._get_job(job_id).cancel(reason)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> JobRecord:
        """Block until the job is terminal. Raises asyncio.TimeoutError on timeout."""
        job = self._get_job(job_id)
        return await asyncio.wait_for(asyncio.shield(job.wait()), timeout=timeout)

    def get_stats(self) -> Dict:
        """Get scheduler statistics."""
        by_status = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            by_status[job.status.value] += 1

        stats = {
            'jobs': by_status,
            'running_tasks': len(self.tasks),
        }
        if self.robots is not None:
            stats['robots'] = self.robots.get_stats()
        if self.deduplicator is not None:
            stats['deduplicator'] = self.deduplicator.get_stats()
        if isinstance(self.fetcher, WebFetcher):
            stats['fetcher'] = self.fetcher.get_stats()
        if self.metrics is not None:
            stats['metrics'] = self.metrics.get_summary()
        return stats

    async def close(self):
        """Stop running jobs and release shared components."""
        running = list(self.tasks.values())
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
            self.logger.info(f"Stopped {len(running)} running job(s)")

        if self.fetcher is not None and self._owns_fetcher:
            await self.fetcher.close()
        if self.robots is not None and self._owns_robots:
            await self.robots.close()
        if self.deduplicator is not None:
            await self.deduplicator.close()
        if self.store is not None and self._owns_store:
            await self.store.close()

        self.logger.info("Crawl scheduler closed")

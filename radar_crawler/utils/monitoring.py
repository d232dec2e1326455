"""
Prometheus metrics for crawl jobs.
"""

import time
import logging
from typing import Dict, Optional, Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import start_http_server


PAGE_OUTCOMES = ('crawled', 'new', 'failed', 'skipped', 'duplicate', 'robots')


class CrawlMetrics:
    """Collects crawl metrics in a private Prometheus registry."""

    def __init__(self, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.prometheus_port = prometheus_port
        self.start_time = time.time()
        self.registry = CollectorRegistry()

        self.pages_total = Counter(
            'radar_pages_total',
            'Pages processed by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.robots_fetches_total = Counter(
            'radar_robots_fetches_total',
            'robots.txt downloads by result',
            ['result'],
            registry=self.registry
        )
        self.jobs_total = Counter(
            'radar_jobs_total',
            'Crawl jobs that reached a terminal status',
            ['status'],
            registry=self.registry
        )
        self.fetch_seconds = Histogram(
            'radar_fetch_seconds',
            'Page fetch duration',
            registry=self.registry
        )
        self.active_jobs = Gauge(
            'radar_active_jobs',
            'Crawl jobs currently running',
            registry=self.registry
        )

    def start_server(self):
        """Expose the registry over HTTP."""
        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_page(self, outcome: str, fetch_time: Optional[float] = None):
        """Count one page outcome, optionally observing its fetch time."""
        self.pages_total.labels(outcome=outcome).inc()
        if fetch_time is not None:
            self.fetch_seconds.observe(fetch_time)

    def record_robots_fetch(self, result: str):
        self.robots_fetches_total.labels(result=result).inc()

    def job_started(self):
        self.active_jobs.inc()

    def job_finished(self, status: str):
        self.active_jobs.dec()
        self.jobs_total.labels(status=status).inc()

    def _value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def get_summary(self) -> Dict[str, Any]:
        """Current metric values as plain numbers."""
        runtime = time.time() - self.start_time
        pages = {outcome: self._value('radar_pages_total', {'outcome': outcome})
                 for outcome in PAGE_OUTCOMES}
        return {
            'runtime_seconds': runtime,
            'pages': pages,
            'active_jobs': self._value('radar_active_jobs'),
            'jobs': {status: self._value('radar_jobs_total', {'status': status})
                     for status in ('done', 'failed')},
            'pages_per_minute': pages['crawled'] / (runtime / 60) if runtime > 0 else 0,
        }

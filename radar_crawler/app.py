"""
Command line entry point: run one crawl job and report its progress.
"""

import asyncio
import argparse
import logging
import signal
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from . import __version__
from .crawler.crawl_job import CrawlConfigError, CrawlRequest
from .crawler.robots import RobotsPolicy
from .crawler.scheduler import CrawlScheduler
from .utils.config import Config, load_config
from .utils.logger import log_system_info, setup_logging
from .utils.monitoring import CrawlMetrics


class CrawlerApp:
    """Runs a single crawl request from the command line."""

    def __init__(self):
        self.scheduler: Optional[CrawlScheduler] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Turn SIGINT/SIGTERM into a cancellation request."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, cancelling crawl...")
            loop.call_soon_threadsafe(self._shutdown_event.set)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def build_request(self, config: Config, args: argparse.Namespace) -> CrawlRequest:
        source_id = args.source_id or urlparse(args.url).hostname or args.url
        return CrawlRequest.from_config(
            config.crawler,
            source_id=source_id,
            start_url=args.url,
            max_pages=args.max_pages,
            max_depth=args.max_depth,
            follow_links=False if args.no_follow_links else None,
            respect_robots_txt=False if args.ignore_robots else None,
            concurrency=args.concurrency,
            source_type=args.source_type,
            skip_category_pages=True if args.skip_category_pages else None
        )

    async def run(self, args: argparse.Namespace) -> int:
        """Run the crawl. Returns the process exit code."""
        self._shutdown_event = asyncio.Event()
        try:
            config = load_config(args.config)
            setup_logging(config.logging)
            log_system_info()

            request = self.build_request(config, args)
            request.validate()

            self.logger.info("=== RADAR CRAWLER STARTING ===")
            self.logger.info(f"Configuration loaded from: {args.config}")
            self.logger.info(f"Seed URL: {request.start_url} (source {request.source_id})")
            self.logger.info(f"Max pages: {request.max_pages}, max depth: {request.max_depth}")
            self.logger.info(f"Concurrency: {request.concurrency}, "
                             f"politeness delay: {config.crawler.politeness_delay}s")
            self.logger.info(f"Storage type: {config.storage.type}")

            if args.dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                await self._dry_run(config, request)
                return 0

            metrics = None
            if config.monitoring.metrics_enabled:
                metrics = CrawlMetrics(config.monitoring.prometheus_port)
                metrics.start_server()

            self.setup_signal_handlers()
            self.scheduler = CrawlScheduler(config, metrics=metrics)
            await self.scheduler.initialize()

            job_id = await self.scheduler.submit(request)
            record = await self._poll(job_id, args.poll_interval)

            self.logger.info(f"Job {job_id} finished with status '{record.status}': "
                             f"crawled={record.pages_crawled} new={record.pages_new} "
                             f"failed={record.pages_failed} skipped={record.pages_skipped}")
            if record.error_message:
                self.logger.info(f"Error message: {record.error_message}")
            return 0 if record.status == 'done' else 1

        except (CrawlConfigError, ValueError, FileNotFoundError) as e:
            self.logger.error(f"Configuration error: {e}")
            return 1

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== RADAR CRAWLER FINISHED ===")

    async def _poll(self, job_id: str, poll_interval: float):
        """Log progress until the job is terminal, cancelling it on shutdown."""
        cancel_sent = False
        while True:
            record = self.scheduler.get_status(job_id)
            if record.is_terminal:
                return record

            if self._shutdown_event.is_set() and not cancel_sent:
                self.scheduler.cancel(job_id, "Interrupted by signal")
                cancel_sent = True

            self.logger.info(f"Progress [{record.status}]: crawled={record.pages_crawled} "
                             f"failed={record.pages_failed} skipped={record.pages_skipped}")
            try:
                await asyncio.wait_for(self.scheduler.wait(job_id), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _dry_run(self, config: Config, request: CrawlRequest):
        """Check the request against robots.txt without crawling."""
        self.logger.info("Testing robots.txt for the seed URL...")
        async with RobotsPolicy(config.crawler.user_agent, timeout=config.crawler.robots_timeout) as robots:
            allowed = await robots.is_allowed(request.start_url)
            rules = robots.get_stats()

        if allowed:
            self.logger.info(f"✓ Seed URL allowed by robots.txt ({rules['cached_origins']} origin cached)")
        else:
            self.logger.warning("✗ Seed URL is disallowed by robots.txt")
        self.logger.info("Dry run completed")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Radar crawler: crawl one source and store its pages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --url https://www.example.gov/news
  python main.py --url https://www.example.gov --source-type policy --max-pages 20
  python main.py --url https://www.example.gov --no-follow-links
  python main.py --url https://www.example.gov --dry-run
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--url',
        required=True,
        help='Seed URL to crawl'
    )
    parser.add_argument(
        '--source-id',
        help='Source identifier (default: the seed host)'
    )
    parser.add_argument(
        '--source-type',
        help="Source type; 'policy' marks stored documents as alerts"
    )
    parser.add_argument(
        '--max-pages',
        type=int,
        help='Maximum number of pages to crawl'
    )
    parser.add_argument(
        '--max-depth',
        type=int,
        help='Maximum link depth from the seed'
    )
    parser.add_argument(
        '--no-follow-links',
        action='store_true',
        help='Only crawl the seed URL'
    )
    parser.add_argument(
        '--ignore-robots',
        action='store_true',
        help='Do not consult robots.txt'
    )
    parser.add_argument(
        '--skip-category-pages',
        action='store_true',
        help='Follow but do not store category and listing pages'
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        help='Number of concurrent workers'
    )
    parser.add_argument(
        '--poll-interval',
        type=float,
        default=2.0,
        help='Seconds between progress reports (default: 2)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate configuration and check robots.txt without crawling'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'Radar Crawler {__version__}'
    )
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1

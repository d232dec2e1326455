import asyncio

import pytest

from radar_crawler.crawler.crawl_job import CrawlConfigError, CrawlRequest, JobStateError
from radar_crawler.crawler.scheduler import CrawlScheduler
from radar_crawler.storage.database import MemoryJobStore
from radar_crawler.storage.models import Source
from radar_crawler.utils.config import Config

from helpers import SITE, FakeFetcher, FakeRobots, make_page


PAGES = {
    f"{SITE}/": make_page("Home", "Regulator home", ["/news", "/circulars"]),
    f"{SITE}/news": make_page("News", "Latest news"),
    f"{SITE}/circulars": make_page("Circulars", "All circulars"),
}


def _scheduler(crawler_config, fetcher=None, store=None):
    return CrawlScheduler(
        Config(crawler=crawler_config),
        store=store,
        fetcher=fetcher or FakeFetcher(PAGES),
        robots=FakeRobots(),
    )


def _request(**overrides):
    values = dict(source_id="bsp", start_url=f"{SITE}/", max_pages=10, max_depth=1)
    values.update(overrides)
    return CrawlRequest(**values)


def test_submit_returns_immediately_and_job_completes(crawler_config):
    scheduler = _scheduler(crawler_config)

    async def scenario():
        job_id = await scheduler.submit(_request())
        initial = scheduler.get_status(job_id)
        final = await scheduler.wait(job_id, timeout=5)
        stats = scheduler.get_stats()
        await scheduler.close()
        return job_id, initial, final, stats

    job_id, initial, final, stats = asyncio.run(scenario())
    assert initial.status == "pending"
    assert final.status == "done"
    assert final.id == job_id
    assert final.pages_crawled == 3
    assert final.config["max_pages"] == 10
    assert stats["jobs"]["done"] == 1
    assert stats["robots"]["checks"] == 3
    assert scheduler.store.jobs[job_id]["status"] == "done"
    assert len(scheduler.store.documents_for_job(job_id)) == 3


def test_invalid_request_creates_no_job(crawler_config):
    store = MemoryJobStore()
    scheduler = _scheduler(crawler_config, store=store)

    async def scenario():
        try:
            await scheduler.submit(_request(max_pages=0))
        finally:
            await scheduler.close()

    with pytest.raises(CrawlConfigError):
        asyncio.run(scenario())
    assert store.jobs == {}
    assert scheduler.jobs == {}


def test_cancel_running_job(crawler_config):
    fetcher = FakeFetcher(PAGES)
    scheduler = _scheduler(crawler_config, fetcher=fetcher)

    async def scenario():
        fetcher.gate = asyncio.Event()
        job_id = await scheduler.submit(_request())
        while not fetcher.requested:
            await asyncio.sleep(0.005)
        scheduler.cancel(job_id, "operator stop")
        fetcher.gate.set()
        record = await scheduler.wait(job_id, timeout=5)
        with pytest.raises(JobStateError):
            scheduler.cancel(job_id)
        await scheduler.close()
        return record

    record = asyncio.run(scenario())
    assert record.status == "failed"
    assert record.error_message == "Cancelled: operator stop"


def test_wait_times_out_and_close_fails_running_jobs(crawler_config):
    fetcher = FakeFetcher(PAGES)
    scheduler = _scheduler(crawler_config, fetcher=fetcher)

    async def scenario():
        fetcher.gate = asyncio.Event()
        job_id = await scheduler.submit(_request())
        with pytest.raises(asyncio.TimeoutError):
            await scheduler.wait(job_id, timeout=0.05)
        await scheduler.close()
        return scheduler.get_status(job_id)

    record = asyncio.run(scenario())
    assert record.status == "failed"
    assert record.error_message.startswith("Cancelled:")
    assert record.completed_at is not None


def test_jobs_run_side_by_side(crawler_config):
    fetcher = FakeFetcher(PAGES)
    scheduler = _scheduler(crawler_config, fetcher=fetcher)

    async def scenario():
        first = await scheduler.submit(_request(source_id="bsp"))
        second = await scheduler.submit(_request(source_id="sec", follow_links=False))
        records = [await scheduler.wait(job_id, timeout=5) for job_id in (first, second)]
        listed = scheduler.list_jobs()
        await scheduler.close()
        return records, listed

    records, listed = asyncio.run(scenario())
    assert [r.status for r in records] == ["done", "done"]
    assert records[0].pages_new + records[1].pages_new == 3
    assert records[0].pages_skipped + records[1].pages_skipped == 1
    assert len(listed) == 2


def test_unknown_job():
    scheduler = CrawlScheduler(Config())
    with pytest.raises(KeyError):
        scheduler.get_status("missing")


def test_submit_source_uses_source_settings(crawler_config):
    scheduler = _scheduler(crawler_config)
    source = Source(id="bsp", url=f"{SITE}/", type="policy", crawler_config={"max_depth": 0})

    async def scenario():
        job_id = await scheduler.submit_source(source)
        record = await scheduler.wait(job_id, timeout=5)
        await scheduler.close()
        return record

    record = asyncio.run(scenario())
    assert record.status == "done"
    assert record.config["max_depth"] == 0
    assert record.config["source_type"] == "policy"
    assert record.pages_crawled == 1
    assert all(doc.is_alert for doc in scheduler.store.documents.values())

import json
import logging

from radar_crawler.utils.config import LoggingConfig
from radar_crawler.utils.logger import (
    JSONFormatter, PerformanceFilter, get_crawler_logger, setup_logging,
)


def test_adapter_prefixes_job_and_carries_context(caplog):
    logger = get_crawler_logger("radar.test.adapter", job_id="job-7", source_id="bsp")

    with caplog.at_level(logging.INFO, logger="radar.test.adapter"):
        logger.info("Status -> running")

    record = caplog.records[-1]
    assert record.getMessage() == "[job job-7] Status -> running"
    assert record.extra_fields == {"job_id": "job-7", "source_id": "bsp"}


def test_page_events_merge_page_fields(caplog):
    logger = get_crawler_logger("radar.test.pages", job_id="job-7")

    with caplog.at_level(logging.WARNING, logger="radar.test.pages"):
        logger.log_page_event(logging.WARNING, "https://example.gov/a", "failed", "(HTTP 404)")

    record = caplog.records[-1]
    assert record.getMessage() == "[job job-7] failed: https://example.gov/a (HTTP 404)"
    assert record.extra_fields["url"] == "https://example.gov/a"
    assert record.extra_fields["outcome"] == "failed"
    assert record.extra_fields["job_id"] == "job-7"

    payload = json.loads(JSONFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["job_id"] == "job-7"
    assert payload["event_type"] == "page_event"


def test_performance_filter_drops_noisy_loggers():
    noisy = logging.LogRecord("aiohttp.access", logging.INFO, __file__, 1, "GET /", None, None)
    ours = logging.LogRecord("radar_crawler.crawler", logging.INFO, __file__, 1, "hello", None, None)
    log_filter = PerformanceFilter()
    assert not log_filter.filter(noisy)
    assert log_filter.filter(ours)


def test_setup_logging_writes_files(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging(LoggingConfig(level="DEBUG", file=str(tmp_path / "logs" / "crawler.log"), json=True))
        logging.getLogger("radar.test.setup").error("boom")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    lines = (tmp_path / "logs" / "errors.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["message"] == "boom"
    assert (tmp_path / "logs" / "crawler.log").exists()

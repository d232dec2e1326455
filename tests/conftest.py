import pytest

from radar_crawler.utils.config import CrawlerConfig


@pytest.fixture
def crawler_config():
    return CrawlerConfig(
        politeness_delay=0,
        idle_poll_interval=0.005,
        request_timeout=2.0,
        extract_timeout=5.0,
    )

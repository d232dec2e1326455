"""
Configuration management for the crawler.
"""

import re
import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_BLOCKED_PATH_PATTERNS = [
    r'/wp-admin/',
    r'/wp-content/uploads/',
    r'/wp-includes/',
    r'/feed/',
    r'/rss/',
    r'/print/',
    r'/share/',
    r'\.pdf$',
    r'\.xlsx?$',
    r'\.docx?$',
    r'\.pptx?$',
    r'\.zip$',
    r'\.rar$',
    r'\.jpe?g$',
    r'\.png$',
    r'\.gif$',
    r'\.mp4$',
    r'\.mp3$',
]

DEFAULT_CONTENT_SELECTORS = [
    'main',
    'article',
    '[role="main"]',
    '.main-content',
    '.content',
    '#content',
]

DEFAULT_EXCLUSION_SELECTORS = [
    'script', 'style', 'nav', 'footer', 'header', 'iframe', 'noscript',
]

DEFAULT_ANNOUNCEMENT_SELECTORS = [
    '.announcement',
    '.alert',
    '.notice',
    '[class*="announcement"]',
    '[class*="alert"]',
]

DEFAULT_RELEVANCE_KEYWORDS = [
    'circular', 'order', 'resolution', 'memorandum', 'advisory',
    'regulation', 'policy', 'issuance', 'directive', 'guideline',
    'announcement', 'notice', 'press release', 'bulletin',
    'tariff', 'rate', 'compliance', 'requirement',
]

DEFAULT_ARTICLE_INDICATORS = [
    'article',
    '[class*="post"]',
    '.entry-content',
    '.post-content',
    '.article-content',
    '[class*="author"]',
    '.byline',
    'time',
    '[class*="date"]',
    '[class*="published"]',
]

BROWSER_MODES = ('never', 'auto', 'always')
DEDUP_SCOPES = ('job', 'source')
STORAGE_TYPES = ('memory', 'file', 'cassandra')


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 30.0
    robots_timeout: float = 5.0
    extract_timeout: float = 10.0
    politeness_delay: float = 1.0
    max_concurrent_requests: int = 3
    max_pages: int = 50
    max_depth: int = 2
    follow_links: bool = True
    respect_robots_txt: bool = True
    max_content_bytes: int = 10 * 1024 * 1024
    max_text_length: int = 50000
    follow_external_links: bool = False
    allowed_path_patterns: List[str] = field(default_factory=list)
    blocked_path_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_BLOCKED_PATH_PATTERNS))
    browser_mode: str = 'never'
    dedup_scope: str = 'job'
    skip_category_pages: bool = False
    progress_update_every: int = 10
    idle_poll_interval: float = 0.05


@dataclass
class ExtractorConfig:
    """Selector configuration for content extraction."""
    content_selectors: List[str] = field(
        default_factory=lambda: list(DEFAULT_CONTENT_SELECTORS))
    exclusion_selectors: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUSION_SELECTORS))
    announcement_selectors: List[str] = field(
        default_factory=lambda: list(DEFAULT_ANNOUNCEMENT_SELECTORS))
    min_announcement_length: int = 20
    relevance_keywords: List[str] = field(
        default_factory=lambda: list(DEFAULT_RELEVANCE_KEYWORDS))
    article_indicators: List[str] = field(
        default_factory=lambda: list(DEFAULT_ARTICLE_INDICATORS))


@dataclass
class StorageConfig:
    """Configuration for the job/document store."""
    type: str = 'memory'
    file: Dict[str, Any] = field(
        default_factory=lambda: {'data_directory': 'data'})
    cassandra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RedisConfig:
    """Configuration for Redis (source-scoped fingerprints)."""
    enabled: bool = False
    host: str = 'localhost'
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = 'radar:fingerprints'


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: str = 'logs/crawler.log'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        self._config = self.from_dict(config_data)
        self._validate_config()
        return self._config

    @staticmethod
    def from_dict(config_data: Dict[str, Any]) -> Config:
        """Build a Config from a parsed mapping; absent sections use defaults."""
        return Config(
            crawler=CrawlerConfig(**(config_data.get('crawler') or {})),
            extractor=ExtractorConfig(**(config_data.get('extractor') or {})),
            storage=StorageConfig(**(config_data.get('storage') or {})),
            redis=RedisConfig(**(config_data.get('redis') or {})),
            logging=LoggingConfig(**(config_data.get('logging') or {})),
            monitoring=MonitoringConfig(**(config_data.get('monitoring') or {})),
        )

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")
        validate_config(self._config)
        logging.getLogger(__name__).info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Raise ValueError for settings the crawler cannot run with."""
    crawler = config.crawler

    if crawler.max_depth < 0:
        raise ValueError("max_depth must be non-negative")

    if crawler.max_pages < 1:
        raise ValueError("max_pages must be at least 1")

    if crawler.politeness_delay < 0:
        raise ValueError("politeness_delay must be non-negative")

    if crawler.max_concurrent_requests < 1:
        raise ValueError("max_concurrent_requests must be at least 1")

    for name in ('request_timeout', 'robots_timeout', 'extract_timeout'):
        if getattr(crawler, name) <= 0:
            raise ValueError(f"{name} must be positive")

    if crawler.progress_update_every < 1:
        raise ValueError("progress_update_every must be at least 1")

    if crawler.browser_mode not in BROWSER_MODES:
        raise ValueError(f"browser_mode must be one of {', '.join(BROWSER_MODES)}")

    if crawler.dedup_scope not in DEDUP_SCOPES:
        raise ValueError(f"dedup_scope must be one of {', '.join(DEDUP_SCOPES)}")

    if crawler.dedup_scope == 'source' and not config.redis.enabled:
        raise ValueError("dedup_scope 'source' requires redis.enabled")

    for pattern in crawler.allowed_path_patterns + crawler.blocked_path_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid path pattern {pattern!r}: {e}")

    if config.storage.type not in STORAGE_TYPES:
        raise ValueError(f"Storage type must be one of {', '.join(STORAGE_TYPES)}")

    if not config.extractor.content_selectors:
        raise ValueError("At least one content selector must be provided")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()

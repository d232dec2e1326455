"""
Records exchanged with the job store.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Source:
    """
    A crawl target. Read-only input to a crawl.

    `crawler_config` holds per-source overrides of the crawl defaults
    (max_pages, max_depth, skip_category_pages, article_indicators, ...).
    """
    id: str
    url: str
    type: str = 'news'
    country: Optional[str] = None
    sector: Optional[str] = None
    active: bool = True
    crawler_config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobRecord:
    """Point-in-time view of a crawl job, as stored and as returned to pollers."""
    id: str
    source_id: str
    status: str
    pages_crawled: int = 0
    pages_new: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ('done', 'failed')

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('created_at', 'started_at', 'completed_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class Document:
    """
    One accepted page. Immutable once written except for the classification
    fields, which a later pipeline stage fills in.
    """
    id: str
    source_id: str
    crawl_job_id: str
    url: str
    title: str
    content: str
    content_hash: str
    meta_description: Optional[str] = None
    tables: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    announcements: List[str] = field(default_factory=list)
    depth: int = 0
    status_code: int = 200
    likely_relevant: bool = False
    is_alert: bool = False
    classification: str = 'unknown'
    extracted: bool = False
    crawled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['crawled_at'] is not None:
            data['crawled_at'] = data['crawled_at'].isoformat()
        return data

"""
Storage layer for crawl jobs and documents.
"""

from .models import Source, Document, JobRecord
from .database import CrawlJobStore, MemoryJobStore, FileJobStore, StoreError, create_job_store
from .duplicate_detector import Deduplicator, MemoryFingerprintStore, RedisFingerprintStore

__all__ = [
    'Source', 'Document', 'JobRecord',
    'CrawlJobStore', 'MemoryJobStore', 'FileJobStore', 'StoreError', 'create_job_store',
    'Deduplicator', 'MemoryFingerprintStore', 'RedisFingerprintStore'
]

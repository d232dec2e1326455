"""
Job and document persistence.
Supports in-memory, file-based and Cassandra storage.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, List, Any

try:
    from cassandra.cluster import Cluster
    from cassandra.policies import DCAwareRoundRobinPolicy
    CASSANDRA_AVAILABLE = True
except ImportError:
    CASSANDRA_AVAILABLE = False

from .models import Document, JobRecord
from ..utils.config import StorageConfig


class StoreError(Exception):
    """The persistence backend failed or is unavailable."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlJobStore:
    """
    Write-only sink for crawl jobs and their documents.

    insert_document() returns False when the backend already holds a
    document with the same content hash. Backend failures raise StoreError.
    """

    async def initialize(self):
        pass

    async def insert_job(self, job: JobRecord):
        raise NotImplementedError

    async def update_job_status(self, job_id: str, status: str, counters: Dict[str, int],
                                started_at: Optional[datetime] = None,
                                completed_at: Optional[datetime] = None,
                                error_message: Optional[str] = None):
        raise NotImplementedError

    async def insert_document(self, document: Document) -> bool:
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        return {}

    async def close(self):
        pass


class MemoryJobStore(CrawlJobStore):
    """Keeps everything in dictionaries. For embedding and tests."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.documents: Dict[str, Document] = {}
        self.status_history: Dict[str, List[str]] = {}
        self._hashes: Dict[str, str] = {}

    async def insert_job(self, job: JobRecord):
        if job.id in self.jobs:
            raise StoreError(f"Job {job.id} already exists")
        self.jobs[job.id] = job.to_dict()
        self.status_history[job.id] = [job.status]

    async def update_job_status(self, job_id, status, counters, started_at=None,
                                completed_at=None, error_message=None):
        row = self.jobs.get(job_id)
        if row is None:
            raise StoreError(f"Job {job_id} not found")
        row['status'] = status
        row.update(counters)
        if started_at is not None:
            row['started_at'] = started_at.isoformat()
        if completed_at is not None:
            row['completed_at'] = completed_at.isoformat()
        if error_message is not None:
            row['error_message'] = error_message
        history = self.status_history[job_id]
        if history[-1] != status:
            history.append(status)

    async def insert_document(self, document: Document) -> bool:
        if document.content_hash in self._hashes:
            return False
        self._hashes[document.content_hash] = document.id
        self.documents[document.id] = document
        return True

    def documents_for_job(self, job_id: str) -> List[Document]:
        return [d for d in self.documents.values() if d.crawl_job_id == job_id]

    async def get_stats(self) -> Dict[str, Any]:
        return {'total_jobs': len(self.jobs), 'total_documents': len(self.documents)}


class FileJobStore(CrawlJobStore):
    """JSON files on disk for development and small deployments."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self._hash_index: Dict[str, str] = {}
        self.stats = {
            'total_documents': 0,
            'total_jobs': 0,
        }

    @property
    def _index_file(self) -> Path:
        return self.data_directory / 'index' / 'content_hashes.json'

    async def initialize(self):
        """Create the directory layout and load the content-hash index."""
        try:
            for subdir in ('jobs', 'documents', 'index'):
                (self.data_directory / subdir).mkdir(parents=True, exist_ok=True)

            if self._index_file.exists():
                with open(self._index_file, 'r', encoding='utf-8') as f:
                    self._hash_index = json.load(f)

            self.logger.info(f"File storage initialized at {self.data_directory} "
                             f"({len(self._hash_index)} known documents)")
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to initialize file storage: {e}") from e

    def _job_path(self, job_id: str) -> Path:
        return self.data_directory / 'jobs' / f"{job_id}.json"

    def _document_path(self, document: Document) -> Path:
        # First two hash characters shard the directory
        return self.data_directory / 'documents' / document.content_hash[:2] / f"{document.id}.json"

    def _write_json(self, path: Path, data: Dict[str, Any]):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        tmp_path.replace(path)

    async def insert_job(self, job: JobRecord):
        try:
            self._write_json(self._job_path(job.id), job.to_dict())
            self.stats['total_jobs'] += 1
        except OSError as e:
            raise StoreError(f"Error storing job {job.id}: {e}") from e

    async def update_job_status(self, job_id, status, counters, started_at=None,
                                completed_at=None, error_message=None):
        path = self._job_path(job_id)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                row = json.load(f)

            row['status'] = status
            row.update(counters)
            if started_at is not None:
                row['started_at'] = started_at.isoformat()
            if completed_at is not None:
                row['completed_at'] = completed_at.isoformat()
            if error_message is not None:
                row['error_message'] = error_message
            row['updated_at'] = utcnow().isoformat()

            self._write_json(path, row)
        except (OSError, ValueError) as e:
            raise StoreError(f"Error updating job {job_id}: {e}") from e

    async def insert_document(self, document: Document) -> bool:
        if document.content_hash in self._hash_index:
            self.logger.debug(f"Document with hash {document.content_hash[:12]} already stored")
            return False

        try:
            path = self._document_path(document)
            data = document.to_dict()
            data['stored_at'] = utcnow().isoformat()
            self._write_json(path, data)

            self._hash_index[document.content_hash] = str(path.relative_to(self.data_directory))
            self._write_json(self._index_file, self._hash_index)
        except OSError as e:
            raise StoreError(f"Error storing document for {document.url}: {e}") from e

        self.stats['total_documents'] += 1
        self.logger.debug(f"Stored document to {path}")
        return True

    async def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'known_hashes': len(self._hash_index)}


class CassandraJobStore(CrawlJobStore):
    """Cassandra backend for production deployments."""

    def __init__(self, config: Dict[str, Any]):
        if not CASSANDRA_AVAILABLE:
            raise StoreError("Cassandra driver not available. Install cassandra-driver package.")

        self.config = config
        self.cluster = None
        self.session = None
        self.logger = logging.getLogger(__name__)
        self._statements: Dict[str, Any] = {}

    async def initialize(self):
        """Connect, create the keyspace and tables, prepare statements."""
        try:
            self.cluster = Cluster(
                self.config.get('hosts', ['localhost']),
                port=self.config.get('port', 9042),
                load_balancing_policy=DCAwareRoundRobinPolicy()
            )
            self.session = self.cluster.connect()

            keyspace = self.config.get('keyspace', 'radar_crawler')
            replication_factor = self.config.get('replication_factor', 1)
            self.session.execute(f"""
                CREATE KEYSPACE IF NOT EXISTS {keyspace}
                WITH replication = {{
                    'class': 'SimpleStrategy',
                    'replication_factor': {replication_factor}
                }}
            """)
            self.session.set_keyspace(keyspace)
            self._create_tables()
            self._prepare_statements()

            self.logger.info(f"Cassandra storage initialized with keyspace: {keyspace}")
        except Exception as e:
            raise StoreError(f"Failed to initialize Cassandra: {e}") from e

    def _create_tables(self):
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS crawl_jobs (
                id text PRIMARY KEY,
                source_id text,
                status text,
                pages_crawled int,
                pages_new int,
                pages_failed int,
                pages_skipped int,
                crawl_config text,
                created_at timestamp,
                started_at timestamp,
                completed_at timestamp,
                error_message text
            )
        """)
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                content_hash text PRIMARY KEY,
                id text,
                source_id text,
                crawl_job_id text,
                url text,
                title text,
                content text,
                meta_description text,
                tables text,
                metadata map<text, text>,
                announcements list<text>,
                depth int,
                status_code int,
                likely_relevant boolean,
                is_alert boolean,
                classification text,
                extracted boolean,
                crawled_at timestamp
            )
        """)

    def _prepare_statements(self):
        self._statements['insert_job'] = self.session.prepare("""
            INSERT INTO crawl_jobs (id, source_id, status, pages_crawled, pages_new,
                pages_failed, pages_skipped, crawl_config, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        self._statements['update_job'] = self.session.prepare("""
            UPDATE crawl_jobs SET status = ?, pages_crawled = ?, pages_new = ?,
                pages_failed = ?, pages_skipped = ?
            WHERE id = ?
        """)
        self._statements['update_times'] = self.session.prepare("""
            UPDATE crawl_jobs SET started_at = ?, completed_at = ?, error_message = ?
            WHERE id = ?
        """)
        # Lightweight transaction mirrors ON CONFLICT (content_hash) DO NOTHING
        self._statements['insert_document'] = self.session.prepare("""
            INSERT INTO documents (content_hash, id, source_id, crawl_job_id, url, title,
                content, meta_description, tables, metadata, announcements, depth,
                status_code, likely_relevant, is_alert, classification, extracted, crawled_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            IF NOT EXISTS
        """)

    async def insert_job(self, job: JobRecord):
        try:
            self.session.execute(self._statements['insert_job'], (
                job.id, job.source_id, job.status,
                job.pages_crawled, job.pages_new, job.pages_failed, job.pages_skipped,
                json.dumps(job.config), job.created_at,
            ))
        except Exception as e:
            raise StoreError(f"Error storing job {job.id}: {e}") from e

    async def update_job_status(self, job_id, status, counters, started_at=None,
                                completed_at=None, error_message=None):
        try:
            self.session.execute(self._statements['update_job'], (
                status,
                counters.get('pages_crawled', 0), counters.get('pages_new', 0),
                counters.get('pages_failed', 0), counters.get('pages_skipped', 0),
                job_id,
            ))
            if started_at or completed_at or error_message:
                row = self.session.execute(
                    "SELECT started_at, completed_at, error_message FROM crawl_jobs WHERE id = %s",
                    (job_id,)
                ).one()
                self.session.execute(self._statements['update_times'], (
                    started_at or (row.started_at if row else None),
                    completed_at or (row.completed_at if row else None),
                    error_message or (row.error_message if row else None),
                    job_id,
                ))
        except Exception as e:
            raise StoreError(f"Error updating job {job_id}: {e}") from e

    async def insert_document(self, document: Document) -> bool:
        try:
            result = self.session.execute(self._statements['insert_document'], (
                document.content_hash, document.id, document.source_id, document.crawl_job_id,
                document.url, document.title, document.content, document.meta_description,
                json.dumps(document.tables), document.metadata, document.announcements,
                document.depth, document.status_code, document.likely_relevant,
                document.is_alert, document.classification, document.extracted,
                document.crawled_at,
            ))
            return result.was_applied
        except Exception as e:
            raise StoreError(f"Error storing document for {document.url}: {e}") from e

    async def close(self):
        if self.cluster:
            self.cluster.shutdown()
            self.logger.info("Cassandra connections closed")


def create_job_store(config: StorageConfig) -> CrawlJobStore:
    """Build the configured backend (not yet initialized)."""
    backend_type = config.type.lower()

    if backend_type == 'memory':
        return MemoryJobStore()
    if backend_type == 'file':
        return FileJobStore(config.file.get('data_directory', 'data'))
    if backend_type == 'cassandra':
        return CassandraJobStore(config.cassandra)
    raise StoreError(f"Unknown storage type: {backend_type}")

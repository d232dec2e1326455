"""
Duplicate content detection by content fingerprint.
"""

import hashlib
import logging
from typing import Dict, Set

import redis.asyncio as redis

from ..crawler.extractor import normalize_text


class FingerprintStore:
    """Where recorded fingerprints live, keyed by a dedup scope (job or source id)."""

    async def contains(self, scope_key: str, fingerprint: str) -> bool:
        raise NotImplementedError

    async def add(self, scope_key: str, fingerprint: str) -> bool:
        """Record a fingerprint; True if it was not already present."""
        raise NotImplementedError

    async def forget(self, scope_key: str):
        raise NotImplementedError

    async def close(self):
        pass


class MemoryFingerprintStore(FingerprintStore):
    """Process-local sets. The default, per-job scope."""

    def __init__(self):
        self._fingerprints: Dict[str, Set[str]] = {}

    async def contains(self, scope_key: str, fingerprint: str) -> bool:
        return fingerprint in self._fingerprints.get(scope_key, ())

    async def add(self, scope_key: str, fingerprint: str) -> bool:
        seen = self._fingerprints.setdefault(scope_key, set())
        if fingerprint in seen:
            return False
        seen.add(fingerprint)
        return True

    async def forget(self, scope_key: str):
        self._fingerprints.pop(scope_key, None)


class RedisFingerprintStore(FingerprintStore):
    """
    Redis sets, one per scope key. Used for source-scoped dedup so that
    unchanged pages are recognised across jobs and processes.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "radar:fingerprints"):
        self.redis_client = redis_client
        self.key_prefix = key_prefix

    def _key(self, scope_key: str) -> str:
        return f"{self.key_prefix}:{scope_key}"

    async def contains(self, scope_key: str, fingerprint: str) -> bool:
        return bool(await self.redis_client.sismember(self._key(scope_key), fingerprint))

    async def add(self, scope_key: str, fingerprint: str) -> bool:
        # SADD reports how many members were new, which makes check-and-record atomic
        return await self.redis_client.sadd(self._key(scope_key), fingerprint) == 1

    async def forget(self, scope_key: str):
        await self.redis_client.delete(self._key(scope_key))

    async def close(self):
        await self.redis_client.aclose()


class Deduplicator:
    """
    Content-addressed duplicate detection.

    The fingerprint is a SHA-256 digest of the normalized main text, so
    markup churn around identical text does not create new documents.
    """

    def __init__(self, store: FingerprintStore = None):
        self.store = store or MemoryFingerprintStore()
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_checks': 0,
            'duplicates': 0,
        }

    @staticmethod
    def fingerprint(text: str) -> str:
        """Deterministic digest of normalized text."""
        return hashlib.sha256(normalize_text(text).encode('utf-8')).hexdigest()

    async def seen(self, job_id: str, fingerprint: str) -> bool:
        return await self.store.contains(job_id, fingerprint)

    async def record(self, job_id: str, fingerprint: str):
        await self.store.add(job_id, fingerprint)

    async def claim(self, job_id: str, fingerprint: str) -> bool:
        """
        Record a fingerprint if it is new.
        Returns False when the content is a duplicate within the scope.
        """
        self.stats['total_checks'] += 1
        is_new = await self.store.add(job_id, fingerprint)
        if not is_new:
            self.stats['duplicates'] += 1
            self.logger.debug(f"Duplicate fingerprint {fingerprint[:12]} in scope {job_id}")
        return is_new

    async def forget(self, job_id: str):
        """Drop everything recorded for a scope."""
        await self.store.forget(job_id)

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()

    async def close(self):
        await self.store.close()

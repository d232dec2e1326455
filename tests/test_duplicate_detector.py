import asyncio

from radar_crawler.storage.duplicate_detector import (
    Deduplicator, MemoryFingerprintStore, RedisFingerprintStore,
)


class _FakeRedis:
    def __init__(self):
        self.sets = {}
        self.closed = False

    async def sadd(self, key, member):
        members = self.sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def sismember(self, key, member):
        return int(member in self.sets.get(key, set()))

    async def delete(self, key):
        return 1 if self.sets.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


def test_fingerprint_is_deterministic_and_whitespace_insensitive():
    first = Deduplicator.fingerprint("Monetary  Board\napproved")
    second = Deduplicator.fingerprint(" Monetary Board approved ")
    assert first == second
    assert len(first) == 64
    assert first != Deduplicator.fingerprint("Monetary Board rejected")


def test_claim_flags_repeats_within_a_job():
    dedup = Deduplicator()
    fingerprint = Deduplicator.fingerprint("same text")

    async def scenario():
        return (
            await dedup.claim("job-1", fingerprint),
            await dedup.claim("job-1", fingerprint),
            await dedup.claim("job-2", fingerprint),
        )

    assert asyncio.run(scenario()) == (True, False, True)
    assert dedup.get_stats() == {"total_checks": 3, "duplicates": 1}


def test_seen_record_and_forget():
    dedup = Deduplicator(MemoryFingerprintStore())

    async def scenario():
        before = await dedup.seen("job-1", "abc")
        await dedup.record("job-1", "abc")
        during = await dedup.seen("job-1", "abc")
        await dedup.forget("job-1")
        after = await dedup.seen("job-1", "abc")
        return before, during, after

    assert asyncio.run(scenario()) == (False, True, False)


def test_redis_store_scopes_by_key():
    client = _FakeRedis()
    dedup = Deduplicator(RedisFingerprintStore(client, key_prefix="test:fp"))

    async def scenario():
        first = await dedup.claim("source-a", "f1")
        repeat = await dedup.claim("source-a", "f1")
        seen = await dedup.seen("source-a", "f1")
        await dedup.forget("source-a")
        await dedup.close()
        return first, repeat, seen

    assert asyncio.run(scenario()) == (True, False, True)
    assert client.sets == {}
    assert client.closed

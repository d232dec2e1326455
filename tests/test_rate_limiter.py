import asyncio

import pytest

from radar_crawler.crawler.rate_limiter import DomainRateLimiter


def _frozen_clock():
    return 100.0


def test_requests_to_one_origin_are_spaced():
    limiter = DomainRateLimiter(delay=0.01, clock=_frozen_clock)

    async def scenario():
        return [await limiter.acquire("https://example.gov/page") for _ in range(3)]

    waits = asyncio.run(scenario())
    assert waits == pytest.approx([0.0, 0.01, 0.02])


def test_origins_are_independent():
    limiter = DomainRateLimiter(delay=5.0, clock=_frozen_clock)

    async def scenario():
        first = await limiter.acquire("https://example.gov/a")
        other = await limiter.acquire("https://other.example.org/a")
        other_port = await limiter.acquire("https://example.gov:8443/a")
        return first, other, other_port

    assert asyncio.run(scenario()) == (0.0, 0.0, 0.0)


def test_concurrent_callers_reserve_distinct_slots():
    limiter = DomainRateLimiter(delay=0.02)

    async def scenario():
        loop = asyncio.get_running_loop()
        start = loop.time()
        waits = await asyncio.gather(*(limiter.acquire("https://example.gov/x") for _ in range(4)))
        return sorted(waits), loop.time() - start

    waits, elapsed = asyncio.run(scenario())
    assert waits[0] == pytest.approx(0.0, abs=0.005)
    assert waits[-1] == pytest.approx(0.06, abs=0.01)
    assert elapsed >= 0.05


def test_reset_forgets_reservations():
    limiter = DomainRateLimiter(delay=10.0, clock=_frozen_clock)

    async def scenario():
        await limiter.acquire("https://example.gov/")
        limiter.reset()
        return await limiter.acquire("https://example.gov/")

    assert asyncio.run(scenario()) == 0.0


def test_default_port_shares_the_origin_slot():
    limiter = DomainRateLimiter(delay=0.01, clock=_frozen_clock)

    async def scenario():
        await limiter.acquire("https://example.gov/a")
        return await limiter.acquire("https://EXAMPLE.gov:443/b")

    assert asyncio.run(scenario()) == pytest.approx(0.01)

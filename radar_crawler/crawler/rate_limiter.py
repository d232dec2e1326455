"""
Per-origin request spacing.
"""

import asyncio
import logging
import time
from typing import Callable, Dict

from .robots import origin_of


class DomainRateLimiter:
    """
    Keeps consecutive requests to one origin at least `delay` seconds apart.

    Callers reserve the next free slot under the lock and sleep outside it,
    so waiting on one origin never blocks requests to another.
    """

    def __init__(self, delay: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._next_slot: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, url: str) -> float:
        """Wait for this URL's origin slot. Returns the time waited."""
        origin = origin_of(url)
        async with self._lock:
            now = self.clock()
            ready_at = max(now, self._next_slot.get(origin, now))
            self._next_slot[origin] = ready_at + self.delay

        wait = ready_at - now
        if wait > 0:
            self.logger.debug(f"Politeness delay {wait:.2f}s for {origin}")
            await asyncio.sleep(wait)
        return wait

    def reset(self):
        self._next_slot.clear()

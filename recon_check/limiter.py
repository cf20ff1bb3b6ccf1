"""Bounded-parallelism gate for individual profile lookups."""

import asyncio

MIN_CONCURRENCY = 5
MAX_CONCURRENCY = 100
DEFAULT_CONCURRENCY = 30


def clamp_concurrency(value: int) -> int:
    """Clamp a requested concurrency into the supported 5-100 range."""
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


class ConcurrencyLimiter:
    """Counting semaphore that also records how many holders are in flight.

    Create one per validation run so concurrent runs never share permits.
    Release order among waiters is whatever ``asyncio.Semaphore`` provides.

    Usage::

        limiter = ConcurrencyLimiter(30)
        async with limiter:
            await lookup()
    """

    def __init__(self, permits: int):
        if permits < 1:
            raise ValueError("permits must be at least 1")
        self.permits = permits
        self._semaphore = asyncio.Semaphore(permits)
        self.in_flight = 0
        self.peak = 0

    async def acquire(self):
        await self._semaphore.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)

    def release(self):
        self.in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info):
        self.release()

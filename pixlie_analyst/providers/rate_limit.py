"""
Per-workspace rate limiting of provider calls.
"""

import asyncio
import time
from typing import Callable, Dict

import structlog

logger = structlog.get_logger(__name__)


class TokenBucket:
    """
    Async token bucket.

    Waiters are served in arrival order: they queue on an asyncio.Lock,
    which wakes them FIFO, and only the lock holder sleeps for a refill.
    """

    def __init__(
        self,
        rate_per_second: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            rate_per_second: Sustained refill rate
            capacity: Burst size; the bucket starts full
            clock: Monotonic time source, injectable for tests
        """
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate_per_second
        self.capacity = float(capacity)
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, tokens: float = 1.0) -> float:
        """
        Take ``tokens`` from the bucket, waiting for a refill if needed.

        Returns:
            Seconds spent waiting
        """
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than the bucket capacity")

        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                delay = (tokens - self._tokens) / self.rate
                waited += delay
                await asyncio.sleep(delay)


class RateLimiterPool:
    """One TokenBucket per workspace, created on first use."""

    def __init__(self, requests_per_minute: float = 60.0, burst: int = 10):
        self.rate_per_second = requests_per_minute / 60.0
        self.burst = burst
        self._buckets: Dict[str, TokenBucket] = {}

    def bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self.rate_per_second, self.burst)
            self._buckets[key] = bucket
        return bucket

    async def acquire(self, key: str) -> None:
        waited = await self.bucket(key).acquire()
        if waited > 0:
            logger.info("Provider call rate limited", workspace=key, waited_seconds=round(waited, 3))

    def discard(self, key: str) -> None:
        self._buckets.pop(key, None)

"""Token bucket rate limiter for Bitrix24 REST calls."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

logger = logging.getLogger(__name__)

DEFAULT_REQUESTS_PER_SECOND = 2


class TokenBucketRateLimiter:
    """Token bucket rate limiter with a FIFO wait queue.

    Allows a burst of `requests_per_second` calls, then releases one queued
    caller every `1 / requests_per_second` seconds. A queued caller consumes
    the tick that released it; tokens only accumulate while nobody waits.
    The refill task runs only while there is work: it stops once the bucket
    is full and the queue is empty.
    """

    def __init__(self, requests_per_second: int = DEFAULT_REQUESTS_PER_SECOND) -> None:
        if requests_per_second < 1:
            raise ValueError("requests_per_second must be >= 1")
        self.capacity = int(requests_per_second)
        self.tokens = self.capacity
        self.refill_interval = 1.0 / requests_per_second
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._refill_task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        """Number of callers currently queued."""
        return sum(1 for fut in self._waiters if not fut.done())

    @property
    def is_refilling(self) -> bool:
        return self._refill_task is not None and not self._refill_task.done()

    async def acquire(self) -> None:
        """Wait until a slot is available, then consume it."""
        if self.tokens > 0:
            self.tokens -= 1
            self._ensure_refill()
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._ensure_refill()
        await waiter

    def destroy(self) -> None:
        """Stop refilling and drop queued callers without releasing them."""
        if self._refill_task is not None:
            self._refill_task.cancel()
            self._refill_task = None
        self._waiters.clear()

    def _ensure_refill(self) -> None:
        if self.is_refilling:
            return
        self._refill_task = asyncio.get_running_loop().create_task(self._refill_loop())

    def _release_next(self) -> bool:
        while self._waiters:
            waiter = self._waiters.popleft()
            # Cancelled acquirers give their place to the next in line
            if not waiter.done():
                waiter.set_result(None)
                return True
        return False

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refill_interval)
            if self._release_next():
                continue
            self.tokens = min(self.tokens + 1, self.capacity)
            if self.tokens >= self.capacity and not self._waiters:
                logger.debug("Rate limiter idle, refill stopped")
                return

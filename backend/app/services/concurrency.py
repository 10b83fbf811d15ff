"""Concurrency limiter for batch runs.

A counting semaphore that hands out permits strictly in request order.
Use the `slot()` context manager so a permit is always released, even when
the work inside raises.

    limiter = ConcurrencyLimiter(3)
    async with limiter.slot():
        await process(item)
"""
import asyncio
from collections import deque
from contextlib import asynccontextmanager


class ConcurrencyLimiter:
    """FIFO counting semaphore bounding in-flight queue items."""

    def __init__(self, permits: int = 3):
        if permits < 1:
            raise ValueError(f"permits must be >= 1, got {permits}")
        self.permits = permits
        self._available = permits
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def in_use(self) -> int:
        return self.permits - self._available

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        """Take a permit, suspending until one is free.

        A free permit is only taken directly when nobody is queued, so a late
        caller never overtakes an earlier waiter.
        """
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Permit was handed to us right as we were cancelled; pass it on
                self.release()
            else:
                self._remove_waiter(waiter)
            raise

    def release(self) -> None:
        """Return a permit, handing it straight to the oldest live waiter."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Permit transfers without touching the counter
                waiter.set_result(None)
                return
        if self._available >= self.permits:
            raise RuntimeError("ConcurrencyLimiter released more times than acquired")
        self._available += 1

    @asynccontextmanager
    async def slot(self):
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def _remove_waiter(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

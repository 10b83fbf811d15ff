"""Retry backoff policy and the delayed-task scheduler that runs retries.

Retries are fire-and-forget from the dispatcher's point of view: the batch run
that scheduled them does not wait for them. Scheduled retries live only in
this process; after a restart they are re-derived from persisted 'retrying'
items (see app.services.recovery).
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: delay = base_delay_ms * 2^(attempt - 1)."""

    base_delay_ms: int = 1000

    def should_retry(self, retry_count: int, max_retries: int) -> bool:
        """True when one more attempt fits the item's retry budget."""
        return retry_count + 1 <= max_retries

    def delay_ms(self, attempt: int) -> int:
        """Delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return self.base_delay_ms * 2 ** (attempt - 1)

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000.0


class RetryScheduler:
    """Runs coroutines after a delay, tracked per batch job.

    `sleep` is injectable so tests can observe delays without waiting.
    """

    def __init__(self, sleep: SleepFn = asyncio.sleep):
        self._sleep = sleep
        self._tasks: dict[asyncio.Task, object] = {}

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule(
        self,
        delay_seconds: float,
        key,
        callback: Callable[[], Awaitable[None]],
    ) -> asyncio.Task:
        """Run `callback()` after `delay_seconds`. `key` groups tasks (the batch job id)."""

        async def _delayed():
            await self._sleep(delay_seconds)
            await callback()

        task = asyncio.create_task(_delayed())
        self._tasks[task] = key
        task.add_done_callback(self._on_done)
        return task

    def cancel_for(self, key) -> int:
        """Drop every scheduled retry for one batch job. Returns how many were dropped."""
        dropped = 0
        for task, task_key in list(self._tasks.items()):
            if task_key == key and not task.done():
                task.cancel()
                dropped += 1
        return dropped

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def drain(self) -> None:
        """Wait until no retries are scheduled, including ones scheduled meanwhile."""
        while True:
            live = [t for t in self._tasks if not t.done()]
            if not live:
                return
            await asyncio.gather(*live, return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Scheduled retry failed: {exc}", exc_info=exc)

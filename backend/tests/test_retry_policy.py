"""Tests for retry backoff and the delayed retry scheduler."""
import asyncio

import pytest

from app.services.retry_policy import RetryPolicy, RetryScheduler


class TestRetryPolicy:

    def test_delay_doubles_per_attempt(self) -> None:
        policy = RetryPolicy(base_delay_ms=1000)
        assert [policy.delay_ms(n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]
        assert policy.delay_seconds(3) == 4.0

    def test_attempt_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy().delay_ms(0)

    @pytest.mark.parametrize(
        "retry_count,max_retries,expected",
        [(0, 3, True), (2, 3, True), (3, 3, False), (0, 0, False)],
    )
    def test_should_retry(self, retry_count, max_retries, expected) -> None:
        assert RetryPolicy().should_retry(retry_count, max_retries) is expected


class TestRetryScheduler:

    @pytest.mark.asyncio
    async def test_runs_callback_after_sleep(self) -> None:
        slept = []
        ran = []

        async def fake_sleep(delay):
            slept.append(delay)

        async def callback():
            ran.append(True)

        scheduler = RetryScheduler(sleep=fake_sleep)
        scheduler.schedule(2.0, "job-1", callback)
        await scheduler.drain()

        assert slept == [2.0]
        assert ran == [True]
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_cancel_for_drops_only_that_job(self) -> None:
        gate = asyncio.Event()
        ran = []

        async def blocked_sleep(delay):
            await gate.wait()

        def callback_for(name):
            async def callback():
                ran.append(name)
            return callback

        scheduler = RetryScheduler(sleep=blocked_sleep)
        scheduler.schedule(1.0, "job-1", callback_for("a"))
        scheduler.schedule(1.0, "job-1", callback_for("b"))
        scheduler.schedule(1.0, "job-2", callback_for("c"))

        assert scheduler.cancel_for("job-1") == 2
        gate.set()
        await scheduler.drain()

        assert ran == ["c"]

    @pytest.mark.asyncio
    async def test_drain_waits_for_chained_retries(self) -> None:
        slept = []

        async def recording_sleep(delay):
            slept.append(delay)

        scheduler = RetryScheduler(sleep=recording_sleep)
        ran = []

        async def second():
            ran.append("second")

        async def first():
            ran.append("first")
            scheduler.schedule(2.0, "job", second)

        scheduler.schedule(1.0, "job", first)
        await scheduler.drain()

        assert ran == ["first", "second"]
        assert slept == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_drain(self) -> None:
        async def no_sleep(delay):
            return None

        async def broken():
            raise RuntimeError("boom")

        scheduler = RetryScheduler(sleep=no_sleep)
        scheduler.schedule(1.0, "job", broken)
        await scheduler.drain()

        assert scheduler.pending == 0

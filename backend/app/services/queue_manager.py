"""Queue manager - dispatches a batch job's queue items to processors.

One call to `start_processing` is one batch run:

    1. select pending/retrying items (priority desc, oldest first)
    2. dispatch each one under the run's concurrency limiter
    3. on failure, retry with exponential backoff or mark the item failed
    4. once every dispatched attempt has settled, re-aggregate the job status

Retries scheduled by a run are not awaited by it. Per-item failures never
escape a run; systemic ones (no processor, bad config, store outage) mark
the batch 'failed' and are re-raised.

Cancellation is cooperative: cancelling a job flips store state and drops
scheduled retries, but never interrupts a processor that is already running.
Long-running processors can poll `is_batch_cancelled()`.
"""
import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from app.config import settings
from app.models.batch_job import BATCH_TERMINAL_STATUSES, BatchJob
from app.models.queue_item import ELIGIBLE_STATUSES, QueueItem
from app.services.batch_store import BatchStore
from app.services.concurrency import ConcurrencyLimiter
from app.services.exceptions import (
    InvalidStateError,
    NotFoundError,
    ProcessingError,
    StoreError,
    safe_error_message,
)
from app.services.processor_registry import (
    ProcessorRegistry,
    RegisteredProcessor,
    WorkItem,
    default_registry,
)
from app.services.retry_policy import RetryPolicy, RetryScheduler

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_async(fn) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )


def clamp_progress(percent: float) -> float:
    """Clamp a reported percentage into [0, 100]. NaN counts as 0."""
    value = float(percent)
    if math.isnan(value):
        return 0.0
    return max(0.0, min(100.0, value))


def _check_resumable(job: BatchJob) -> None:
    if job.status != "paused":
        raise InvalidStateError("resume", job.status)


@dataclass
class _BatchRun:
    """State shared by every attempt dispatched from one start_processing call."""
    batch_job_id: Any
    job_type: str
    processor: RegisteredProcessor
    config: Any
    limiter: ConcurrencyLimiter


class QueueManager:
    """Orchestrates batch runs over a BatchStore and a ProcessorRegistry."""

    def __init__(
        self,
        store: BatchStore,
        registry: Optional[ProcessorRegistry] = None,
        *,
        concurrency: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        scheduler: Optional[RetryScheduler] = None,
        default_max_retries: Optional[int] = None,
        cancel_check_interval: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry if registry is not None else default_registry
        self.concurrency = concurrency or settings.QUEUE_CONCURRENCY
        self.retry_policy = retry_policy or RetryPolicy(settings.QUEUE_RETRY_DELAY_MS)
        self.scheduler = scheduler or RetryScheduler()
        self.default_max_retries = (
            settings.QUEUE_MAX_RETRIES if default_max_retries is None else default_max_retries
        )
        self.cancel_check_interval = (
            settings.QUEUE_CANCEL_CHECK_INTERVAL
            if cancel_check_interval is None
            else cancel_check_interval
        )

        # Ids of items with an attempt in progress in this process
        self._in_flight: set = set()
        self._background: set[asyncio.Task] = set()

        # In-memory cancel cache; see is_batch_cancelled()
        self._cancelled_jobs: set[str] = set()
        self._cancel_check_times: dict[str, float] = {}

    def register_processor(self, job_type: str, fn, config_model=None):
        return self.registry.register(job_type, fn, config_model)

    # ── Batch lifecycle ──────────────────────────────────────────

    async def create_batch_job(
        self,
        user_id: str,
        name: str,
        items: Sequence[dict],
        job_type: Optional[str] = None,
        job_config: Optional[dict] = None,
        max_retries: Optional[int] = None,
    ) -> BatchJob:
        """Create a batch job with one queue item per entry of `items`.

        The config is checked against the job type's declared model when the
        processor is already registered.
        """
        job_type = job_type or settings.DEFAULT_JOB_TYPE
        config = self.registry.validate_config(job_type, job_config)
        if hasattr(config, "model_dump"):
            config = config.model_dump(mode="json")
        return await self.store.create_batch_job(
            user_id=user_id,
            name=name,
            items=items,
            job_type=job_type,
            job_config=config,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
        )

    async def start_processing(self, batch_job_id, user_id: Optional[str] = None) -> None:
        """Run every eligible item of a batch job and aggregate the result."""
        job = await self.store.get_batch_job(batch_job_id, user_id)
        if job.status == "paused":
            logger.info(f"Batch job {job.id} is paused, not dispatching")
            return

        try:
            items = await self.store.list_eligible_items(job.id)
            if not items:
                logger.info(f"No items to process for batch job {job.id}")
                return

            processor = self.registry.get(job.job_type)
            config = self.registry.validate_config(job.job_type, job.job_config)

            await self.store.mark_batch_started(job.id)
            logger.info(
                f"Processing batch job {job.id} (type={job.job_type}, "
                f"items={len(items)}, concurrency={self.concurrency})"
            )

            run = _BatchRun(
                batch_job_id=job.id,
                job_type=job.job_type,
                processor=processor,
                config=config,
                limiter=ConcurrencyLimiter(self.concurrency),
            )
            # Tasks request permits in creation order, so dispatch follows selection order
            tasks = [asyncio.create_task(self._dispatch(run, item.id)) for item in items]
            results = await asyncio.gather(*tasks, return_exceptions=True)
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                raise errors[0]

            refreshed = await self.store.refresh_batch_progress(job.id)
            logger.info(
                f"Batch job {job.id} run settled: status={refreshed.status}, "
                f"completed={refreshed.completed_items}/{refreshed.total_items}, "
                f"failed={refreshed.failed_items}"
            )

        except Exception as e:
            logger.error(f"Batch job {job.id} failed: {e}", exc_info=True)
            await self._mark_batch_failed(job.id)
            raise

    async def pause_batch_job(self, batch_job_id, user_id: Optional[str] = None) -> BatchJob:
        """Stop future dispatch. In-flight items and queue item state are untouched.

        Raises InvalidStateError for a completed, failed or cancelled job.
        """
        job = await self.store.get_batch_job(batch_job_id, user_id)
        if job.status in BATCH_TERMINAL_STATUSES:
            raise InvalidStateError("pause", job.status)
        await self.store.update_batch_job(job.id, status="paused")
        logger.info(f"Batch job {job.id} paused")
        return await self.store.get_batch_job(job.id)

    async def resume_batch_job(self, batch_job_id, user_id: Optional[str] = None) -> None:
        """Resume a paused job and dispatch its eligible items.

        Raises InvalidStateError unless the job is paused.
        """
        job = await self.store.get_batch_job(batch_job_id, user_id)
        _check_resumable(job)
        await self.store.update_batch_job(job.id, status="processing")
        logger.info(f"Batch job {job.id} resumed")
        await self.start_processing(job.id)

    async def cancel_batch_job(self, batch_job_id, user_id: Optional[str] = None) -> int:
        """Cancel a job and every item that has not started yet.

        Items already processing finish on their own; their outcome is
        recorded but the job stays cancelled.
        Returns the number of items cancelled.
        """
        job = await self.store.get_batch_job(batch_job_id, user_id)
        # Set before any store write; _handle_failure re-checks it after marking an item retrying
        self._cancelled_jobs.add(str(job.id))
        await self.store.update_batch_job(job.id, status="cancelled", completed_at=_now())
        cancelled = await self.store.bulk_update_items(
            job.id, ELIGIBLE_STATUSES, status="cancelled"
        )
        dropped = self.scheduler.cancel_for(job.id)
        logger.info(
            f"Batch job {job.id} cancelled ({cancelled} item(s) cancelled, "
            f"{dropped} scheduled retr{'y' if dropped == 1 else 'ies'} dropped)"
        )
        await self.store.refresh_batch_progress(job.id)
        return cancelled

    async def retry_failed_items(self, batch_job_id, user_id: Optional[str] = None) -> int:
        """Send failed items back to 'pending' with a fresh retry budget.

        Does not start processing; call start_processing afterwards.
        """
        job = await self.store.get_batch_job(batch_job_id, user_id)
        count = await self.store.bulk_update_items(
            job.id,
            ("failed",),
            status="pending",
            retry_count=0,
            error_message=None,
            completed_at=None,
        )
        logger.info(f"Re-queued {count} failed item(s) of batch job {job.id}")
        return count

    async def delete_batch_job(self, batch_job_id, user_id: Optional[str] = None) -> None:
        job = await self.store.get_batch_job(batch_job_id, user_id)
        self.scheduler.cancel_for(job.id)
        await self.store.delete_batch_job(job.id)
        self._forget_cancelled(job.id)

    async def get_queue_stats(self, batch_job_id, user_id: Optional[str] = None) -> dict:
        job = await self.store.get_batch_job(batch_job_id, user_id)
        return await self.store.queue_stats(job.id)

    # ── Background runs ──────────────────────────────────────────

    async def start_in_background(self, batch_job_id, user_id: Optional[str] = None) -> BatchJob:
        """Check the job exists, then run start_processing as a tracked task."""
        job = await self.store.get_batch_job(batch_job_id, user_id)
        self._spawn(self.start_processing(job.id))
        return job

    async def resume_in_background(self, batch_job_id, user_id: Optional[str] = None) -> BatchJob:
        job = await self.store.get_batch_job(batch_job_id, user_id)
        _check_resumable(job)
        self._spawn(self.resume_batch_job(job.id))
        return job

    async def wait_idle(self) -> None:
        """Wait for background runs and every scheduled retry to finish."""
        while self._background or self.scheduler.pending:
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            await self.scheduler.drain()

    async def shutdown(self) -> None:
        self.scheduler.cancel_all()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(self._run_logged(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_logged(self, coro) -> None:
        try:
            await coro
        except Exception as e:
            # Outcome is already persisted on the batch job
            logger.warning(f"Background batch run ended with error: {safe_error_message(e)}")

    # ── Cooperative cancellation ─────────────────────────────────

    async def is_batch_cancelled(self, batch_job_id) -> bool:
        """Check whether a batch job has been cancelled.

        Memory-first: returns immediately once cancel_batch_job() ran here.
        DB fallback: checks the store at most once every cancel_check_interval
        seconds to catch cancellations made by other processes.
        """
        job_key = str(batch_job_id)
        if job_key in self._cancelled_jobs:
            return True
        now = time.monotonic()
        last_check = self._cancel_check_times.get(job_key)
        if last_check is not None and now - last_check < self.cancel_check_interval:
            return False
        self._cancel_check_times[job_key] = now
        try:
            job = await self.store.get_batch_job(batch_job_id)
        except NotFoundError:
            return True
        if job.status == "cancelled":
            self._cancelled_jobs.add(job_key)
            return True
        return False

    def _forget_cancelled(self, batch_job_id) -> None:
        job_key = str(batch_job_id)
        self._cancelled_jobs.discard(job_key)
        self._cancel_check_times.pop(job_key, None)

    # ── Item dispatch ────────────────────────────────────────────

    async def _dispatch(self, run: _BatchRun, item_id) -> None:
        async with run.limiter.slot():
            await self._attempt(run, item_id)

    async def _attempt(self, run: _BatchRun, item_id) -> None:
        """One processing attempt for one item. Caller holds a limiter permit."""
        if item_id in self._in_flight:
            logger.debug(f"Queue item {item_id} already in flight, skipping")
            return
        self._in_flight.add(item_id)
        try:
            item = await self.store.claim_item(item_id)
            if item is None:
                logger.debug(f"Queue item {item_id} no longer eligible, skipping")
                return

            try:
                outcome = await self._invoke(run, item)
            except Exception as e:
                await self._handle_failure(run, item, ProcessingError(item.id, e))
            else:
                await self._mark_completed(item, outcome)
        finally:
            self._in_flight.discard(item_id)

    async def _invoke(self, run: _BatchRun, item: QueueItem) -> Any:
        work = WorkItem(
            id=item.id,
            batch_job_id=item.batch_job_id,
            job_type=run.job_type,
            video_id=item.video_id,
            priority=item.priority,
            retry_count=item.retry_count,
            max_retries=item.max_retries,
            metadata=dict(item.item_metadata or {}),
            config=run.config,
        )
        update_progress = self._progress_callback(item.id)
        fn = run.processor.fn

        if _is_async(fn):
            return await fn(work, update_progress)

        # Sync processors: buffer progress reports and persist them in order afterwards
        reports: list[tuple] = []
        try:
            outcome = fn(work, lambda percent, stage=None: reports.append((percent, stage)))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        finally:
            for percent, stage in reports:
                await update_progress(percent, stage)
        return outcome

    def _progress_callback(self, item_id):
        async def update_progress(percent: float, stage: Optional[str] = None) -> float:
            clamped = clamp_progress(percent)
            fields = {"progress": clamped, "stage_progress": clamped}
            if stage is not None:
                fields["processing_stage"] = stage
            await self.store.update_item(item_id, **fields)
            return clamped
        return update_progress

    async def _mark_completed(self, item: QueueItem, outcome: Any) -> None:
        fields = {"status": "completed", "progress": 100.0, "completed_at": _now()}
        if isinstance(outcome, dict):
            fields["item_metadata"] = {**(item.item_metadata or {}), "result": outcome}
        await self.store.update_item(item.id, **fields)
        logger.info(f"Queue item {item.id} completed")

    async def _handle_failure(self, run: _BatchRun, item: QueueItem, error: ProcessingError) -> None:
        message = safe_error_message(error.cause)
        attempt = item.retry_count + 1

        if self.retry_policy.should_retry(item.retry_count, item.max_retries):
            delay = self.retry_policy.delay_seconds(attempt)
            await self.store.update_item(
                item.id,
                status="retrying",
                retry_count=attempt,
                error_message=message,
            )
            if str(run.batch_job_id) in self._cancelled_jobs:
                await self.store.update_item(item.id, status="cancelled")
                logger.info(f"Queue item {item.id} failed after its batch was cancelled")
                return
            logger.warning(
                f"Queue item {item.id} failed (retry {attempt}/{item.max_retries} "
                f"in {delay:.1f}s): {message}"
            )
            self.scheduler.schedule(delay, run.batch_job_id, lambda: self._retry(run, item.id))
            return

        await self.store.update_item(
            item.id,
            status="failed",
            error_message=message,
            completed_at=_now(),
        )
        logger.error(f"Queue item {item.id} failed permanently after {item.retry_count} retries: {message}")

    async def _retry(self, run: _BatchRun, item_id) -> None:
        """Scheduled re-attempt of a 'retrying' item.

        Systemic failures mark the batch 'failed' like they do in
        start_processing; the retry task itself ends quietly.
        """
        try:
            job = await self.store.get_batch_job(run.batch_job_id)

            if job.status == "cancelled":
                await self.store.bulk_update_items(job.id, ("retrying",), status="cancelled")
                await self.store.refresh_batch_progress(job.id)
                return
            if job.status == "paused":
                logger.info(f"Batch job {job.id} is paused, item {item_id} waits for resume")
                return

            async with run.limiter.slot():
                await self._attempt(run, item_id)
            await self.store.refresh_batch_progress(job.id)

        except NotFoundError:
            logger.info(f"Batch job {run.batch_job_id} is gone, dropping retry of item {item_id}")
        except Exception as e:
            logger.error(
                f"Retry of item {item_id} in batch job {run.batch_job_id} failed: {e}",
                exc_info=True,
            )
            await self._mark_batch_failed(run.batch_job_id)

    async def _mark_batch_failed(self, batch_job_id) -> None:
        """Mark a batch failed after a systemic error.

        Tries up to 3 times so a transient store error does not leave the job
        stuck in 'processing'.
        """
        for attempt in range(3):
            try:
                await self.store.update_batch_job(
                    batch_job_id, status="failed", completed_at=_now()
                )
                return
            except StoreError as db_err:
                logger.error(
                    f"Failed to mark batch job {batch_job_id} as failed "
                    f"(attempt {attempt + 1}/3): {db_err}"
                )
                if attempt < 2:
                    await asyncio.sleep(1)

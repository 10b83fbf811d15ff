"""Persistent job store for batch jobs and their queue items.

Every call opens its own short-lived AsyncSession, so concurrent dispatch
tasks never share a session. SQLAlchemy failures are re-raised as
StoreError; missing or foreign-owned rows raise NotFoundError.

Job-level operations accept an optional `user_id`. When given, the row must
belong to that user (the ownership boundary); internal callers such as the
queue manager's retry path pass None once ownership has been checked.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.batch_job import BatchJob
from app.models.queue_item import ELIGIBLE_STATUSES, ITEM_STATUSES, QueueItem
from app.services.aggregation import ItemCounts, plan_batch_update
from app.services.exceptions import NotFoundError, StoreError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dispatch_order():
    return (QueueItem.priority.desc(), QueueItem.created_at.asc(), QueueItem.position.asc())


class BatchStore:
    """SQLAlchemy-backed store. Pass the session factory to use."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    # ── Batch jobs ───────────────────────────────────────────────

    async def create_batch_job(
        self,
        user_id: str,
        name: str,
        items: Sequence[dict],
        job_type: str = "video_processing",
        job_config: Optional[dict] = None,
        max_retries: int = 3,
    ) -> BatchJob:
        """Insert a batch job and its queue items in one transaction.

        Each entry of `items` may carry video_id, priority, max_retries and
        metadata. Priority defaults to the item's index in the batch.
        """
        now = _now()
        async with self._session() as db:
            job = BatchJob(
                user_id=user_id,
                name=name,
                job_type=job_type,
                job_config=job_config or {},
                total_items=len(items),
                status="pending",
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            await db.flush()

            for index, entry in enumerate(items):
                priority = entry.get("priority")
                item_max_retries = entry.get("max_retries")
                db.add(QueueItem(
                    batch_job_id=job.id,
                    video_id=entry.get("video_id"),
                    position=index,
                    priority=index if priority is None else priority,
                    max_retries=max_retries if item_max_retries is None else item_max_retries,
                    item_metadata=dict(entry.get("metadata") or {}),
                    status="pending",
                    created_at=now,
                    updated_at=now,
                ))
            await db.commit()
            logger.info(f"Created batch job {job.id} ({job.job_type}) with {len(items)} item(s)")
            return job

    async def get_batch_job(self, batch_job_id, user_id: Optional[str] = None) -> BatchJob:
        async with self._session() as db:
            job = await db.get(BatchJob, batch_job_id)
            if job is None or (user_id is not None and job.user_id != user_id):
                raise NotFoundError("Batch job", batch_job_id)
            return job

    async def list_batch_jobs(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BatchJob]:
        """List a user's batch jobs, newest first."""
        query = select(BatchJob).where(BatchJob.user_id == user_id)
        if status:
            query = query.where(BatchJob.status == status)
        query = query.order_by(BatchJob.created_at.desc()).limit(limit).offset(offset)
        async with self._session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def update_batch_job(self, batch_job_id, **fields) -> None:
        async with self._session() as db:
            result = await db.execute(
                update(BatchJob).where(BatchJob.id == batch_job_id).values(**fields)
            )
            await db.commit()
            if result.rowcount == 0:
                raise NotFoundError("Batch job", batch_job_id)

    async def mark_batch_started(self, batch_job_id) -> None:
        """Set status 'processing', stamping started_at only if it is unset."""
        now = _now()
        async with self._session() as db:
            await db.execute(
                update(BatchJob)
                .where(BatchJob.id == batch_job_id)
                .values(
                    status="processing",
                    started_at=func.coalesce(BatchJob.started_at, now),
                )
            )
            await db.commit()

    async def delete_batch_job(self, batch_job_id, user_id: Optional[str] = None) -> None:
        """Delete a batch job and, with it, all of its queue items."""
        async with self._session() as db:
            job = await db.get(BatchJob, batch_job_id)
            if job is None or (user_id is not None and job.user_id != user_id):
                raise NotFoundError("Batch job", batch_job_id)
            # Explicit so the cascade also holds on SQLite without FK enforcement
            await db.execute(delete(QueueItem).where(QueueItem.batch_job_id == batch_job_id))
            await db.execute(delete(BatchJob).where(BatchJob.id == batch_job_id))
            await db.commit()

    async def refresh_batch_progress(self, batch_job_id) -> BatchJob:
        """Re-count a job's items and persist the aggregated status."""
        async with self._session() as db:
            job = await db.get(BatchJob, batch_job_id)
            if job is None:
                raise NotFoundError("Batch job", batch_job_id)
            counts = await self._item_counts(db, batch_job_id)
            fields = plan_batch_update(
                ItemCounts(
                    total=sum(counts.values()),
                    completed=counts["completed"],
                    failed=counts["failed"],
                ),
                current_status=job.status,
                started_at=job.started_at,
                completed_at=job.completed_at,
                now=_now(),
            )
            for key, value in fields.items():
                setattr(job, key, value)
            await db.commit()
            return job

    async def processing_stats(self, user_id: str) -> dict:
        """Dashboard summary across a user's batch jobs."""
        async with self._session() as db:
            result = await db.execute(
                select(BatchJob.status, func.count())
                .where(BatchJob.user_id == user_id)
                .group_by(BatchJob.status)
            )
            by_status = dict(result.all())
        return {
            "total_jobs": sum(by_status.values()),
            "active_jobs": by_status.get("processing", 0),
            "completed_jobs": by_status.get("completed", 0),
            "failed_jobs": by_status.get("failed", 0),
        }

    async def list_resumable_jobs(self) -> list[BatchJob]:
        """Jobs whose run was interrupted.

        That is 'processing' jobs with pending or retrying items, and jobs that
        fell back to 'pending' while their items waited for a retry. Jobs that
        were never started are not included.
        """
        def has_items(statuses):
            return (
                select(QueueItem.id)
                .where(
                    QueueItem.batch_job_id == BatchJob.id,
                    QueueItem.status.in_(statuses),
                )
                .exists()
            )

        async with self._session() as db:
            result = await db.execute(
                select(BatchJob)
                .where(
                    or_(
                        and_(BatchJob.status == "processing", has_items(ELIGIBLE_STATUSES)),
                        and_(BatchJob.status == "pending", has_items(("retrying",))),
                    )
                )
                .order_by(BatchJob.created_at)
            )
            return list(result.scalars().all())

    # ── Queue items ──────────────────────────────────────────────

    async def get_item(self, item_id, user_id: Optional[str] = None) -> QueueItem:
        async with self._session() as db:
            query = select(QueueItem).where(QueueItem.id == item_id)
            if user_id is not None:
                query = query.join(BatchJob, QueueItem.batch_job_id == BatchJob.id).where(
                    BatchJob.user_id == user_id
                )
            item = (await db.execute(query)).scalar_one_or_none()
            if item is None:
                raise NotFoundError("Queue item", item_id)
            return item

    async def list_items(self, batch_job_id) -> list[QueueItem]:
        """All items of a job in dispatch order."""
        async with self._session() as db:
            result = await db.execute(
                select(QueueItem)
                .where(QueueItem.batch_job_id == batch_job_id)
                .order_by(*_dispatch_order())
            )
            return list(result.scalars().all())

    async def list_eligible_items(self, batch_job_id) -> list[QueueItem]:
        """Pending and retrying items, priority desc then oldest first."""
        async with self._session() as db:
            result = await db.execute(
                select(QueueItem)
                .where(
                    QueueItem.batch_job_id == batch_job_id,
                    QueueItem.status.in_(ELIGIBLE_STATUSES),
                )
                .order_by(*_dispatch_order())
            )
            return list(result.scalars().all())

    async def claim_item(self, item_id) -> Optional[QueueItem]:
        """Move an item to 'processing' only if it is still pending or retrying.

        Returns the claimed item, or None when another dispatcher got there
        first or the item was cancelled meanwhile.
        """
        async with self._session() as db:
            result = await db.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id, QueueItem.status.in_(ELIGIBLE_STATUSES))
                .values(status="processing", started_at=_now())
            )
            await db.commit()
            if result.rowcount == 0:
                return None
            return await db.get(QueueItem, item_id)

    async def update_item(self, item_id, **fields) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(QueueItem).where(QueueItem.id == item_id).values(**fields)
            )
            await db.commit()
            return result.rowcount

    async def bulk_update_items(self, batch_job_id, statuses: Sequence[str], **fields) -> int:
        """Update every item of a job currently in one of `statuses`."""
        async with self._session() as db:
            result = await db.execute(
                update(QueueItem)
                .where(
                    QueueItem.batch_job_id == batch_job_id,
                    QueueItem.status.in_(tuple(statuses)),
                )
                .values(**fields)
            )
            await db.commit()
            return result.rowcount

    async def reset_stale_items(self, cutoff: datetime) -> list[uuid.UUID]:
        """Put items stuck in 'processing' since before `cutoff` back to 'pending'.

        Returns the ids of the affected batch jobs.
        """
        async with self._session() as db:
            result = await db.execute(
                select(QueueItem).where(
                    QueueItem.status == "processing",
                    QueueItem.started_at < cutoff,
                )
            )
            stale = result.scalars().all()
            for item in stale:
                item.status = "pending"
                item.started_at = None
                logger.warning(f"Recovered stale queue item {item.id} (batch {item.batch_job_id})")
            if stale:
                await db.commit()
            return list({item.batch_job_id for item in stale})

    async def queue_stats(self, batch_job_id) -> dict:
        """Item counts per status, plus the total."""
        async with self._session() as db:
            counts = await self._item_counts(db, batch_job_id)
        return {"total": sum(counts.values()), **counts}

    async def _item_counts(self, db: AsyncSession, batch_job_id) -> dict[str, int]:
        result = await db.execute(
            select(QueueItem.status, func.count())
            .where(QueueItem.batch_job_id == batch_job_id)
            .group_by(QueueItem.status)
        )
        counts = {status: 0 for status in ITEM_STATUSES}
        for status, count in result.all():
            counts[status] = count
        return counts

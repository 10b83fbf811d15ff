"""Tests for the SQLAlchemy batch store (SQLite via aiosqlite)."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.services.exceptions import NotFoundError
from conftest import make_items


async def create_job(store, *video_ids, user_id="user-1", **kwargs):
    items = kwargs.pop("items", None) or make_items(*video_ids)
    return await store.create_batch_job(user_id=user_id, name="Uploads", items=items, **kwargs)


class TestBatchJobs:

    @pytest.mark.asyncio
    async def test_create_persists_job_and_items(self, store) -> None:
        job = await create_job(store, "a", "b", "c", job_config={"language": "en"})

        loaded = await store.get_batch_job(job.id, "user-1")
        assert loaded.status == "pending"
        assert loaded.total_items == 3
        assert loaded.job_config == {"language": "en"}
        assert loaded.started_at is None

        items = await store.list_items(job.id)
        assert [i.status for i in items] == ["pending"] * 3
        assert all(i.retry_count == 0 and i.max_retries == 3 for i in items)

    @pytest.mark.asyncio
    async def test_priority_defaults_to_index(self, store) -> None:
        job = await create_job(store, "a", "b", "c")

        items = await store.list_items(job.id)
        assert [(i.video_id, i.priority) for i in items] == [("c", 2), ("b", 1), ("a", 0)]

    @pytest.mark.asyncio
    async def test_item_overrides(self, store) -> None:
        job = await create_job(
            store,
            items=[{"video_id": "a", "max_retries": 0, "metadata": {"title": "Intro"}}],
            max_retries=5,
        )

        [item] = await store.list_items(job.id)
        assert item.max_retries == 0
        assert item.item_metadata == {"title": "Intro"}

    @pytest.mark.asyncio
    async def test_other_users_job_is_not_found(self, store) -> None:
        job = await create_job(store, "a")

        with pytest.raises(NotFoundError):
            await store.get_batch_job(job.id, "someone-else")
        with pytest.raises(NotFoundError):
            await store.get_batch_job(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_batch_jobs_scoped_to_user(self, store) -> None:
        mine = await create_job(store, "a")
        await create_job(store, "b", user_id="user-2")

        jobs = await store.list_batch_jobs("user-1")
        assert [j.id for j in jobs] == [mine.id]
        assert await store.list_batch_jobs("user-1", status="completed") == []

    @pytest.mark.asyncio
    async def test_update_missing_job_raises(self, store) -> None:
        with pytest.raises(NotFoundError):
            await store.update_batch_job(uuid.uuid4(), status="paused")

    @pytest.mark.asyncio
    async def test_mark_batch_started_only_stamps_once(self, store) -> None:
        job = await create_job(store, "a")

        await store.mark_batch_started(job.id)
        first = (await store.get_batch_job(job.id)).started_at
        await store.mark_batch_started(job.id)
        second = await store.get_batch_job(job.id)

        assert second.status == "processing"
        assert first is not None
        assert second.started_at == first

    @pytest.mark.asyncio
    async def test_delete_removes_items(self, store) -> None:
        job = await create_job(store, "a", "b")

        await store.delete_batch_job(job.id, "user-1")

        with pytest.raises(NotFoundError):
            await store.get_batch_job(job.id)
        assert await store.list_items(job.id) == []

    @pytest.mark.asyncio
    async def test_refresh_batch_progress(self, store) -> None:
        job = await create_job(store, "a", "b")
        first, second = await store.list_items(job.id)

        await store.update_item(first.id, status="completed")
        refreshed = await store.refresh_batch_progress(job.id)
        assert refreshed.status == "processing"
        assert refreshed.completed_items == 1
        assert refreshed.started_at is not None

        await store.update_item(second.id, status="failed")
        refreshed = await store.refresh_batch_progress(job.id)
        assert refreshed.status == "failed"
        assert refreshed.failed_items == 1
        assert refreshed.completed_at is not None
        assert refreshed.progress == 50.0

    @pytest.mark.asyncio
    async def test_processing_stats(self, store) -> None:
        active = await create_job(store, "a")
        done = await create_job(store, "b")
        await create_job(store, "c", user_id="user-2")
        await store.update_batch_job(active.id, status="processing")
        await store.update_batch_job(done.id, status="completed")

        stats = await store.processing_stats("user-1")
        assert stats == {
            "total_jobs": 2,
            "active_jobs": 1,
            "completed_jobs": 1,
            "failed_jobs": 0,
        }


class TestQueueItems:

    @pytest.mark.asyncio
    async def test_eligible_items_priority_then_age(self, store) -> None:
        job = await create_job(
            store,
            items=[
                {"video_id": "A", "priority": 5},
                {"video_id": "B", "priority": 1},
                {"video_id": "C", "priority": 5},
            ],
        )

        items = await store.list_eligible_items(job.id)
        assert [i.video_id for i in items] == ["A", "C", "B"]

    @pytest.mark.asyncio
    async def test_eligible_excludes_settled_items(self, store) -> None:
        job = await create_job(store, "a", "b", "c", "d")
        a, b, c, d = await store.list_items(job.id)
        await store.update_item(a.id, status="completed")
        await store.update_item(b.id, status="retrying", retry_count=1)
        await store.update_item(c.id, status="processing")

        eligible = await store.list_eligible_items(job.id)
        assert {i.id for i in eligible} == {b.id, d.id}

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, store) -> None:
        job = await create_job(store, "a")
        [item] = await store.list_items(job.id)

        claimed = await store.claim_item(item.id)
        assert claimed.status == "processing"
        assert claimed.started_at is not None
        assert await store.claim_item(item.id) is None

    @pytest.mark.asyncio
    async def test_get_item_checks_owner(self, store) -> None:
        job = await create_job(store, "a")
        [item] = await store.list_items(job.id)

        assert (await store.get_item(item.id, "user-1")).id == item.id
        with pytest.raises(NotFoundError):
            await store.get_item(item.id, "user-2")

    @pytest.mark.asyncio
    async def test_bulk_update_only_touches_matching_statuses(self, store) -> None:
        job = await create_job(store, "a", "b", "c")
        a, _, _ = await store.list_items(job.id)
        await store.update_item(a.id, status="completed")

        count = await store.bulk_update_items(job.id, ("pending", "retrying"), status="cancelled")

        assert count == 2
        stats = await store.queue_stats(job.id)
        assert stats["cancelled"] == 2
        assert stats["completed"] == 1
        assert stats["total"] == 3

    @pytest.mark.asyncio
    async def test_reset_stale_items(self, store) -> None:
        job = await create_job(store, "a", "b")
        stale, fresh = await store.list_items(job.id)
        long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
        await store.update_item(stale.id, status="processing", started_at=long_ago)
        await store.update_item(fresh.id, status="processing", started_at=datetime.now(timezone.utc))

        job_ids = await store.reset_stale_items(datetime.now(timezone.utc) - timedelta(minutes=15))

        assert job_ids == [job.id]
        assert (await store.get_item(stale.id)).status == "pending"
        assert (await store.get_item(fresh.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_list_resumable_jobs(self, store) -> None:
        running = await create_job(store, "a")
        waiting_retry = await create_job(store, "b")
        never_started = await create_job(store, "c")
        await store.update_batch_job(running.id, status="processing")
        [item] = await store.list_items(waiting_retry.id)
        await store.update_item(item.id, status="retrying", retry_count=1)

        resumable = {job.id for job in await store.list_resumable_jobs()}

        assert resumable == {running.id, waiting_retry.id}
        assert never_started.id not in resumable

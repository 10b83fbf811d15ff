"""Startup recovery for batch runs interrupted by a process restart.

Scheduled retries and in-flight attempts only live in memory. On startup:

1. items stuck in 'processing' for longer than `stale_minutes` go back to
   'pending' (their attempt died with the old process);
2. every batch job still marked 'processing' that has pending or retrying
   items is resumed in the background.

Call recover_stale_items() before resume_interrupted_jobs().
"""
import logging
from datetime import datetime, timedelta, timezone

from app.services.batch_store import BatchStore
from app.services.queue_manager import QueueManager

logger = logging.getLogger(__name__)


async def recover_stale_items(store: BatchStore, stale_minutes: int = 15) -> int:
    """Reset queue items left 'processing' by a crashed process.

    Returns the number of batch jobs that had stale items.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
    job_ids = await store.reset_stale_items(cutoff)
    if job_ids:
        logger.info(f"Recovered stale items in {len(job_ids)} batch job(s)")
    return len(job_ids)


async def resume_interrupted_jobs(manager: QueueManager) -> int:
    """Restart dispatch for jobs that were mid-run when the process stopped."""
    jobs = await manager.store.list_resumable_jobs()
    for job in jobs:
        logger.warning(f"Resuming interrupted batch job {job.id} ({job.name})")
        await manager.start_in_background(job.id)
    return len(jobs)

"""Batch status aggregation over queue item counts."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

# Statuses that aggregation never overwrites while items are still open
_STICKY_STATUSES = ("cancelled",)


@dataclass(frozen=True)
class ItemCounts:
    total: int
    completed: int
    failed: int


def aggregate_status(counts: ItemCounts) -> str:
    """Derive a batch status from its item counts.

    All items settled -> 'completed' (no failures) or 'failed'.
    Some settled -> 'processing'. None settled -> 'pending'.
    """
    settled = counts.completed + counts.failed
    if counts.total > 0 and settled == counts.total:
        return "completed" if counts.failed == 0 else "failed"
    if counts.completed > 0 or counts.failed > 0:
        return "processing"
    return "pending"


def plan_batch_update(
    counts: ItemCounts,
    current_status: str,
    started_at: Optional[datetime],
    completed_at: Optional[datetime],
    now: datetime,
) -> dict:
    """Column values to persist on a batch job after re-counting its items.

    A cancelled job keeps its status. A paused job stays paused until every
    item has settled. started_at and completed_at are only ever set once.
    """
    derived = aggregate_status(counts)
    fields = {
        "total_items": counts.total,
        "completed_items": counts.completed,
        "failed_items": counts.failed,
    }

    if current_status in _STICKY_STATUSES:
        return fields
    if current_status == "paused" and derived not in ("completed", "failed"):
        return fields

    fields["status"] = derived
    if derived == "processing" and started_at is None:
        fields["started_at"] = now
    if derived in ("completed", "failed") and completed_at is None:
        fields["completed_at"] = now
    return fields

"""Batch job model - a named collection of queue items tracked as one unit."""
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, JSON, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, TimestampMixin, UserMixin

# 'pending' | 'processing' | 'paused' | 'completed' | 'failed' | 'cancelled'
BATCH_TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class BatchJob(Base, TimestampMixin, UserMixin):
    __tablename__ = "batch_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False, default="video_processing")
    job_config: Mapped[dict] = mapped_column(JSON, default=dict)

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def progress(self) -> float:
        """Percent of items completed (0 when the job has no items)."""
        if not self.total_items:
            return 0.0
        return self.completed_items / self.total_items * 100.0

"""Queue item model - one unit of work inside a batch job."""
import uuid
from datetime import datetime
from sqlalchemy import String, Text, Integer, Float, JSON, ForeignKey, DateTime, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, TimestampMixin

# 'pending' | 'processing' | 'completed' | 'retrying' | 'failed' | 'cancelled'
ELIGIBLE_STATUSES = ("pending", "retrying")
ITEM_STATUSES = ("pending", "processing", "completed", "failed", "cancelled", "retrying")


class QueueItem(Base, TimestampMixin):
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("idx_queue_items_dispatch_order", "batch_job_id", "priority", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    video_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    processing_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stage_progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # "metadata" is reserved on declarative classes
    item_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

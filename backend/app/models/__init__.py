"""Import all models so SQLAlchemy metadata knows about them."""
from app.models.base import Base
from app.models.batch_job import BatchJob
from app.models.queue_item import QueueItem

__all__ = [
    "Base",
    "BatchJob", "QueueItem",
]

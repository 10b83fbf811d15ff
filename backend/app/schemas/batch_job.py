"""Batch job and queue item request/response schemas."""
import uuid
from typing import Optional
from datetime import datetime
from pydantic import Field
from app.schemas.base import CamelModel, CamelORMModel


class QueueItemCreate(CamelModel):
    video_id: Optional[str] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = Field(default=None, ge=0)
    metadata: dict = {}


class BatchJobCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    job_type: Optional[str] = None
    job_config: dict = {}
    max_retries: Optional[int] = Field(default=None, ge=0)
    items: list[QueueItemCreate] = Field(min_length=1)


class BatchJobResponse(CamelORMModel):
    id: uuid.UUID
    name: str
    job_type: str
    job_config: dict
    total_items: int
    completed_items: int
    failed_items: int
    status: str
    progress: float = 0.0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    user_id: str = "default"


class QueueItemResponse(CamelORMModel):
    id: uuid.UUID
    batch_job_id: uuid.UUID
    video_id: Optional[str] = None
    priority: int
    status: str
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    progress: float
    processing_stage: Optional[str] = None
    stage_progress: float = 0.0
    metadata: dict = Field(default_factory=dict, validation_alias="item_metadata")
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueStats(CamelModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    retrying: int = 0


class ProcessingStats(CamelModel):
    total_jobs: int = 0
    active_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0


class BatchActionResponse(CamelModel):
    id: uuid.UUID
    status: str
    affected_items: int = 0


class DeleteResponse(CamelModel):
    deleted: bool = True
    id: str = ""

"""Batch jobs API - create batches, drive their runs, watch their progress."""
from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from app.schemas.batch_job import (
    BatchActionResponse,
    BatchJobCreate,
    BatchJobResponse,
    DeleteResponse,
    ProcessingStats,
    QueueItemResponse,
    QueueStats,
)
from app.services.exceptions import (
    InvalidJobConfigError,
    InvalidStateError,
    NotFoundError,
    UnregisteredProcessorError,
)
from app.services.queue_manager import QueueManager

router = APIRouter(prefix="/api/batch-jobs", tags=["batch-jobs"])


def get_queue_manager(request: Request) -> QueueManager:
    """FastAPI dependency returning the manager created in the app lifespan."""
    return request.app.state.queue_manager


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Owning user of the request. Auth is handled upstream; 'default' until it is wired in."""
    return x_user_id or "default"


@router.post("", response_model=BatchJobResponse, status_code=201)
async def create_batch_job(
    body: BatchJobCreate,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Create a batch job with one queue item per entry in `items`."""
    try:
        return await manager.create_batch_job(
            user_id=user_id,
            name=body.name,
            items=[item.model_dump() for item in body.items],
            job_type=body.job_type,
            job_config=body.job_config,
            max_retries=body.max_retries,
        )
    except InvalidJobConfigError as e:
        raise HTTPException(422, str(e))


@router.get("", response_model=list[BatchJobResponse])
async def list_batch_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """List the caller's batch jobs, newest first."""
    return await manager.store.list_batch_jobs(user_id, status=status, limit=limit, offset=offset)


@router.get("/stats", response_model=ProcessingStats)
async def get_processing_stats(
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Totals across the caller's batch jobs."""
    return await manager.store.processing_stats(user_id)


@router.get("/{batch_job_id}", response_model=BatchJobResponse)
async def get_batch_job(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    try:
        return await manager.store.get_batch_job(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")


@router.get("/{batch_job_id}/items", response_model=list[QueueItemResponse])
async def list_queue_items(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Queue items in dispatch order (priority desc, oldest first)."""
    try:
        job = await manager.store.get_batch_job(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    return await manager.store.list_items(job.id)


@router.get("/{batch_job_id}/queue-stats", response_model=QueueStats)
async def get_queue_stats(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    try:
        return await manager.get_queue_stats(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")


@router.post("/{batch_job_id}/start", response_model=BatchActionResponse, status_code=202)
async def start_batch_job(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Start processing in the background. Poll the job for progress."""
    try:
        job = await manager.store.get_batch_job(batch_job_id, user_id)
        manager.registry.get(job.job_type)
        await manager.start_in_background(job.id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    except UnregisteredProcessorError as e:
        raise HTTPException(409, str(e))
    return BatchActionResponse(id=job.id, status="processing")


@router.post("/{batch_job_id}/pause", response_model=BatchActionResponse)
async def pause_batch_job(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Stop dispatching new items. Items already processing run to completion."""
    try:
        job = await manager.pause_batch_job(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    except InvalidStateError as e:
        raise HTTPException(400, str(e))
    return BatchActionResponse(id=job.id, status=job.status)


@router.post("/{batch_job_id}/resume", response_model=BatchActionResponse, status_code=202)
async def resume_batch_job(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    try:
        job = await manager.resume_in_background(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    except InvalidStateError as e:
        raise HTTPException(400, str(e))
    return BatchActionResponse(id=job.id, status="processing")


@router.post("/{batch_job_id}/cancel", response_model=BatchActionResponse)
async def cancel_batch_job(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Cancel a batch job and its items that have not started."""
    try:
        job = await manager.store.get_batch_job(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    if job.status in ("completed", "failed"):
        raise HTTPException(400, f"Cannot cancel batch job in '{job.status}' state")
    if job.status == "cancelled":
        return BatchActionResponse(id=job.id, status="cancelled")

    count = await manager.cancel_batch_job(job.id, user_id)
    return BatchActionResponse(id=job.id, status="cancelled", affected_items=count)


@router.post("/{batch_job_id}/retry-failed", response_model=BatchActionResponse)
async def retry_failed_items(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Re-queue failed items. Call /start afterwards to process them."""
    try:
        count = await manager.retry_failed_items(batch_job_id, user_id)
        job = await manager.store.get_batch_job(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    return BatchActionResponse(id=job.id, status=job.status, affected_items=count)


@router.delete("/{batch_job_id}", response_model=DeleteResponse)
async def delete_batch_job(
    batch_job_id: UUID,
    user_id: str = Depends(get_user_id),
    manager: QueueManager = Depends(get_queue_manager),
):
    """Delete a batch job and all of its queue items."""
    try:
        await manager.delete_batch_job(batch_job_id, user_id)
    except NotFoundError:
        raise HTTPException(404, "Batch job not found")
    return DeleteResponse(id=str(batch_job_id))

"""
Admin Routes: recovery operations and queue statistics.
"""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.core.limiter import limiter, ADMIN_LIMIT
from cloudbox_conversions.services.job_store import JobKind
from cloudbox_conversions.services import recovery
from cloudbox_conversions.services.conversions import get_queue_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/queues")

class OperationResponse(BaseModel):
    kind: str
    operation: str
    count: int

def _scope(kind: str) -> Optional[JobKind]:
    if kind == "all":
        return None
    try:
        return JobKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown conversion kind: {kind}")

async def _run(kind: str, operation: str, func, *args) -> OperationResponse:
    count = await run_in_threadpool(func, *args)
    logger.info(f"Admin {operation} on {kind}: {count} job(s)")
    return OperationResponse(kind=kind, operation=operation, count=count)

@router.get("/stats")
@limiter.limit(ADMIN_LIMIT)
async def all_queue_stats(request: Request):
    return await run_in_threadpool(recovery.detailed_queue_stats)

@router.get("/{kind}/stats")
@limiter.limit(ADMIN_LIMIT)
async def queue_stats(request: Request, kind: str):
    return await run_in_threadpool(recovery.detailed_queue_stats, _scope(kind))

@router.post("/{kind}/retry-failed", response_model=OperationResponse)
@limiter.limit(ADMIN_LIMIT)
async def retry_failed(request: Request, kind: str):
    return await _run(kind, "retry-failed", recovery.retry_all_failed, _scope(kind))

@router.post("/{kind}/clear-stalled", response_model=OperationResponse)
@limiter.limit(ADMIN_LIMIT)
async def clear_stalled(request: Request, kind: str, stale_after_seconds: Optional[int] = None):
    stale_after = timedelta(seconds=stale_after_seconds or settings.STALE_AFTER_SECONDS)
    return await _run(kind, "clear-stalled", recovery.clear_stalled_jobs, stale_after, _scope(kind))

@router.post("/{kind}/cleanup-failed", response_model=OperationResponse)
@limiter.limit(ADMIN_LIMIT)
async def cleanup_failed(request: Request, kind: str):
    return await _run(kind, "cleanup-failed", recovery.cleanup_all_failed_jobs, _scope(kind))

@router.post("/{kind}/cleanup-old", response_model=OperationResponse)
@limiter.limit(ADMIN_LIMIT)
async def cleanup_old(request: Request, kind: str, days: int = 7):
    if days < 0:
        raise HTTPException(status_code=400, detail="days must be non-negative")
    return await _run(kind, "cleanup-old", recovery.cleanup_old_jobs, timedelta(days=days), _scope(kind))

@router.post("/{kind}/cancel-pending", response_model=OperationResponse)
@limiter.limit(ADMIN_LIMIT)
async def cancel_pending(request: Request, kind: str):
    return await _run(kind, "cancel-pending", recovery.cancel_pending_jobs, _scope(kind))

@router.post("/{kind}/files/{file_id}/cancel", response_model=OperationResponse)
@limiter.limit(ADMIN_LIMIT)
async def cancel_file(request: Request, kind: str, file_id: str):
    job_kind = _scope(kind)
    if job_kind is None:
        raise HTTPException(status_code=400, detail="Cancelling a file needs a concrete kind")
    service = get_queue_service(job_kind)
    cancelled = await run_in_threadpool(service.cancel, file_id)
    logger.info(f"Admin cancel on {kind} file {file_id}: {'cancelled' if cancelled else 'nothing queued'}")
    return OperationResponse(kind=kind, operation="cancel", count=int(cancelled))

"""
Conversion Routes: enqueue with cache-first reads, status polling,
artifact download and WebSocket progress updates.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from cloudbox_conversions.core.limiter import limiter, ENQUEUE_LIMIT, STATUS_LIMIT
from cloudbox_conversions.services.job_store import JobKind, JobStatus
from cloudbox_conversions.services.conversions import get_queue_service
from cloudbox_conversions.services.events import get_redis_client, channel_for

logger = logging.getLogger(__name__)
router = APIRouter()

TERMINAL = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value)

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
    ".mp3": "audio/mpeg",
}

STORE_POLL_SECONDS = 2.0
IDLE_RECHECK_POLLS = 10  # pub/sub polls without a message before the job store is re-read

# ─── Data Models ─────────────────────────────────────────────────────────────

class ConversionRequestBody(BaseModel):
    file_id: str
    owner_id: str
    source_path: str
    mime_type: Optional[str] = None
    format: Optional[str] = None
    quality: Optional[str] = None
    type: Optional[str] = None  # "midi" renders MIDI to MP3 on the transcode queue

class EnqueueResponse(BaseModel):
    status: str
    job_id: Optional[str] = None
    output_path: Optional[str] = None

class StatusResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    attempts: int
    error: Optional[str] = None
    output_path: Optional[str] = None

def _kind_or_404(kind: str) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown conversion kind: {kind}")

# ─── Endpoints ───────────────────────────────────────────────────────────────

@router.post("/conversions/{kind}", response_model=EnqueueResponse)
@limiter.limit(ENQUEUE_LIMIT)
async def request_conversion(request: Request, kind: str, body: ConversionRequestBody):
    """
    Returns the cached artifact when one exists (200); otherwise enqueues,
    or joins the active job for this file (202).
    """
    service = get_queue_service(_kind_or_404(kind))
    options = {"mime_type": body.mime_type, "format": body.format, "quality": body.quality, "type": body.type}

    if await run_in_threadpool(service.has_cached_output, body.file_id, body.owner_id, **options):
        output = service.output_path_for(body.file_id, body.owner_id, **options)
        return EnqueueResponse(status=JobStatus.COMPLETED.value, output_path=str(output))

    job_id = await run_in_threadpool(service.enqueue, body.file_id, body.source_path, body.owner_id, **options)
    if job_id is None:
        raise HTTPException(status_code=503, detail="Conversion queue unavailable, try again later")

    return JSONResponse(
        status_code=202,
        content=EnqueueResponse(status=JobStatus.QUEUED.value, job_id=job_id).model_dump(),
    )

@router.get("/conversions/{kind}/{file_id}", response_model=StatusResponse)
@limiter.limit(STATUS_LIMIT)
async def get_conversion_status(request: Request, kind: str, file_id: str):
    service = get_queue_service(_kind_or_404(kind))
    status = await run_in_threadpool(service.status_of, file_id)
    if not status:
        raise HTTPException(status_code=404, detail="No conversion found")
    return StatusResponse(**status)

@router.get("/conversions/{kind}/{file_id}/output")
@limiter.limit(STATUS_LIMIT)
async def download_output(request: Request, kind: str, file_id: str, owner_id: str,
                          format: Optional[str] = None, type: Optional[str] = None):
    service = get_queue_service(_kind_or_404(kind))
    options = {"format": format, "type": type}
    if not await run_in_threadpool(service.has_cached_output, file_id, owner_id, **options):
        raise HTTPException(status_code=404, detail="Output not available")
    path = await run_in_threadpool(service.output_path_for, file_id, owner_id, **options)
    return FileResponse(path, media_type=MEDIA_TYPES.get(path.suffix, "application/octet-stream"), filename=path.name)

# ─── WebSocket ───────────────────────────────────────────────────────────────

async def _watch_disconnect(websocket: WebSocket, disconnected: asyncio.Event):
    """Client frames are ignored; only the disconnect matters."""
    try:
        while (await websocket.receive())["type"] != "websocket.disconnect":
            pass
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        disconnected.set()

async def _relay_pubsub(websocket: WebSocket, service, redis_client, kind: JobKind, file_id: str,
                        disconnected: asyncio.Event):
    """Forward published updates; re-read the job store after a run of idle polls."""
    pubsub = redis_client.pubsub()
    channel = channel_for(kind.value, file_id)
    pubsub.subscribe(channel)
    try:
        idle = 0
        while not disconnected.is_set():
            message = await run_in_threadpool(pubsub.get_message, ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                idle = 0
                data = json.loads(message["data"])
                await websocket.send_json(data)
                if data.get("status") in TERMINAL:
                    return
            else:
                idle += 1
                if idle >= IDLE_RECHECK_POLLS:
                    idle = 0
                    # Catches updates published before the subscription was live
                    status = await run_in_threadpool(service.status_of, file_id)
                    if status is None or status["status"] in TERMINAL:
                        if status:
                            await websocket.send_json(status)
                        return
            await asyncio.sleep(0.2)
    finally:
        pubsub.unsubscribe(channel)
        pubsub.close()

async def _poll_store(websocket: WebSocket, service, file_id: str, last: Dict[str, Any],
                      disconnected: asyncio.Event):
    while not disconnected.is_set():
        await asyncio.sleep(STORE_POLL_SECONDS)
        status = await run_in_threadpool(service.status_of, file_id)
        if status and status != last:
            await websocket.send_json(status)
            last = status
        if status is None or status["status"] in TERMINAL:
            return

@router.websocket("/ws/conversions/{kind}/{file_id}")
async def conversion_updates(websocket: WebSocket, kind: str, file_id: str):
    """
    Sends the current status, then real-time progress via Redis PubSub,
    polling the job store when Redis is absent. Closes once there is no
    active job left to follow or the client goes away.
    """
    await websocket.accept()
    try:
        job_kind = JobKind(kind)
    except ValueError:
        await websocket.close(code=1008)
        return
    logger.info(f"WebSocket connected for {kind} file {file_id}")

    service = get_queue_service(job_kind)
    try:
        status = await run_in_threadpool(service.status_of, file_id)
        if status:
            await websocket.send_json(status)
        if status is None or status["status"] in TERMINAL:
            await websocket.close()
            return

        disconnected = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(websocket, disconnected))
        try:
            redis_client = await run_in_threadpool(get_redis_client)
            if redis_client:
                await _relay_pubsub(websocket, service, redis_client, job_kind, file_id, disconnected)
            else:
                await _poll_store(websocket, service, file_id, status, disconnected)
        finally:
            watcher.cancel()

        if disconnected.is_set():
            logger.info(f"WebSocket client left {kind} file {file_id}")
        else:
            await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for {kind} file {file_id}")

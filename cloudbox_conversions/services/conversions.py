import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from cloudbox_conversions.core.errors import ServiceUnavailable
from cloudbox_conversions.services.job_store import JobKind, JobStatus
from cloudbox_conversions.services.queue import ConversionQueue
from cloudbox_conversions.services.events import live_progress
from cloudbox_conversions.services.storage import is_usable_artifact
from cloudbox_conversions.services.drivers import resolve_driver
from cloudbox_conversions.services import recovery

logger = logging.getLogger(__name__)

class ConversionQueueService:
    """
    Caller-facing surface of one kind's pipeline: enqueue, status and
    cache-first reads, plus the administrative operations scoped to the kind.
    """

    def __init__(self, kind: JobKind):
        self.kind = JobKind(kind)
        self.queue = ConversionQueue(self.kind)
        self.driver = resolve_driver(self.kind)

    # ─── Enqueue & Status ────────────────────────────────────────────────────

    def enqueue(self, file_id: str, source_path: str, owner_id: str, **options: Any) -> Optional[str]:
        """Job id of the new or already active job; None if the queue is unavailable."""
        payload = {k: v for k, v in options.items() if v is not None}
        try:
            handle = self.queue.enqueue(file_id, owner_id, str(source_path), payload)
        except ServiceUnavailable as e:
            logger.warning(f"{self.kind.value} enqueue for file {file_id} rejected: {e}")
            return None
        return handle.id

    def status_of(self, file_id: str) -> Optional[Dict[str, Any]]:
        job = self.queue.status_of(file_id)
        if not job:
            return None
        if job.status == JobStatus.COMPLETED and not is_usable_artifact(Path(job.output_path or "")):
            # Artifact vanished since completion; report nothing so callers re-enqueue
            logger.info(f"Job {job.id} completed but output is missing; treating as cache miss")
            return None

        progress = job.progress
        if job.status == JobStatus.PROCESSING:
            live = live_progress.get(job.id, job.attempts)
            if live is not None:
                progress = max(progress, live)

        status: Dict[str, Any] = {
            "job_id": job.id,
            "status": job.status.value,
            "progress": progress,
            "attempts": job.attempts,
        }
        if job.error:
            status["error"] = job.error
        if job.output_path:
            status["output_path"] = job.output_path
        return status

    # ─── Cache-first Reads ───────────────────────────────────────────────────

    def output_path_for(self, file_id: str, owner_id: str, **options: Any) -> Path:
        return self.driver.output_path(file_id, owner_id, {k: v for k, v in options.items() if v is not None})

    def has_cached_output(self, file_id: str, owner_id: str, **options: Any) -> bool:
        return is_usable_artifact(self.output_path_for(file_id, owner_id, **options))

    # ─── Administration ──────────────────────────────────────────────────────

    def retry_all_failed(self) -> int:
        return recovery.retry_all_failed(self.kind)

    def clear_stalled_jobs(self, stale_after: Optional[timedelta] = None) -> int:
        return recovery.clear_stalled_jobs(stale_after, self.kind)

    def cleanup_all_failed_jobs(self) -> int:
        return recovery.cleanup_all_failed_jobs(self.kind)

    def cleanup_old_jobs(self, days: int = 7) -> int:
        return recovery.cleanup_old_jobs(timedelta(days=days), self.kind)

    def cancel(self, file_id: str) -> bool:
        """Cancel the file's job only while it is still waiting; running jobs finish."""
        return self.queue.cancel(file_id)

    def cancel_all_pending(self) -> int:
        return recovery.cancel_pending_jobs(self.kind)

    def detailed_queue_stats(self) -> Dict[str, Any]:
        return recovery.detailed_queue_stats(self.kind)

transcoding_queue = ConversionQueueService(JobKind.TRANSCODE)
thumbnail_queue = ConversionQueueService(JobKind.THUMBNAIL)
document_conversion_queue = ConversionQueueService(JobKind.DOCUMENT_PREVIEW)

_SERVICES = {
    JobKind.TRANSCODE: transcoding_queue,
    JobKind.THUMBNAIL: thumbnail_queue,
    JobKind.DOCUMENT_PREVIEW: document_conversion_queue,
}

def get_queue_service(kind: JobKind) -> ConversionQueueService:
    return _SERVICES[JobKind(kind)]

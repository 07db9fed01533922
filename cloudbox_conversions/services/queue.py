import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cloudbox_conversions.db import unavailable_errors
from cloudbox_conversions.core.errors import ServiceUnavailable
from cloudbox_conversions.services.job_store import (
    job_store, JobStore, JobKind, JobStatus, ConversionJob,
)

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class JobHandle:
    id: str
    status: JobStatus
    created: bool

class ConversionQueue:
    """
    Durable FIFO view over the `queued` rows of one job kind.
    """

    def __init__(self, kind: JobKind, store: JobStore = job_store):
        self.kind = JobKind(kind)
        self.store = store

    def enqueue(
        self,
        subject_file_id: str,
        owner_id: str,
        source_path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """
        Returns the active job's handle if one exists, else creates a queued row.
        Raises ServiceUnavailable when the job store cannot be reached.
        """
        try:
            job, created = self.store.create_if_absent(
                subject_file_id, self.kind, owner_id, source_path, payload
            )
        except unavailable_errors() as e:
            logger.error(f"[{self.kind.value}] Enqueue failed for file {subject_file_id}: {e}")
            raise ServiceUnavailable(f"{self.kind.value} queue unavailable", cause=e) from e
        return JobHandle(id=job.id, status=job.status, created=created)

    def status_of(self, subject_file_id: str) -> Optional[ConversionJob]:
        """The active job if there is one, else the most recent terminal job."""
        active = self.store.active_for(subject_file_id, self.kind)
        return active or self.store.latest_for(subject_file_id, self.kind)

    def claim_next(self) -> Optional[ConversionJob]:
        job = self.store.claim_next(self.kind)
        if job:
            logger.info(f"[{self.kind.value}] Claimed job {job.id} (file {job.subject_file_id}, attempt {job.attempts}).")
        return job

    def cancel(self, subject_file_id: str) -> bool:
        cancelled = self.store.cancel_queued(subject_file_id, self.kind)
        if cancelled:
            logger.info(f"[{self.kind.value}] Cancelled queued job for file {subject_file_id}.")
        return cancelled

    def pending_count(self) -> int:
        return len(self.store.list_jobs(self.kind, JobStatus.QUEUED))

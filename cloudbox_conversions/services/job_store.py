import uuid
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from cloudbox_conversions.db import get_db_connection, claim_lock_clause, row_to_dict

logger = logging.getLogger(__name__)

class JobKind(str, Enum):
    TRANSCODE = "transcode"
    THUMBNAIL = "thumbnail"
    DOCUMENT_PREVIEW = "document_preview"

class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# ─── Timestamps ──────────────────────────────────────────────────────────────
# Stored as fixed-width UTC text so SQLite compares them lexicographically;
# Postgres casts the same literal into TIMESTAMP.
_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)

def parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(str(value), _TS_FORMAT).replace(tzinfo=timezone.utc)

def cutoff_ts(age: timedelta) -> str:
    return format_ts(utcnow() - age)

@dataclass
class ConversionJob:
    id: str
    subject_file_id: str
    kind: JobKind
    status: JobStatus
    owner_id: str
    source_path: str
    progress: int = 0
    attempts: int = 0
    error: Optional[str] = None
    output_path: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @classmethod
    def from_row(cls, row) -> "ConversionJob":
        data = row_to_dict(row)
        return cls(
            id=data["id"],
            subject_file_id=data["subject_file_id"],
            kind=JobKind(data["kind"]),
            status=JobStatus(data["status"]),
            owner_id=data["owner_id"],
            source_path=data["source_path"],
            progress=data["progress"] or 0,
            attempts=data["attempts"] or 0,
            error=data["error"],
            output_path=data["output_path"],
            payload=json.loads(data["payload"] or "{}"),
            created_at=parse_ts(data["created_at"]),
            updated_at=parse_ts(data["updated_at"]),
            started_at=parse_ts(data["started_at"]),
            finished_at=parse_ts(data["finished_at"]),
        )

class JobStore:
    """
    Durable record of conversion jobs.

    Every status transition here is a single conditional statement, so the
    row itself arbitrates between concurrent workers and admin operations.
    Writes made by a worker carry the attempt number it claimed; once a stall
    sweep has requeued the row those writes no longer match and are dropped.
    """

    # ─── Creation & Lookup ───────────────────────────────────────────────────

    def create_if_absent(
        self,
        subject_file_id: str,
        kind: JobKind,
        owner_id: str,
        source_path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ConversionJob, bool]:
        """
        Insert a queued job unless an active one exists for (subject, kind).
        Returns the active job and whether this call created it.
        """
        kind = JobKind(kind)
        payload_json = json.dumps(payload or {}, sort_keys=True)

        # An active job can finish between the insert and the read-back; retry then.
        for _ in range(3):
            job_id = str(uuid.uuid4())
            now = format_ts(utcnow())
            with get_db_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO conversion_jobs
                        (id, subject_file_id, kind, status, progress, attempts,
                         owner_id, source_path, payload, created_at, updated_at)
                    VALUES (?, ?, ?, 'queued', 0, 0, ?, ?, ?, ?, ?)
                    ON CONFLICT (subject_file_id, kind)
                        WHERE status IN ('queued', 'processing') DO NOTHING
                    """,
                    (job_id, subject_file_id, kind.value, owner_id, source_path, payload_json, now, now)
                )
                created = cursor.rowcount == 1
                conn.commit()

            job = self.active_for(subject_file_id, kind)
            if job:
                if created:
                    logger.info(f"Job {job.id} created ({kind.value}, file {subject_file_id}).")
                else:
                    logger.info(f"Job {job.id} already active for {kind.value} file {subject_file_id}; not duplicated.")
                return job, created

        raise RuntimeError(f"Could not settle an active {kind.value} job for file {subject_file_id}")

    def get(self, job_id: str) -> Optional[ConversionJob]:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM conversion_jobs WHERE id = ?", (job_id,)).fetchone()
        return ConversionJob.from_row(row) if row else None

    def active_for(self, subject_file_id: str, kind: JobKind) -> Optional[ConversionJob]:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversion_jobs
                WHERE subject_file_id = ? AND kind = ? AND status IN ('queued', 'processing')
                """,
                (subject_file_id, JobKind(kind).value)
            ).fetchone()
        return ConversionJob.from_row(row) if row else None

    def latest_for(self, subject_file_id: str, kind: JobKind) -> Optional[ConversionJob]:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversion_jobs
                WHERE subject_file_id = ? AND kind = ?
                ORDER BY created_at DESC, seq DESC
                LIMIT 1
                """,
                (subject_file_id, JobKind(kind).value)
            ).fetchone()
        return ConversionJob.from_row(row) if row else None

    def list_jobs(self, kind: Optional[JobKind] = None, status: Optional[JobStatus] = None) -> List[ConversionJob]:
        clauses, args = [], []
        if kind:
            clauses.append("kind = ?")
            args.append(JobKind(kind).value)
        if status:
            clauses.append("status = ?")
            args.append(JobStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM conversion_jobs {where} ORDER BY created_at, seq", tuple(args)
            ).fetchall()
        return [ConversionJob.from_row(r) for r in rows]

    # ─── Worker Transitions ──────────────────────────────────────────────────

    def claim_next(self, kind: JobKind) -> Optional[ConversionJob]:
        """Atomically move the oldest queued job of `kind` to processing."""
        now = format_ts(utcnow())
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                UPDATE conversion_jobs
                SET status = 'processing',
                    attempts = attempts + 1,
                    progress = 0,
                    error = NULL,
                    started_at = ?,
                    updated_at = ?
                WHERE seq = (
                    SELECT seq FROM conversion_jobs
                    WHERE kind = ? AND status = 'queued'
                    ORDER BY created_at, seq
                    LIMIT 1
                    {claim_lock_clause()}
                ) AND status = 'queued'
                RETURNING *
                """,
                (now, now, JobKind(kind).value)
            ).fetchall()
            conn.commit()
        return ConversionJob.from_row(rows[0]) if rows else None

    def record_progress(self, job_id: str, attempt: int, progress: int) -> bool:
        """Persist progress; never lowers the stored value. Also acts as heartbeat."""
        progress = max(0, min(100, int(progress)))
        with get_db_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conversion_jobs
                SET progress = CASE WHEN progress < ? THEN ? ELSE progress END,
                    updated_at = ?
                WHERE id = ? AND status = 'processing' AND attempts = ?
                """,
                (progress, progress, format_ts(utcnow()), job_id, attempt)
            )
            conn.commit()
            return cursor.rowcount == 1

    def complete(self, job_id: str, attempt: int, output_path: str) -> bool:
        now = format_ts(utcnow())
        with get_db_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conversion_jobs
                SET status = 'completed',
                    progress = 100,
                    output_path = ?,
                    error = NULL,
                    finished_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'processing' AND attempts = ?
                """,
                (output_path, now, now, job_id, attempt)
            )
            conn.commit()
            return cursor.rowcount == 1

    def fail(self, job_id: str, attempt: int, error_msg: str) -> bool:
        now = format_ts(utcnow())
        with get_db_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conversion_jobs
                SET status = 'failed',
                    error = ?,
                    output_path = NULL,
                    finished_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'processing' AND attempts = ?
                """,
                (error_msg, now, now, job_id, attempt)
            )
            conn.commit()
            return cursor.rowcount == 1

    def cancel_queued(self, subject_file_id: str, kind: JobKind) -> bool:
        """queued -> cancelled for one file. A claimed row is left to finish."""
        now = format_ts(utcnow())
        with get_db_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conversion_jobs
                SET status = 'cancelled', finished_at = ?, updated_at = ?
                WHERE subject_file_id = ? AND kind = ? AND status = 'queued'
                """,
                (now, now, subject_file_id, JobKind(kind).value)
            )
            conn.commit()
            return cursor.rowcount == 1

job_store = JobStore()

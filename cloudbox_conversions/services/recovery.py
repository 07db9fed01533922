"""
Administrative state transitions over the job store.

Each operation is a conditional statement keyed on the status it expects,
so a row that a worker moved a moment earlier is simply not matched.
Every operation takes an optional kind; None means all kinds.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.db import get_db_connection, integrity_errors, row_to_dict
from cloudbox_conversions.services.job_store import (
    JobKind, JobStatus, format_ts, utcnow, cutoff_ts, parse_ts,
)

logger = logging.getLogger(__name__)

def _scope(kind: Optional[JobKind], alias: str = "") -> Tuple[str, tuple]:
    if kind is None:
        return "", ()
    return f" AND {alias}kind = ?", (JobKind(kind).value,)

def _label(kind: Optional[JobKind]) -> str:
    return JobKind(kind).value if kind else "all"

# ─── Retry ───────────────────────────────────────────────────────────────────

def retry_all_failed(kind: Optional[JobKind] = None) -> int:
    """
    failed -> queued with error cleared and attempts reset.
    Only the newest failed row per (subject, kind) is retried, and only when
    that pair has no queued/processing job.
    """
    clause, args = _scope(kind, "f.")
    with get_db_connection() as conn:
        candidates = conn.execute(
            f"""
            SELECT f.id FROM conversion_jobs f
            WHERE f.status = 'failed'{clause}
              AND NOT EXISTS (
                SELECT 1 FROM conversion_jobs a
                WHERE a.subject_file_id = f.subject_file_id AND a.kind = f.kind
                  AND a.status IN ('queued', 'processing'))
              AND NOT EXISTS (
                SELECT 1 FROM conversion_jobs n
                WHERE n.subject_file_id = f.subject_file_id AND n.kind = f.kind
                  AND n.status = 'failed'
                  AND (n.created_at > f.created_at OR (n.created_at = f.created_at AND n.seq > f.seq)))
            ORDER BY f.created_at, f.seq
            """,
            args
        ).fetchall()

    retried = 0
    for row in candidates:
        job_id = row_to_dict(row)["id"]
        try:
            with get_db_connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE conversion_jobs
                    SET status = 'queued', error = NULL, attempts = 0, progress = 0,
                        output_path = NULL, started_at = NULL, finished_at = NULL, updated_at = ?
                    WHERE id = ? AND status = 'failed'
                    """,
                    (format_ts(utcnow()), job_id)
                )
                conn.commit()
                retried += cursor.rowcount
        except integrity_errors():
            # A new job for the same pair was enqueued since the scan
            logger.info(f"Retry of job {job_id} skipped: an active job exists for its file")

    logger.info(f"Retried {retried} failed job(s) ({_label(kind)})")
    return retried

# ─── Stall Sweep ─────────────────────────────────────────────────────────────

def clear_stalled_jobs(stale_after: Optional[timedelta] = None, kind: Optional[JobKind] = None,
                       max_attempts: Optional[int] = None) -> int:
    """
    processing rows not updated within `stale_after` -> queued, or -> failed
    once they have used up `max_attempts` claims.
    """
    stale_after = stale_after if stale_after is not None else timedelta(seconds=settings.STALE_AFTER_SECONDS)
    max_attempts = max_attempts if max_attempts is not None else settings.MAX_ATTEMPTS
    cutoff = cutoff_ts(stale_after)
    now = format_ts(utcnow())
    clause, args = _scope(kind)

    with get_db_connection() as conn:
        abandoned = conn.execute(
            f"""
            UPDATE conversion_jobs
            SET status = 'failed',
                error = 'Stalled after ' || attempts || ' attempts',
                finished_at = ?, updated_at = ?
            WHERE status = 'processing' AND updated_at < ? AND attempts >= ?{clause}
            """,
            (now, now, cutoff, max_attempts) + args
        ).rowcount
        requeued = conn.execute(
            f"""
            UPDATE conversion_jobs
            SET status = 'queued', progress = 0, started_at = NULL, updated_at = ?
            WHERE status = 'processing' AND updated_at < ?{clause}
            """,
            (now, cutoff) + args
        ).rowcount
        conn.commit()

    if requeued or abandoned:
        logger.warning(f"Stall sweep ({_label(kind)}): {requeued} requeued, {abandoned} failed after {max_attempts} attempts")
    return requeued + abandoned

# ─── Cleanup & Cancel ────────────────────────────────────────────────────────

def cleanup_old_jobs(retention: Optional[timedelta] = None, kind: Optional[JobKind] = None) -> int:
    """Delete terminal rows last updated before `retention` ago."""
    retention = retention if retention is not None else timedelta(days=settings.JOB_RETENTION_DAYS)
    clause, args = _scope(kind)
    with get_db_connection() as conn:
        deleted = conn.execute(
            f"""
            DELETE FROM conversion_jobs
            WHERE status IN ('completed', 'failed', 'cancelled') AND updated_at < ?{clause}
            """,
            (cutoff_ts(retention),) + args
        ).rowcount
        conn.commit()
    logger.info(f"Cleaned up {deleted} old job(s) ({_label(kind)})")
    return deleted

def cleanup_all_failed_jobs(kind: Optional[JobKind] = None) -> int:
    clause, args = _scope(kind)
    with get_db_connection() as conn:
        deleted = conn.execute(f"DELETE FROM conversion_jobs WHERE status = 'failed'{clause}", args).rowcount
        conn.commit()
    logger.info(f"Removed {deleted} failed job(s) ({_label(kind)})")
    return deleted

def cancel_pending_jobs(kind: Optional[JobKind] = None) -> int:
    """queued -> cancelled. Rows already claimed are not matched."""
    now = format_ts(utcnow())
    clause, args = _scope(kind)
    with get_db_connection() as conn:
        cancelled = conn.execute(
            f"""
            UPDATE conversion_jobs
            SET status = 'cancelled', finished_at = ?, updated_at = ?
            WHERE status = 'queued'{clause}
            """,
            (now, now) + args
        ).rowcount
        conn.commit()
    logger.info(f"Cancelled {cancelled} pending job(s) ({_label(kind)})")
    return cancelled

# ─── Stats ───────────────────────────────────────────────────────────────────

def _kind_stats(conn, kind: JobKind, stale_cutoff: str) -> Dict[str, Any]:
    counts = {status.value: 0 for status in JobStatus}
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM conversion_jobs WHERE kind = ? GROUP BY status",
        (kind.value,)
    ).fetchall()
    for row in rows:
        data = row_to_dict(row)
        counts[data["status"]] = data["n"]

    oldest = row_to_dict(conn.execute(
        "SELECT MIN(created_at) AS oldest FROM conversion_jobs WHERE kind = ? AND status = 'queued'",
        (kind.value,)
    ).fetchone()).get("oldest")
    stalled = row_to_dict(conn.execute(
        """
        SELECT COUNT(*) AS n FROM conversion_jobs
        WHERE kind = ? AND status = 'processing' AND updated_at < ?
        """,
        (kind.value, stale_cutoff)
    ).fetchone()).get("n", 0)

    oldest_at = parse_ts(oldest)
    return {
        "kind": kind.value,
        "counts": counts,
        "total": sum(counts.values()),
        "oldest_queued_age_seconds": (utcnow() - oldest_at).total_seconds() if oldest_at else None,
        "stalled": stalled,
    }

def detailed_queue_stats(kind: Optional[JobKind] = None) -> Dict[str, Any]:
    """Per-kind counts by status, age of the oldest queued job and stalled count."""
    stale_cutoff = cutoff_ts(timedelta(seconds=settings.STALE_AFTER_SECONDS))
    kinds = [JobKind(kind)] if kind else list(JobKind)
    with get_db_connection() as conn:
        stats = {k.value: _kind_stats(conn, k, stale_cutoff) for k in kinds}
    return stats[JobKind(kind).value] if kind else stats

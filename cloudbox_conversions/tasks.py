"""
Periodic maintenance run by Celery beat.
"""
import logging
from datetime import timedelta

from cloudbox_conversions.core.celery_app import celery_app
from cloudbox_conversions.core.config import settings
from cloudbox_conversions.services import recovery
from cloudbox_conversions.services.cleanup import cleanup_staging_files as sweep_staging

logger = logging.getLogger(__name__)

@celery_app.task(name="cloudbox_conversions.tasks.sweep_stalled_jobs")
def sweep_stalled_jobs() -> int:
    """Requeue (or fail, past MAX_ATTEMPTS) jobs abandoned by dead workers."""
    return recovery.clear_stalled_jobs(timedelta(seconds=settings.STALE_AFTER_SECONDS))

@celery_app.task(name="cloudbox_conversions.tasks.cleanup_old_jobs")
def cleanup_old_jobs() -> int:
    return recovery.cleanup_old_jobs(timedelta(days=settings.JOB_RETENTION_DAYS))

@celery_app.task(name="cloudbox_conversions.tasks.cleanup_staging_files")
def cleanup_staging_files() -> int:
    return sweep_staging(settings.STAGING_MAX_AGE_SECONDS)

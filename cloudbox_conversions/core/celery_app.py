import logging

import redis
from celery import Celery
from cloudbox_conversions.core.config import settings

logger = logging.getLogger(__name__)

def get_celery_app() -> Celery:
    # Celery only carries periodic maintenance; conversion jobs are claimed
    # from the job store by the worker pools.
    redis_url = settings.REDIS_URL or "memory://"

    app = Celery(
        "cloudbox_conversions",
        broker=redis_url,
        backend=settings.REDIS_URL or None,
        include=["cloudbox_conversions.tasks"],
    )

    app.conf.update(
        result_expires=86400,  # 24 hours
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        beat_schedule={
            "sweep-stalled-jobs": {
                "task": "cloudbox_conversions.tasks.sweep_stalled_jobs",
                "schedule": float(settings.STALL_SWEEP_INTERVAL_SECONDS),
            },
            "cleanup-old-jobs": {
                "task": "cloudbox_conversions.tasks.cleanup_old_jobs",
                "schedule": 3600.0,
            },
            "cleanup-staging-files": {
                "task": "cloudbox_conversions.tasks.cleanup_staging_files",
                "schedule": 3600.0,
            },
        },
    )

    # Without a reachable Redis, run tasks inline (task_always_eager)
    if not settings.REDIS_URL:
        logger.warning("[Celery] REDIS_URL not set. Running in SYNC mode (task_always_eager=True).")
        app.conf.update(task_always_eager=True, task_eager_propagates=True)
    else:
        try:
            client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
            client.ping()
            logger.info(f"[Celery] Connected to Redis at {settings.REDIS_URL}")
        except redis.RedisError as e:
            logger.warning(f"[Celery] Redis not available ({e}). Running in SYNC mode (task_always_eager=True).")
            app.conf.update(task_always_eager=True, task_eager_propagates=True)

    return app

celery_app = get_celery_app()

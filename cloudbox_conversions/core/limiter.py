"""
Rate Limiting Module
Uses slowapi to keep status polling and admin calls from swamping the job store.
"""
import logging

import redis
from slowapi import Limiter
from slowapi.util import get_remote_address
from cloudbox_conversions.core.config import settings

logger = logging.getLogger(__name__)

# Redis-backed counters when available, else per-process memory
storage_uri = "memory://"
if settings.REDIS_URL:
    try:
        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
        storage_uri = settings.REDIS_URL
        logger.info(f"Rate Limiter connected to Redis at {settings.REDIS_URL}")
    except redis.RedisError as e:
        logger.warning(f"Rate Limiter: Redis not available ({e}). Falling back to memory storage.")

limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=storage_uri,
)

# Endpoint-specific limits
ENQUEUE_LIMIT = "60/minute"
STATUS_LIMIT = "240/minute"
ADMIN_LIMIT = "20/minute"

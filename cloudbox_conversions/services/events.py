import json
import logging
import threading
from typing import Any, Dict, Optional

import redis

from cloudbox_conversions.core.config import settings

logger = logging.getLogger(__name__)

# Redis Client for PubSub (progress and terminal updates)
_redis_client = None
_redis_checked = False
_redis_lock = threading.Lock()

def get_redis_client():
    """Lazily connect once; None when REDIS_URL is empty or Redis is unreachable."""
    global _redis_client, _redis_checked
    with _redis_lock:
        if _redis_checked:
            return _redis_client
        _redis_checked = True
        if not settings.REDIS_URL:
            return None
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
            client.ping()
            _redis_client = client
            logger.info(f"Connected to Redis for Pub/Sub at {settings.REDIS_URL}")
        except redis.RedisError as e:
            logger.warning(f"Redis not available ({e}). Progress updates will only be polled.")
        return _redis_client

def channel_for(kind: str, file_id: str) -> str:
    return f"conversion:{kind}:{file_id}"

def publish_update(kind: str, file_id: str, data: Dict[str, Any]):
    """Publish update to Redis channel"""
    client = get_redis_client()
    if client:
        try:
            client.publish(channel_for(kind, file_id), json.dumps(data, default=str))
        except redis.RedisError as e:
            logger.error(f"Redis publish failed: {e}")

class LiveProgressBoard:
    """
    Latest known progress per running job, held in process memory.
    The job store is only written at throttled boundaries; same-process
    status reads overlay this board to see every update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Any]] = {}

    def update(self, job_id: str, attempt: int, progress: int):
        with self._lock:
            entry = self._entries.get(job_id)
            if entry and entry["attempt"] == attempt and entry["progress"] >= progress:
                return
            self._entries[job_id] = {"attempt": attempt, "progress": progress}

    def get(self, job_id: str, attempt: int) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(job_id)
        if entry and entry["attempt"] == attempt:
            return entry["progress"]
        return None

    def clear(self, job_id: str):
        with self._lock:
            self._entries.pop(job_id, None)

live_progress = LiveProgressBoard()

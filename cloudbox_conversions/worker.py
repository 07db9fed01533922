"""
Standalone conversion worker process.

Runs the worker pools in their own process so transcoding and document
conversion never compete with request handling in the API.

Usage:
    cloudbox-worker
    python -m cloudbox_conversions.worker

Environment (see core/config.py):
    WORKER_TYPE         all | transcode | thumbnail | document_preview
    WORKER_CONCURRENCY  slots per pool (thumbnails get the multiplier)
"""
import time
import shutil
import signal
import logging
import threading
from typing import Callable, Dict, List

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.db import init_db, close_db
from cloudbox_conversions.services.job_store import JobKind
from cloudbox_conversions.services.worker_pool import WorkerPool, PoolConfig

logger = logging.getLogger(__name__)

REQUIRED_BINARIES: Dict[JobKind, List[str]] = {
    JobKind.TRANSCODE: ["FFMPEG_PATH", "FFPROBE_PATH", "FLUIDSYNTH_PATH"],
    JobKind.THUMBNAIL: ["FFMPEG_PATH", "PDFTOPPM_PATH", "SOFFICE_PATH"],
    JobKind.DOCUMENT_PREVIEW: ["SOFFICE_PATH"],
}

def selected_kinds(worker_type: str) -> List[JobKind]:
    worker_type = (worker_type or "all").strip().lower()
    if worker_type == "all":
        return list(JobKind)
    kinds = []
    for name in worker_type.split(","):
        try:
            kinds.append(JobKind(name.strip()))
        except ValueError:
            raise ValueError(f"Unknown WORKER_TYPE entry: {name.strip()!r}")
    return kinds

def check_binaries(kinds: List[JobKind]) -> Dict[str, bool]:
    """Log which external binaries resolve; missing ones only fail their jobs."""
    found = {}
    for kind in kinds:
        for setting in REQUIRED_BINARIES[kind]:
            binary = getattr(settings, setting)
            if binary in found:
                continue
            found[binary] = shutil.which(binary) is not None
            if found[binary]:
                logger.info(f"{binary}: available")
            else:
                logger.warning(f"{binary}: NOT FOUND - {kind.value} jobs needing it will fail")
    return found

def stop_pools(pools: List[WorkerPool], grace: float, clock: Callable[[], float] = time.monotonic) -> bool:
    """
    Stop every pool within one shared grace period. Returns False if any
    pool had to abandon running jobs.
    """
    # Stop claiming everywhere before waiting on any single pool
    for pool in pools:
        pool.request_stop()
    deadline = clock() + grace
    results = [pool.stop(grace=max(0.0, deadline - clock())) for pool in pools]
    return all(results)

def run_worker():
    kinds = selected_kinds(settings.WORKER_TYPE)
    init_db()
    check_binaries(kinds)

    pools = [WorkerPool(PoolConfig.for_kind(settings, kind)) for kind in kinds]
    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Worker received {signal.Signals(signum).name}; shutting down")
        stop_requested.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    for pool in pools:
        pool.start()
    logger.info(f"Worker started: {', '.join(k.value for k in kinds)}")

    while not stop_requested.wait(1.0):
        pass

    clean = stop_pools(pools, settings.SHUTDOWN_GRACE_SECONDS)

    close_db()
    logger.info("Worker shutdown complete" if clean else "Worker shutdown complete; unfinished jobs left for the stall sweep")

def main():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    run_worker()

if __name__ == "__main__":
    main()

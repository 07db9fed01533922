import time
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cloudbox_conversions.db import unavailable_errors
from cloudbox_conversions.core.errors import ConversionError, InputNotFound
from cloudbox_conversions.services.job_store import job_store, JobStore, JobKind, ConversionJob
from cloudbox_conversions.services.queue import ConversionQueue
from cloudbox_conversions.services.events import publish_update, live_progress, LiveProgressBoard
from cloudbox_conversions.services.storage import (
    staging_path_for, promote, discard, ensure_dir, is_usable_artifact,
)
from cloudbox_conversions.services.drivers import (
    ConversionDriver, ConversionRequest, ProgressChannel, resolve_driver,
)
from cloudbox_conversions.services.drivers import process

logger = logging.getLogger(__name__)

@dataclass
class PoolConfig:
    kind: JobKind
    concurrency: int = 2
    poll_interval: float = 1.0
    max_poll_interval: float = 5.0
    progress_step: int = 10
    heartbeat_interval: float = 60.0
    shutdown_grace: float = 30.0

    @classmethod
    def for_kind(cls, settings, kind: JobKind) -> "PoolConfig":
        kind = JobKind(kind)
        if kind == JobKind.THUMBNAIL:
            concurrency = settings.WORKER_CONCURRENCY * settings.THUMBNAIL_CONCURRENCY_MULTIPLIER
        elif kind == JobKind.DOCUMENT_PREVIEW:
            concurrency = settings.DOCUMENT_CONCURRENCY
        else:
            concurrency = settings.WORKER_CONCURRENCY
        return cls(
            kind=kind,
            concurrency=max(1, concurrency),
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            max_poll_interval=settings.MAX_POLL_INTERVAL_SECONDS,
            progress_step=settings.PROGRESS_STEP,
            heartbeat_interval=settings.PROGRESS_HEARTBEAT_SECONDS,
            shutdown_grace=settings.SHUTDOWN_GRACE_SECONDS,
        )

# ─── Progress ────────────────────────────────────────────────────────────────

class ProgressTracker:
    """
    Receives a job's progress stream and decides what is persisted.

    Every increase lands on the live board and the pub/sub channel. The job
    store is written only when a `step` boundary is crossed, or when
    `heartbeat` seconds have passed since the last write so the stall sweep
    keeps seeing a fresh updated_at.
    """

    def __init__(self, job: ConversionJob, store: JobStore, step: int, heartbeat: float,
                 board: LiveProgressBoard = live_progress, clock: Callable[[], float] = time.monotonic):
        self.job = job
        self.store = store
        self.step = max(1, step)
        self.heartbeat = heartbeat
        self.board = board
        self.clock = clock
        self.current = 0
        self.persisted = 0
        self.last_write = clock()
        self.owned = True
        self._lock = threading.Lock()

    def __call__(self, value: int):
        with self._lock:
            self.current = max(self.current, value)
            due = (value // self.step > self.persisted // self.step
                   or self.clock() - self.last_write >= self.heartbeat)
        self.board.update(self.job.id, self.job.attempts, value)
        publish_update(self.job.kind.value, self.job.subject_file_id, {
            "job_id": self.job.id, "status": "processing", "progress": value,
        })
        if due:
            self.persist()

    def tick(self):
        """Heartbeat: rewrite the current value if nothing was written for a while."""
        if self.clock() - self.last_write >= self.heartbeat:
            self.persist()

    def persist(self):
        if not self.owned:
            return
        with self._lock:
            value = self.current
            self.last_write = self.clock()
        if self.store.record_progress(self.job.id, self.job.attempts, value):
            with self._lock:
                self.persisted = max(self.persisted, value)
            logger.debug(f"Job {self.job.id} progress {value}% persisted")
        else:
            self.owned = False
            logger.warning(f"Job {self.job.id} attempt {self.job.attempts} no longer owns its row; progress not saved")

# ─── Pool ────────────────────────────────────────────────────────────────────

class WorkerPool:
    """
    Bounded-concurrency consumer of one kind's queue.

    Each slot is a thread that claims, converts and finalizes one job at a
    time. A failing job is recorded and the slot moves on.
    """

    def __init__(self, config: PoolConfig, store: JobStore = job_store,
                 driver: Optional[ConversionDriver] = None):
        self.config = config
        self.kind = JobKind(config.kind)
        self.store = store
        self.queue = ConversionQueue(self.kind, store)
        self.driver = driver or resolve_driver(self.kind)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._trackers: Dict[str, ProgressTracker] = {}
        self._trackers_lock = threading.Lock()
        self._abandoned = False

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def start(self):
        for slot in range(self.config.concurrency):
            thread = threading.Thread(
                target=self._slot_loop, args=(slot,),
                name=f"{self.kind.value}-worker-{slot}", daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        heartbeat = threading.Thread(target=self._heartbeat_loop, name=f"{self.kind.value}-heartbeat", daemon=True)
        heartbeat.start()
        logger.info(f"{self.kind.value} pool started with {self.config.concurrency} slot(s)")

    def stop(self, grace: Optional[float] = None) -> bool:
        """
        Stop claiming and wait for in-flight jobs. Returns False if the grace
        period ran out; leftover processes are then killed and reaped, and
        their rows stay `processing` for the stall sweep.
        """
        self._stop.set()
        grace = self.config.shutdown_grace if grace is None else grace
        deadline = time.monotonic() + grace
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        stragglers = [t for t in self._threads if t.is_alive()]
        if stragglers:
            self._abandoned = True
            logger.warning(f"{self.kind.value} pool: {len(stragglers)} job(s) still running after {grace:g}s grace")
            process.kill_all(t.ident for t in stragglers)
            for thread in stragglers:
                thread.join(5)

        logger.info(f"{self.kind.value} pool stopped")
        return not stragglers

    def request_stop(self):
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _slot_loop(self, slot: int):
        delay = self.config.poll_interval
        while not self._stop.is_set():
            try:
                job = self.queue.claim_next()
            except unavailable_errors() as e:
                logger.error(f"{self.kind.value} slot {slot}: claim failed ({e}); backing off")
                job = None

            if job is None:
                self._stop.wait(delay)
                delay = min(delay * 2, self.config.max_poll_interval)
                continue

            delay = self.config.poll_interval
            try:
                self.process_job(job)
            except unavailable_errors() as e:
                # Row stays processing; the stall sweep requeues it
                logger.error(f"{self.kind.value} slot {slot}: could not finalize job {job.id} ({e})")

    def _heartbeat_loop(self):
        interval = max(0.5, min(self.config.heartbeat_interval / 2, 5.0))
        while not self._stop.wait(interval):
            with self._trackers_lock:
                trackers = list(self._trackers.values())
            for tracker in trackers:
                try:
                    tracker.tick()
                except unavailable_errors() as e:
                    logger.error(f"Heartbeat for job {tracker.job.id} failed: {e}")

    def run_once(self) -> Optional[ConversionJob]:
        """Claim and process a single job on the calling thread."""
        job = self.queue.claim_next()
        if job:
            self.process_job(job)
        return job

    def drain(self) -> int:
        """Process queued jobs on the calling thread until none are left."""
        count = 0
        while self.run_once():
            count += 1
        return count

    # ─── Processing ──────────────────────────────────────────────────────────

    def process_job(self, job: ConversionJob):
        tracker = ProgressTracker(job, self.store, self.config.progress_step, self.config.heartbeat_interval)
        with self._trackers_lock:
            self._trackers[job.id] = tracker
        staging: Optional[Path] = None
        try:
            source = Path(job.source_path)
            if not source.is_file():
                raise InputNotFound(job.source_path)

            target = self.driver.output_path(job.subject_file_id, job.owner_id, job.payload)
            staging = staging_path_for(target, job.id)
            request = ConversionRequest(
                job_id=job.id,
                subject_file_id=job.subject_file_id,
                owner_id=job.owner_id,
                source_path=source,
                target_path=target,
                staging_path=staging,
                options=dict(job.payload),
            )
            self.driver.check_supported(request)

            ensure_dir(target.parent)
            result = Path(self.driver.convert(request, ProgressChannel(tracker)))
            if result == target:
                if not is_usable_artifact(target):
                    raise ConversionError(f"Cached output missing: {target}")
            else:
                promote(result, target)
            self._complete(job, target)

        except ConversionError as e:
            self._fail(job, str(e))
        except Exception as e:
            logger.error(f"Job {job.id} crashed: {e}", exc_info=True)
            self._fail(job, f"Unexpected error: {e}")
        finally:
            if staging:
                discard(staging)
            with self._trackers_lock:
                self._trackers.pop(job.id, None)
            live_progress.clear(job.id)

    def _complete(self, job: ConversionJob, target: Path):
        if self._abandoned:
            logger.warning(f"Job {job.id} finished during hard shutdown; left for the stall sweep")
            return
        if self.store.complete(job.id, job.attempts, str(target)):
            logger.info(f"Job {job.id} completed ({self.kind.value}, file {job.subject_file_id}) -> {target}")
            publish_update(self.kind.value, job.subject_file_id, {
                "job_id": job.id, "status": "completed", "progress": 100, "output_path": str(target),
            })
        else:
            logger.warning(f"Job {job.id} attempt {job.attempts} was reclaimed; result not recorded")

    def _fail(self, job: ConversionJob, message: str):
        if self._abandoned:
            logger.warning(f"Job {job.id} interrupted by hard shutdown; left for the stall sweep")
            return
        if self.store.fail(job.id, job.attempts, message):
            logger.error(f"Job {job.id} failed ({self.kind.value}, file {job.subject_file_id}): {message}")
            publish_update(self.kind.value, job.subject_file_id, {
                "job_id": job.id, "status": "failed", "error": message,
            })
        else:
            logger.warning(f"Job {job.id} attempt {job.attempts} was reclaimed; failure not recorded")

"""
test_worker_pool.py
~~~~~~~~~~~~~~~~~~~
End-to-end behaviour of the worker pools against fake binaries:

  • transcode progress and completion, MIDI rendering
  • failures that must not stop the pool
  • cache-first document previews
  • stall recovery after a worker crash
  • cancellation while other jobs are running
  • threaded slots, shutdown and hard shutdown
"""
from __future__ import annotations

import time
from datetime import timedelta
from pathlib import Path

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.services import recovery
from cloudbox_conversions.services.drivers import process
from cloudbox_conversions.services.events import LiveProgressBoard
from cloudbox_conversions.services.job_store import JobStore, JobKind, JobStatus, job_store
from cloudbox_conversions.services.worker_pool import WorkerPool, PoolConfig, ProgressTracker
from cloudbox_conversions.services.conversions import (
    transcoding_queue, thumbnail_queue, document_conversion_queue,
)

from conftest import SLOW_FFMPEG, set_updated_at, status_counts


class RecordingStore(JobStore):
    """JobStore that remembers every progress value it was asked to persist."""

    def __init__(self):
        self.persisted = []

    def record_progress(self, job_id, attempt, progress):
        self.persisted.append(progress)
        return super().record_progress(job_id, attempt, progress)


def make_pool(kind: JobKind, store: JobStore = job_store, **overrides) -> WorkerPool:
    params = dict(concurrency=1, poll_interval=0.05, max_poll_interval=0.2)
    params.update(overrides)
    config = PoolConfig(kind=kind, **params)
    return WorkerPool(config, store=store)


def wait_for(predicate, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class TestPoolConfig:

    def test_thumbnail_pool_runs_wider(self, monkeypatch):
        monkeypatch.setattr(settings, "WORKER_CONCURRENCY", 3)
        assert PoolConfig.for_kind(settings, JobKind.TRANSCODE).concurrency == 3
        assert PoolConfig.for_kind(settings, JobKind.THUMBNAIL).concurrency == 6


class TestProgressTracker:

    def test_persists_on_step_boundaries(self):
        store = RecordingStore()
        handle = transcoding_queue.queue.enqueue("file-1", "owner-1", "/data/clip.mov")
        job = store.claim_next(JobKind.TRANSCODE)
        assert job.id == handle.id

        tracker = ProgressTracker(job, store, step=10, heartbeat=3600, board=LiveProgressBoard())
        for value in (3, 7, 12, 15, 28, 31, 99):
            tracker(value)

        assert store.persisted == [12, 28, 31, 99]
        assert tracker.board.get(job.id, job.attempts) == 99

    def test_heartbeat_rewrites_without_new_progress(self):
        store = RecordingStore()
        transcoding_queue.queue.enqueue("file-1", "owner-1", "/data/clip.mov")
        job = store.claim_next(JobKind.TRANSCODE)

        now = [0.0]
        tracker = ProgressTracker(job, store, step=10, heartbeat=60, clock=lambda: now[0])
        tracker(4)
        tracker.tick()
        assert store.persisted == []

        now[0] = 61.0
        tracker.tick()
        assert store.persisted == [4]

    def test_stops_writing_once_row_is_reclaimed(self):
        store = RecordingStore()
        transcoding_queue.queue.enqueue("file-1", "owner-1", "/data/clip.mov")
        job = store.claim_next(JobKind.TRANSCODE)
        job_store.fail(job.id, job.attempts, "reclaimed elsewhere")

        tracker = ProgressTracker(job, store, step=10, heartbeat=0, board=LiveProgressBoard())
        for value in (12, 25, 37):
            tracker(value)
        tracker.tick()

        assert store.persisted == [12]
        assert tracker.owned is False


class TestTranscodeScenario:

    def test_sixty_second_clip_at_medium(self, fake_bins, make_source):
        store = RecordingStore()
        source = make_source("clip.mov")
        job_id = transcoding_queue.enqueue("video-1", source, "owner-1", quality="medium")

        pool = make_pool(JobKind.TRANSCODE, store=store)
        assert pool.run_once().id == job_id

        job = job_store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert Path(job.output_path).stat().st_size > 0
        assert job.output_path.endswith("video-1_transcoded.mp4")

        assert store.persisted == sorted(store.persisted)
        assert store.persisted[-1] == 100
        assert len([p for p in store.persisted if 0 < p < 100]) >= 3

    def test_no_staging_file_left_behind(self, fake_bins, make_source):
        job_id = transcoding_queue.enqueue("video-1", make_source("clip.mov"), "owner-1")
        make_pool(JobKind.TRANSCODE).run_once()
        output = Path(job_store.get(job_id).output_path)
        assert [p.name for p in output.parent.iterdir()] == [output.name]

    def test_midi_renders_to_mp3(self, fake_bins, make_source, soundfont):
        job_id = transcoding_queue.enqueue("song-1", make_source("song.mid"), "owner-1", type="midi")
        make_pool(JobKind.TRANSCODE).run_once()

        job = job_store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.output_path.endswith("song-1_transcoded.mp3")
        assert transcoding_queue.has_cached_output("song-1", "owner-1", type="midi")
        assert len(fake_bins.fluidsynth_calls) == 1

    def test_midi_without_soundfont_fails_before_rendering(self, fake_bins, make_source, monkeypatch):
        monkeypatch.setattr(settings, "SOUNDFONT_PATH", "")
        job_id = transcoding_queue.enqueue("song-1", make_source("song.mid"), "owner-1", type="midi")
        make_pool(JobKind.TRANSCODE).run_once()

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "MIDI soundfont path is not configured"
        assert fake_bins.fluidsynth_calls == []


class TestFailureScenarios:

    def test_missing_input_fails_and_pool_continues(self, fake_bins, make_source):
        missing = thumbnail_queue.enqueue("ghost", "/nowhere/ghost.png", "owner-1", mime_type="image/png")
        present = thumbnail_queue.enqueue("photo", make_source("photo.png"), "owner-1", mime_type="image/png")

        pool = make_pool(JobKind.THUMBNAIL)
        assert pool.drain() == 2

        failed = job_store.get(missing)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Input file not found: /nowhere/ghost.png"
        assert job_store.get(present).status == JobStatus.COMPLETED

    def test_unsupported_format_never_runs_binary(self, fake_bins, make_source):
        job_id = document_conversion_queue.enqueue("zip-1", make_source("archive.zip"), "owner-1")
        make_pool(JobKind.DOCUMENT_PREVIEW).run_once()

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "not supported" in job.error
        assert fake_bins.soffice_calls == []

    def test_missing_binary_fails_job(self, make_source, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "FFMPEG_PATH", str(tmp_path / "absent" / "ffmpeg"))
        job_id = thumbnail_queue.enqueue("photo", make_source("photo.png"), "owner-1", mime_type="image/png")
        make_pool(JobKind.THUMBNAIL).run_once()

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "exited with code 127" in job.error

    def test_timeout_fails_job(self, fake_bins, make_source, monkeypatch):
        monkeypatch.setattr(settings, "FFMPEG_PATH", fake_bins.write("ffmpeg-slow", SLOW_FFMPEG))
        monkeypatch.setattr(settings, "THUMBNAIL_TIMEOUT_SECONDS", 0.5)
        job_id = thumbnail_queue.enqueue("photo", make_source("photo.png"), "owner-1", mime_type="image/png")
        make_pool(JobKind.THUMBNAIL).run_once()

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "timed out after 0.5s" in job.error

    def test_unexpected_exception_becomes_failure(self, make_source):
        class ExplodingDriver:
            def output_path(self, subject_file_id, owner_id, options):
                return Path(settings.STORAGE_PATH) / "files" / owner_id / f"{subject_file_id}.out"

            def check_supported(self, request):
                return None

            def convert(self, request, progress):
                raise KeyError("bad payload")

        job_id = thumbnail_queue.enqueue("photo", make_source("photo.png"), "owner-1", mime_type="image/png")
        pool = make_pool(JobKind.THUMBNAIL)
        pool.driver = ExplodingDriver()
        pool.run_once()

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.startswith("Unexpected error")


class TestDocumentPreviewScenario:

    def test_duplicate_requests_share_one_conversion(self, fake_bins, make_source):
        source = make_source("report.docx")
        first = document_conversion_queue.enqueue("doc-1", source, "owner-1")
        second = document_conversion_queue.enqueue("doc-1", source, "owner-1")
        assert first == second

        assert make_pool(JobKind.DOCUMENT_PREVIEW).drain() == 1
        assert len(fake_bins.soffice_calls) == 1

        assert document_conversion_queue.has_cached_output("doc-1", "owner-1")
        cached = document_conversion_queue.output_path_for("doc-1", "owner-1")
        assert cached.read_bytes().startswith(b"%PDF")
        assert status_counts() == {"completed": 1}

    def test_missing_artifact_reads_as_cache_miss(self, fake_bins, make_source):
        source = make_source("report.docx")
        job_id = document_conversion_queue.enqueue("doc-1", source, "owner-1")
        make_pool(JobKind.DOCUMENT_PREVIEW).drain()

        Path(job_store.get(job_id).output_path).unlink()
        assert document_conversion_queue.status_of("doc-1") is None
        assert document_conversion_queue.enqueue("doc-1", source, "owner-1") != job_id


class TestStallRecoveryScenario:

    def test_crashed_job_is_requeued_and_completed(self, fake_bins, make_source):
        job_id = thumbnail_queue.enqueue("photo", make_source("photo.png"), "owner-1", mime_type="image/png")
        crashed = thumbnail_queue.queue.claim_next()
        assert crashed.id == job_id
        set_updated_at(job_id, timedelta(hours=2))

        assert recovery.clear_stalled_jobs(timedelta(hours=1)) == 1
        assert job_store.get(job_id).status == JobStatus.QUEUED

        make_pool(JobKind.THUMBNAIL).run_once()
        job = job_store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 2


class TestCancelScenario:

    def test_cancel_spares_running_jobs(self, fake_bins, make_source):
        for i in range(7):
            thumbnail_queue.enqueue(f"photo-{i}", make_source(f"photo-{i}.png"), "owner-1", mime_type="image/png")
        pool = make_pool(JobKind.THUMBNAIL)
        running = [pool.queue.claim_next(), pool.queue.claim_next()]

        assert thumbnail_queue.cancel_all_pending() == 5
        assert status_counts() == {"cancelled": 5, "processing": 2}

        for job in running:
            pool.process_job(job)
        assert status_counts() == {"cancelled": 5, "completed": 2}

    def test_single_file_cancel(self, fake_bins, make_source):
        waiting = thumbnail_queue.enqueue("photo-1", make_source("photo-1.png"), "owner-1", mime_type="image/png")
        thumbnail_queue.enqueue("photo-2", make_source("photo-2.png"), "owner-1", mime_type="image/png")

        assert thumbnail_queue.cancel("photo-1") is True
        assert make_pool(JobKind.THUMBNAIL).drain() == 1
        assert job_store.get(waiting).status == JobStatus.CANCELLED
        assert status_counts() == {"cancelled": 1, "completed": 1}


class TestThreadedPool:

    def test_slots_drain_queue_and_stop_cleanly(self, fake_bins, make_source):
        ids = [
            thumbnail_queue.enqueue(f"photo-{i}", make_source(f"photo-{i}.png"), "owner-1", mime_type="image/png")
            for i in range(4)
        ]
        pool = make_pool(JobKind.THUMBNAIL, concurrency=2)
        pool.start()
        try:
            assert wait_for(lambda: status_counts() == {"completed": 4})
        finally:
            assert pool.stop(grace=5) is True
        assert all(job_store.get(i).status == JobStatus.COMPLETED for i in ids)

    def test_hard_shutdown_leaves_row_processing(self, fake_bins, make_source, monkeypatch):
        monkeypatch.setattr(settings, "FFMPEG_PATH", fake_bins.write("ffmpeg-slow", SLOW_FFMPEG))
        job_id = thumbnail_queue.enqueue("photo", make_source("photo.png"), "owner-1", mime_type="image/png")

        pool = make_pool(JobKind.THUMBNAIL)
        pool.start()
        assert wait_for(lambda: len(process.running_processes()) == 1)

        assert pool.stop(grace=0.2) is False
        assert process.running_processes() == []
        assert job_store.get(job_id).status == JobStatus.PROCESSING

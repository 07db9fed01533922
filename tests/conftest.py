"""
Shared fixtures: an isolated SQLite job store and storage root per test,
and fake external binaries written as small executable Python scripts.
"""
from __future__ import annotations

import os
import sys
import stat
import uuid
import textwrap
from datetime import timedelta
from pathlib import Path

# No Redis in tests: pub/sub is skipped and Celery runs eagerly
os.environ["REDIS_URL"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.db import init_db, get_db_connection
from cloudbox_conversions.services.job_store import JobKind, format_ts, utcnow


@pytest.fixture(autouse=True)
def isolated_store(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    monkeypatch.setattr(settings, "SQLITE_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setattr(settings, "STORAGE_PATH", str(tmp_path / "storage"))
    init_db()
    yield tmp_path


# ─── Fake Binaries ───────────────────────────────────────────────────────────

FAKE_FFMPEG = """
import sys, time
args = sys.argv[1:]
out = args[-1]
if "-progress" in args:
    for second in range(0, 61, 6):
        print(f"out_time_us={second * 1_000_000}", flush=True)
        print("progress=continue", flush=True)
    print("progress=end", flush=True)
with open(out, "wb") as fh:
    fh.write(b"RIFFfakeWEBPdata" if out.endswith(".webp") else b"\\x00\\x00\\x00\\x18ftypmp42")
"""

FAKE_FFPROBE = """
print("60.000000")
"""

FAKE_SOFFICE = """
import sys, os
args = sys.argv[1:]
outdir = args[args.index("--outdir") + 1]
source = args[-1]
with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), "soffice.calls"), "a") as log:
    log.write(source + "\\n")
stem = os.path.splitext(os.path.basename(source))[0]
with open(os.path.join(outdir, stem + ".pdf"), "wb") as fh:
    fh.write(b"%PDF-1.4 fake")
"""

FAKE_PDFTOPPM = """
import sys
prefix = sys.argv[-1]
with open(prefix + "-1.png", "wb") as fh:
    fh.write(b"\\x89PNG fake")
"""

FAKE_FLUIDSYNTH = """
import sys, os
args = sys.argv[1:]
with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), "fluidsynth.calls"), "a") as log:
    log.write(" ".join(args) + "\\n")
with open(args[args.index("-F") + 1], "wb") as fh:
    fh.write(b"RIFFfakeWAVEdata")
"""

FAILING_FFMPEG = """
import sys
sys.stderr.write("Invalid data found when processing input\\n")
sys.exit(1)
"""

SLOW_FFMPEG = """
import time
time.sleep(30)
"""


class FakeBinaries:
    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def write(self, name: str, body: str) -> str:
        path = self.root / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    @property
    def soffice_calls(self) -> list:
        log = self.root / "soffice.calls"
        return log.read_text().splitlines() if log.exists() else []

    @property
    def fluidsynth_calls(self) -> list:
        log = self.root / "fluidsynth.calls"
        return [line.split() for line in log.read_text().splitlines()] if log.exists() else []


@pytest.fixture
def fake_bins(tmp_path, monkeypatch) -> FakeBinaries:
    bins = FakeBinaries(tmp_path / "bin")
    monkeypatch.setattr(settings, "FFMPEG_PATH", bins.write("ffmpeg", FAKE_FFMPEG))
    monkeypatch.setattr(settings, "FFPROBE_PATH", bins.write("ffprobe", FAKE_FFPROBE))
    monkeypatch.setattr(settings, "SOFFICE_PATH", bins.write("soffice", FAKE_SOFFICE))
    monkeypatch.setattr(settings, "PDFTOPPM_PATH", bins.write("pdftoppm", FAKE_PDFTOPPM))
    monkeypatch.setattr(settings, "FLUIDSYNTH_PATH", bins.write("fluidsynth", FAKE_FLUIDSYNTH))
    return bins


@pytest.fixture
def make_source(tmp_path):
    """Create a non-empty input file under tmp_path/uploads."""
    def _make(name: str, content: bytes = b"source-bytes") -> str:
        path = tmp_path / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return str(path)
    return _make


@pytest.fixture
def soundfont(tmp_path, monkeypatch) -> str:
    path = tmp_path / "soundfonts" / "General.sf2"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"sfbk")
    monkeypatch.setattr(settings, "SOUNDFONT_PATH", str(path))
    return str(path)


# ─── Direct Row Seeding ──────────────────────────────────────────────────────

def seed_job(status: str, kind: JobKind = JobKind.THUMBNAIL, file_id: str | None = None,
             age: timedelta = timedelta(0), attempts: int = 0, owner_id: str = "owner-1",
             error: str | None = None, output_path: str | None = None) -> str:
    """Insert a row in any state, bypassing the queue. Returns its id."""
    job_id = str(uuid.uuid4())
    stamp = format_ts(utcnow() - age)
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO conversion_jobs
                (id, subject_file_id, kind, status, progress, attempts, error, output_path,
                 owner_id, source_path, payload, created_at, updated_at)
            VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?, '{}', ?, ?)
            """,
            (job_id, file_id or f"file-{job_id[:8]}", JobKind(kind).value, status, attempts,
             error, output_path, owner_id, "/nonexistent/source", stamp, stamp)
        )
        conn.commit()
    return job_id


def set_updated_at(job_id: str, age: timedelta):
    with get_db_connection() as conn:
        conn.execute(
            "UPDATE conversion_jobs SET updated_at = ? WHERE id = ?",
            (format_ts(utcnow() - age), job_id)
        )
        conn.commit()


def status_counts() -> dict:
    with get_db_connection() as conn:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM conversion_jobs GROUP BY status").fetchall()
    return {row["status"]: row["n"] for row in rows}


def all_rows() -> dict:
    with get_db_connection() as conn:
        rows = conn.execute("SELECT * FROM conversion_jobs").fetchall()
    return {row["id"]: dict(row) for row in rows}

import logging
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.core.errors import UnsupportedFormat, ConversionError
from cloudbox_conversions.services.job_store import JobKind
from cloudbox_conversions.services.storage import transcode_output_path, job_temp_dir
from cloudbox_conversions.services.drivers.base import ConversionDriver, ConversionRequest, ProgressChannel
from cloudbox_conversions.services.drivers import process

logger = logging.getLogger(__name__)

# ─── Presets ─────────────────────────────────────────────────────────────────
QUALITY_PRESETS: Dict[str, Dict[str, str]] = {
    "low":    {"video_bitrate": "500k",  "audio_bitrate": "96k",  "scale": "640:-2",  "preset": "ultrafast"},
    "medium": {"video_bitrate": "1500k", "audio_bitrate": "128k", "scale": "1280:-2", "preset": "fast"},
    "high":   {"video_bitrate": "4000k", "audio_bitrate": "192k", "scale": "1920:-2", "preset": "medium"},
}

OUTPUT_FORMATS: Dict[str, Dict[str, str]] = {
    "mp4":  {"video_codec": "libx264",    "audio_codec": "aac"},
    "webm": {"video_codec": "libvpx-vp9", "audio_codec": "libopus"},
}

DEFAULT_FORMAT = "mp4"
DEFAULT_QUALITY = "medium"

# Source types; "midi" is synthesized to audio instead of re-encoded
VIDEO_TYPE = "video"
MIDI_TYPE = "midi"
MIDI_OUTPUT_FORMAT = "mp3"

# ffmpeg reports both keys in microseconds
_OUT_TIME_RE = re.compile(r"^out_time_(?:us|ms)=(\d+)\s*$")

def parse_out_time(line: str) -> Optional[float]:
    """Elapsed output seconds from one `-progress` line, or None."""
    match = _OUT_TIME_RE.match(line.strip())
    if not match:
        return None
    return int(match.group(1)) / 1_000_000

def progress_percent(elapsed: float, total: float) -> int:
    """Encoder progress, capped at 99 until the process has exited cleanly."""
    if total <= 0:
        return 0
    return max(0, min(99, round(elapsed / total * 100)))

def media_duration(source: Path) -> float:
    """Container duration in seconds; 0 when ffprobe fails or prints nothing useful."""
    try:
        output = process.run(
            [
                settings.FFPROBE_PATH,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(source),
            ],
            label="ffprobe",
            timeout=settings.DURATION_TIMEOUT_SECONDS,
        )
        return max(0.0, float(output.strip()))
    except (ConversionError, ValueError) as e:
        logger.warning(f"Reading duration failed for {source}: {e}")
        return 0.0

def build_encode_args(source: Path, destination: Path, fmt: str, quality: str) -> List[str]:
    preset = QUALITY_PRESETS[quality]
    codecs = OUTPUT_FORMATS[fmt]
    args = [
        settings.FFMPEG_PATH,
        "-hide_banner", "-nostats",
        "-i", str(source),
        "-c:v", codecs["video_codec"],
        "-b:v", preset["video_bitrate"],
        "-vf", f"scale={preset['scale']}",
        "-c:a", codecs["audio_codec"],
        "-b:a", preset["audio_bitrate"],
    ]
    if fmt == "mp4":
        args += ["-preset", preset["preset"], "-movflags", "+faststart"]
    args += ["-y", "-progress", "pipe:1", str(destination)]
    return args

# ─── MIDI ────────────────────────────────────────────────────────────────────

def check_soundfont():
    soundfont = settings.SOUNDFONT_PATH
    if not soundfont:
        raise ConversionError("MIDI soundfont path is not configured")
    if not Path(soundfont).is_file():
        raise ConversionError(f"MIDI soundfont not found: {soundfont}")

def build_midi_render_args(source: Path, wav: Path) -> List[str]:
    return [
        settings.FLUIDSYNTH_PATH,
        "-ni",
        "-g", str(settings.MIDI_GAIN),
        "-r", str(settings.MIDI_SAMPLE_RATE),
        "-F", str(wav),
        "-T", "wav",
        settings.SOUNDFONT_PATH,
        str(source),
    ]

def build_mp3_encode_args(wav: Path, destination: Path) -> List[str]:
    return [
        settings.FFMPEG_PATH,
        "-hide_banner", "-nostats",
        "-y", "-i", str(wav),
        "-codec:a", "libmp3lame",
        "-q:a", str(settings.MIDI_MP3_QUALITY),
        str(destination),
    ]

class TranscodeDriver(ConversionDriver):
    kind = JobKind.TRANSCODE

    def output_path(self, subject_file_id: str, owner_id: str, options: Dict[str, Any]) -> Path:
        if options.get("type") == MIDI_TYPE:
            return transcode_output_path(subject_file_id, owner_id, MIDI_OUTPUT_FORMAT)
        return transcode_output_path(subject_file_id, owner_id, options.get("format") or DEFAULT_FORMAT)

    def check_supported(self, request: ConversionRequest):
        source_type = request.options.get("type") or VIDEO_TYPE
        if source_type == MIDI_TYPE:
            check_soundfont()
            return
        if source_type != VIDEO_TYPE:
            raise UnsupportedFormat(f"Unsupported transcode source type: {source_type}")

        fmt = request.options.get("format") or DEFAULT_FORMAT
        quality = request.options.get("quality") or DEFAULT_QUALITY
        if fmt not in OUTPUT_FORMATS:
            raise UnsupportedFormat(f"Unsupported transcode format: {fmt}")
        if quality not in QUALITY_PRESETS:
            raise UnsupportedFormat(f"Unknown quality preset: {quality}")

    def convert(self, request: ConversionRequest, progress: ProgressChannel) -> Path:
        if request.options.get("type") == MIDI_TYPE:
            return self._render_midi(request, progress)

        fmt = request.options.get("format") or DEFAULT_FORMAT
        quality = request.options.get("quality") or DEFAULT_QUALITY

        duration = media_duration(request.source_path)
        logger.info(f"Transcoding {request.subject_file_id} to {fmt}/{quality} (duration {duration:.1f}s)")

        args = build_encode_args(request.source_path, request.staging_path, fmt, quality)
        with process.ManagedProcess(args, label="ffmpeg", timeout=settings.TRANSCODE_TIMEOUT_SECONDS) as proc:
            for line in proc.stdout_lines():
                elapsed = parse_out_time(line)
                if elapsed is not None:
                    progress.emit(progress_percent(elapsed, duration))
            proc.check()

        progress.done()
        return request.staging_path

    def _render_midi(self, request: ConversionRequest, progress: ProgressChannel) -> Path:
        """fluidsynth renders a WAV into the job's scratch dir; ffmpeg encodes it to MP3."""
        logger.info(f"Rendering MIDI {request.subject_file_id} with {settings.SOUNDFONT_PATH}")
        workdir = job_temp_dir(request.job_id)
        try:
            wav = workdir / "render.wav"
            process.run(
                build_midi_render_args(request.source_path, wav),
                label="fluidsynth",
                timeout=settings.MIDI_RENDER_TIMEOUT_SECONDS,
            )
            progress.emit(50)
            process.run(
                build_mp3_encode_args(wav, request.staging_path),
                label="ffmpeg",
                timeout=settings.TRANSCODE_TIMEOUT_SECONDS,
            )
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        progress.done()
        return request.staging_path

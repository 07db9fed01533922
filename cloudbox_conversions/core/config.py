from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Cloudbox Conversions"
    DATABASE_URL: str = "" # Logic: If set, use Postgres. Else, use SQLite.
    SQLITE_PATH: str = "conversions.db"
    REDIS_URL: str = "redis://localhost:6379/0" # Default local Redis; empty disables pub/sub and the broker
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "120/minute"
    LOG_LEVEL: str = "INFO"

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # ─── Storage ─────────────────────────────────────────────────────────
    STORAGE_PATH: str = "storage"

    # ─── Worker Pools ────────────────────────────────────────────────────
    WORKER_TYPE: str = "all"  # "all", "transcode", "thumbnail" or "document_preview"
    WORKER_CONCURRENCY: int = 2
    THUMBNAIL_CONCURRENCY_MULTIPLIER: int = 2  # thumbnails are lighter per job
    DOCUMENT_CONCURRENCY: int = 2
    POLL_INTERVAL_SECONDS: float = 1.0
    MAX_POLL_INTERVAL_SECONDS: float = 5.0
    SHUTDOWN_GRACE_SECONDS: float = 30.0
    PROGRESS_STEP: int = 10           # persist progress only when crossing this boundary
    PROGRESS_HEARTBEAT_SECONDS: float = 60.0

    # ─── Recovery ────────────────────────────────────────────────────────
    STALE_AFTER_SECONDS: int = 3600
    MAX_ATTEMPTS: int = 3
    JOB_RETENTION_DAYS: int = 7
    STALL_SWEEP_INTERVAL_SECONDS: int = 600
    STAGING_MAX_AGE_SECONDS: int = 86400

    # ─── External Binaries ───────────────────────────────────────────────
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    SOFFICE_PATH: str = "soffice"
    PDFTOPPM_PATH: str = "pdftoppm"
    FLUIDSYNTH_PATH: str = "fluidsynth"
    TRANSCODE_TIMEOUT_SECONDS: float = 4 * 3600
    THUMBNAIL_TIMEOUT_SECONDS: float = 30
    DOCUMENT_TIMEOUT_SECONDS: float = 60
    DURATION_TIMEOUT_SECONDS: float = 30
    THUMBNAIL_SIZE: int = 300

    # ─── MIDI Rendering ──────────────────────────────────────────────────
    SOUNDFONT_PATH: str = ""
    MIDI_SAMPLE_RATE: int = 44100
    MIDI_GAIN: float = 0.8
    MIDI_MP3_QUALITY: int = 2  # libmp3lame VBR, 0 best .. 9 smallest
    MIDI_RENDER_TIMEOUT_SECONDS: float = 300

    class Config:
        env_file = ".env"

settings = Settings()

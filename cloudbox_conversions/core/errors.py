"""
Error taxonomy for the conversion pipeline.

Everything deriving from ConversionError fails a single job and is turned
into a `failed` row at the worker boundary. ServiceUnavailable is the only
error that reaches callers synchronously (enqueue time, no job created).
"""
from typing import Optional

STDERR_EXCERPT_CHARS: int = 500


class ConversionError(RuntimeError):
    """Base for every error that fails a conversion job."""


class InputNotFound(ConversionError):
    def __init__(self, path: str):
        super().__init__(f"Input file not found: {path}")
        self.path = path


class UnsupportedFormat(ConversionError):
    pass


class ProcessFailure(ConversionError):
    """An external binary ran (or could not be started) and failed."""

    def __init__(self, label: str, exit_code: int, stderr_excerpt: str = ""):
        excerpt = (stderr_excerpt or "").strip()[-STDERR_EXCERPT_CHARS:]
        message = f"{label} exited with code {exit_code}"
        if excerpt:
            message = f"{message}: {excerpt}"
        super().__init__(message)
        self.label = label
        self.exit_code = exit_code
        self.stderr_excerpt = excerpt


class ConversionTimeout(ConversionError):
    def __init__(self, label: str, timeout_seconds: float):
        super().__init__(f"{label} timed out after {timeout_seconds:g}s")
        self.label = label
        self.timeout_seconds = timeout_seconds


class ServiceUnavailable(RuntimeError):
    """The job store could not be reached; the caller should try again later."""

    def __init__(self, message: str = "Conversion queue unavailable", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

import abc
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from cloudbox_conversions.services.job_store import JobKind

logger = logging.getLogger(__name__)

@dataclass
class ConversionRequest:
    job_id: str
    subject_file_id: str
    owner_id: str
    source_path: Path
    target_path: Path
    staging_path: Path
    options: Dict[str, Any] = field(default_factory=dict)

class ProgressChannel:
    """
    One-way progress stream from a driver to its worker.

    Values are clamped to 0..100 and only increases are forwarded, so the
    sink sees a strictly increasing sequence. The driver never sees where
    the values end up.
    """

    def __init__(self, sink: Optional[Callable[[int], None]] = None):
        self._sink = sink
        self._lock = threading.Lock()
        self.last = 0

    def emit(self, percent: float) -> bool:
        value = max(0, min(100, int(round(percent))))
        with self._lock:
            if value <= self.last:
                return False
            self.last = value
        if self._sink:
            self._sink(value)
        return True

    def done(self):
        self.emit(100)

class ConversionDriver(abc.ABC):
    """
    Adapter that performs one kind's conversion via an external binary.
    Drivers write only to `request.staging_path` and never touch the job store.
    """

    kind: JobKind

    @abc.abstractmethod
    def output_path(self, subject_file_id: str, owner_id: str, options: Dict[str, Any]) -> Path:
        """Final, cache-visible location of the derivative."""
        pass

    def check_supported(self, request: ConversionRequest):
        """Raise UnsupportedFormat before any binary runs. Default: accept."""
        return None

    @abc.abstractmethod
    def convert(self, request: ConversionRequest, progress: ProgressChannel) -> Path:
        """
        Produce the artifact at `request.staging_path` and return that path,
        or return `request.target_path` when a usable artifact already exists.
        """
        pass

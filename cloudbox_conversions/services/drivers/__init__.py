"""
Conversion drivers, one per job kind.
"""
from typing import Dict, Type

from cloudbox_conversions.services.job_store import JobKind
from .base import ConversionDriver, ConversionRequest, ProgressChannel
from .transcode import TranscodeDriver
from .thumbnail import ThumbnailDriver
from .document import DocumentPreviewDriver

DRIVERS: Dict[JobKind, Type[ConversionDriver]] = {
    JobKind.TRANSCODE: TranscodeDriver,
    JobKind.THUMBNAIL: ThumbnailDriver,
    JobKind.DOCUMENT_PREVIEW: DocumentPreviewDriver,
}

def resolve_driver(kind: JobKind) -> ConversionDriver:
    return DRIVERS[JobKind(kind)]()

__all__ = [
    "ConversionDriver",
    "ConversionRequest",
    "ProgressChannel",
    "TranscodeDriver",
    "ThumbnailDriver",
    "DocumentPreviewDriver",
    "DRIVERS",
    "resolve_driver",
]

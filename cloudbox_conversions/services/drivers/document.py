import os
import shutil
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.core.errors import UnsupportedFormat, ConversionError
from cloudbox_conversions.services.job_store import JobKind
from cloudbox_conversions.services.storage import preview_output_path, is_usable_artifact, job_temp_dir
from cloudbox_conversions.services.drivers.base import ConversionDriver, ConversionRequest, ProgressChannel
from cloudbox_conversions.services.drivers import process

logger = logging.getLogger(__name__)

# ─── Supported Sources ───────────────────────────────────────────────────────
DOCUMENT_FAMILIES: Dict[str, Dict[str, tuple]] = {
    "word_processing": {
        "extensions": (".doc", ".docx", ".odt"),
        "mime_types": (
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/vnd.oasis.opendocument.text",
        ),
    },
    "spreadsheet": {
        "extensions": (".xls", ".xlsx", ".ods"),
        "mime_types": (
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "application/vnd.oasis.opendocument.spreadsheet",
        ),
    },
    "presentation": {
        "extensions": (".ppt", ".pptx", ".odp"),
        "mime_types": (
            "application/vnd.ms-powerpoint",
            "application/vnd.openxmlformats-officedocument.presentationml.presentation",
            "application/vnd.oasis.opendocument.presentation",
        ),
    },
    "rich_text": {
        "extensions": (".rtf",),
        "mime_types": ("application/rtf", "text/rtf"),
    },
}

def document_family(filename: str, mime_type: Optional[str] = None) -> Optional[str]:
    """Family of a convertible document by MIME type, else by extension."""
    mime = (mime_type or "").split(";")[0].strip().lower()
    ext = os.path.splitext(filename)[1].lower()
    for family, members in DOCUMENT_FAMILIES.items():
        if mime and mime in members["mime_types"]:
            return family
    for family, members in DOCUMENT_FAMILIES.items():
        if ext in members["extensions"]:
            return family
    return None

def is_convertible_document(filename: str, mime_type: Optional[str] = None) -> bool:
    return document_family(filename, mime_type) is not None

def convert_to_pdf(source: Path, workdir: Path, timeout: float) -> Path:
    """
    Run headless LibreOffice into `workdir` and return the produced PDF.
    Each call gets its own profile directory so parallel conversions do not
    fight over the shared user installation lock.
    """
    profile = workdir / "profile"
    args = [
        settings.SOFFICE_PATH,
        f"-env:UserInstallation={profile.resolve().as_uri()}",
        "--headless",
        "--convert-to", "pdf",
        "--outdir", str(workdir),
        str(source),
    ]
    process.run(args, label="soffice", timeout=timeout)

    produced = workdir / f"{source.stem}.pdf"
    if not is_usable_artifact(produced):
        raise ConversionError(f"soffice produced no PDF for {source.name}")
    return produced

class DocumentPreviewDriver(ConversionDriver):
    kind = JobKind.DOCUMENT_PREVIEW

    def output_path(self, subject_file_id: str, owner_id: str, options: Dict[str, Any]) -> Path:
        return preview_output_path(subject_file_id, owner_id)

    def check_supported(self, request: ConversionRequest):
        if not is_convertible_document(request.source_path.name, request.options.get("mime_type")):
            raise UnsupportedFormat(f"Document type not supported for preview: {request.source_path.name}")

    def convert(self, request: ConversionRequest, progress: ProgressChannel) -> Path:
        if is_usable_artifact(request.target_path):
            logger.info(f"Preview for {request.subject_file_id} already cached; skipping soffice.")
            progress.done()
            return request.target_path

        workdir = job_temp_dir(request.job_id)
        try:
            progress.emit(50)
            produced = convert_to_pdf(request.source_path, workdir, settings.DOCUMENT_TIMEOUT_SECONDS)
            shutil.move(str(produced), str(request.staging_path))
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        progress.done()
        return request.staging_path

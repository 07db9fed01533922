import shutil
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.core.errors import UnsupportedFormat, ConversionError
from cloudbox_conversions.services.job_store import JobKind
from cloudbox_conversions.services.storage import (
    thumbnail_output_path, preview_output_path, is_usable_artifact, job_temp_dir, discard,
)
from cloudbox_conversions.services.drivers.base import ConversionDriver, ConversionRequest, ProgressChannel
from cloudbox_conversions.services.drivers.document import is_convertible_document, convert_to_pdf
from cloudbox_conversions.services.drivers import process

logger = logging.getLogger(__name__)

VIDEO_FRAME_OFFSET = "1"

def source_category(filename: str, mime_type: Optional[str]) -> Optional[str]:
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    if mime == "application/pdf":
        return "pdf"
    if mime and is_convertible_document(filename, mime):
        return "document"
    return None

def crop_filter(size: int, anchor_top: bool = False) -> str:
    """Scale to cover a size x size box, then crop (centered or from the top)."""
    y = "0" if anchor_top else f"(ih-{size})/2"
    return (
        f"scale={size}:{size}:force_original_aspect_ratio=increase,"
        f"crop={size}:{size}:(iw-{size})/2:{y}"
    )

def frame_args(source: Path, destination: Path, size: int,
               seek: Optional[str] = None, anchor_top: bool = False, cover_art: bool = False) -> List[str]:
    args = [settings.FFMPEG_PATH, "-hide_banner", "-loglevel", "error"]
    if seek:
        args += ["-ss", seek]
    args += ["-i", str(source)]
    if cover_art:
        args += ["-an", "-map", "0:v:0"]
    args += [
        "-vf", crop_filter(size, anchor_top),
        "-frames:v", "1",
        "-c:v", "libwebp", "-quality", "80",
        "-y", str(destination),
    ]
    return args

class ThumbnailDriver(ConversionDriver):
    """
    Single-frame 300x300 WebP previews for images, video, audio cover art,
    PDFs and office documents. No duration lookup, single pass per source.
    """
    kind = JobKind.THUMBNAIL

    def output_path(self, subject_file_id: str, owner_id: str, options: Dict[str, Any]) -> Path:
        return thumbnail_output_path(subject_file_id, owner_id)

    def check_supported(self, request: ConversionRequest):
        if not source_category(request.source_path.name, request.options.get("mime_type")):
            mime = request.options.get("mime_type") or "unknown"
            raise UnsupportedFormat(f"No thumbnail support for {mime}")

    def convert(self, request: ConversionRequest, progress: ProgressChannel) -> Path:
        category = source_category(request.source_path.name, request.options.get("mime_type"))
        size = settings.THUMBNAIL_SIZE

        if category == "image":
            self._render(frame_args(request.source_path, request.staging_path, size))
        elif category == "video":
            self._render(frame_args(request.source_path, request.staging_path, size, seek=VIDEO_FRAME_OFFSET))
            if not is_usable_artifact(request.staging_path):
                # Clip shorter than the seek offset: take the first frame instead
                discard(request.staging_path)
                self._render(frame_args(request.source_path, request.staging_path, size))
        elif category == "audio":
            self._render(frame_args(request.source_path, request.staging_path, size, cover_art=True))
        elif category == "pdf":
            self._from_pdf(request, request.source_path, size)
        else:
            self._from_document(request, size)

        progress.done()
        return request.staging_path

    # ─── Sources ─────────────────────────────────────────────────────────────

    def _render(self, args: List[str]):
        process.run(args, label="ffmpeg", timeout=settings.THUMBNAIL_TIMEOUT_SECONDS)

    def _from_pdf(self, request: ConversionRequest, pdf: Path, size: int):
        workdir = job_temp_dir(request.job_id)
        try:
            prefix = workdir / "page"
            process.run(
                [settings.PDFTOPPM_PATH, "-png", "-f", "1", "-l", "1",
                 "-scale-to", str(size * 2), str(pdf), str(prefix)],
                label="pdftoppm",
                timeout=settings.THUMBNAIL_TIMEOUT_SECONDS,
            )
            # pdftoppm zero-pads the page suffix to the page count's width
            pages = sorted(workdir.glob("page-*.png"))
            if not pages:
                raise ConversionError(f"pdftoppm rendered no page for {pdf.name}")
            self._render(frame_args(pages[0], request.staging_path, size, anchor_top=True))
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _from_document(self, request: ConversionRequest, size: int):
        cached = preview_output_path(request.subject_file_id, request.owner_id)
        if is_usable_artifact(cached):
            self._from_pdf(request, cached, size)
            return

        docdir = job_temp_dir(f"{request.job_id}-doc")
        try:
            pdf = convert_to_pdf(request.source_path, docdir, settings.DOCUMENT_TIMEOUT_SECONDS)
            self._from_pdf(request, pdf, size)
        finally:
            shutil.rmtree(docdir, ignore_errors=True)

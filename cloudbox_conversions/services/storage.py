import os
import logging
from pathlib import Path
from typing import Optional

from cloudbox_conversions.core.config import settings
from cloudbox_conversions.core.errors import ConversionError

logger = logging.getLogger(__name__)

# Storage areas under STORAGE_PATH
FILES_AREA = "files"
THUMBNAILS_AREA = "thumbnails"
TEMP_AREA = "temp"
AREAS = (FILES_AREA, THUMBNAILS_AREA, TEMP_AREA)

STAGING_MARKER = ".staging-"

def get_storage_path(area: str, *parts: str) -> Path:
    """
    Resolve a path inside one storage area.
    Raises ValueError for unknown areas or parts that escape the area root.
    """
    if area not in AREAS:
        raise ValueError(f"Unknown storage area: {area}")
    root = (Path(settings.STORAGE_PATH) / area).resolve()
    path = root.joinpath(*parts).resolve() if parts else root
    if path != root and root not in path.parents:
        raise ValueError(f"Path escapes storage area {area}: {'/'.join(parts)}")
    return path

def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path

# ─── Derivative Locations ────────────────────────────────────────────────────

def transcode_output_path(file_id: str, owner_id: str, fmt: str = "mp4") -> Path:
    return get_storage_path(FILES_AREA, owner_id, f"{file_id}_transcoded.{fmt}")

def thumbnail_output_path(file_id: str, owner_id: str) -> Path:
    return get_storage_path(THUMBNAILS_AREA, owner_id, f"{file_id}.webp")

def preview_output_path(file_id: str, owner_id: str) -> Path:
    return get_storage_path(FILES_AREA, owner_id, f"{file_id}_preview.pdf")

def job_temp_dir(job_id: str) -> Path:
    """Private scratch directory for one job (soffice profile, pdftoppm output)."""
    return ensure_dir(get_storage_path(TEMP_AREA, job_id))

# ─── Staging & Promotion ─────────────────────────────────────────────────────

def staging_path_for(target: Path, job_id: str) -> Path:
    """Job-scoped name next to the target; keeps the extension so encoders pick the container."""
    return target.with_name(f"{STAGING_MARKER}{job_id}-{target.name}")

def is_staging_file(path: Path) -> bool:
    return path.name.startswith(STAGING_MARKER)

def is_usable_artifact(path: Optional[Path]) -> bool:
    if not path:
        return False
    try:
        return os.path.isfile(path) and os.path.getsize(path) > 0
    except OSError:
        return False

def promote(staged: Path, target: Path) -> Path:
    """
    Atomically move a staged artifact into its cache-visible location.
    Raises ConversionError when the staged file is missing or empty.
    """
    if not is_usable_artifact(staged):
        discard(staged)
        raise ConversionError(f"Conversion produced no output: {staged.name}")
    ensure_dir(target.parent)
    os.replace(staged, target)
    logger.debug(f"Promoted {staged.name} -> {target}")
    return target

def discard(path: Path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove staged file {path}: {e}")

import os
import time
import shutil
import logging

from cloudbox_conversions.services.storage import (
    get_storage_path, is_staging_file, FILES_AREA, THUMBNAILS_AREA, TEMP_AREA,
)

logger = logging.getLogger(__name__)

def cleanup_staging_files(max_age_seconds: int = 86400) -> int:
    """
    Removes staged outputs and job scratch directories left behind by
    workers that died mid-conversion.

    Args:
        max_age_seconds: Minimum age before a leftover is removed (default: 24h).
    """
    now = time.time()
    count = 0

    for area in (FILES_AREA, THUMBNAILS_AREA):
        root = get_storage_path(area)
        if not root.exists():
            continue
        for path in root.rglob(".staging-*"):
            if not path.is_file() or not is_staging_file(path):
                continue
            if now - path.stat().st_mtime > max_age_seconds:
                try:
                    path.unlink()
                    count += 1
                except OSError as e:
                    logger.warning(f"Failed to delete staged file {path}: {e}")

    temp_root = get_storage_path(TEMP_AREA)
    if temp_root.exists():
        for entry in temp_root.iterdir():
            if now - entry.stat().st_mtime <= max_age_seconds:
                continue
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    os.remove(entry)
                count += 1
            except OSError as e:
                logger.warning(f"Failed to delete scratch entry {entry}: {e}")

    if count > 0:
        logger.info(f"Cleanup: Removed {count} leftover staging entries (>{max_age_seconds}s).")
    return count

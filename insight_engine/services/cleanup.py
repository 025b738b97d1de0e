import os
import time
import logging

from insight_engine.services.storage import is_virtual_path

logger = logging.getLogger(__name__)


def cleanup_file(file_path: str) -> bool:
    """Remove one job's uploaded file. Missing files and text jobs are a no-op."""
    if is_virtual_path(file_path):
        return False
    name = os.path.basename(file_path)
    try:
        os.remove(file_path)
        logger.info(f"[{name}] Cleaned up temporary file.")
        return True
    except FileNotFoundError:
        logger.info(f"[{name}] File already deleted or doesn't exist.")
    except OSError as e:
        logger.error(f"Failed to clean up file {file_path}: {e}")
    return False


def cleanup_old_files(directory: str, max_age_seconds: int = 86400) -> int:
    """
    Sweep abandoned uploads after a job finishes.

    Files older than ``max_age_seconds`` are deleted; the directory itself is
    removed once nothing is left in it (the storage provider recreates it on
    the next upload). Returns the number of files removed.
    """
    if not os.path.isdir(directory):
        return 0

    cutoff = time.time() - max_age_seconds
    removed = 0
    try:
        with os.scandir(directory) as entries:
            stale = [e for e in entries if e.is_file() and e.stat().st_mtime < cutoff]
        for entry in stale:
            try:
                os.remove(entry.path)
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to delete old file {entry.name}: {e}")

        if removed:
            logger.info(f"Cleanup: Removed {removed} old files (>{max_age_seconds}s) from {directory}.")

        if not os.listdir(directory):
            os.rmdir(directory)
            logger.info(f"Removed empty uploads directory {directory}.")
    except OSError as e:
        logger.error(f"Cleanup failed for {directory}: {e}")

    return removed

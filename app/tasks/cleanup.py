"""
Cleanup Task: Periodically remove upload leftovers from interrupted publishes.
"""
import logging
import shutil
import time
from pathlib import Path

from celery import shared_task

from app.config import settings
from app.metrics import observe_job

logger = logging.getLogger(__name__)


def sweep_upload_dir(root: str | Path, max_age_seconds: int, now: float | None = None) -> int:
    """Delete entries directly under ``root`` last modified more than ``max_age_seconds`` ago."""
    root = Path(root)
    if not root.is_dir():
        return 0
    cutoff = (now if now is not None else time.time()) - max_age_seconds
    removed = 0
    for entry in root.iterdir():
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("Could not remove stale upload %s", entry, exc_info=True)
    return removed


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def cleanup_stale_uploads(self) -> dict:
    """Remove spooled archives and extraction dirs older than the configured age."""
    started = time.monotonic()
    status = "success"
    try:
        removed = sweep_upload_dir(settings.upload_tmp_dir, settings.upload_tmp_max_age_seconds)
    except Exception:
        status = "error"
        raise
    finally:
        observe_job("cleanup_stale_uploads", status, time.monotonic() - started)

    logger.info("Cleaned up %d stale upload(s)", removed)
    return {"removed_uploads": removed}

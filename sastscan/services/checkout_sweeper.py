"""Checkout sweeper: delete scan checkouts left behind by crashed or killed workers."""

import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sastscan.core.config import Settings

logger = logging.getLogger(__name__)


def run_sweep(settings: "Settings", now: datetime | None = None) -> int:
    """
    Remove checkout directories under CHECKOUT_ROOT older than CHECKOUT_MAX_AGE_HOURS.

    Age is taken from the directory's modification time. Returns the number of
    directories removed. Idempotent: safe to run repeatedly.
    """
    root = Path(settings.CHECKOUT_ROOT)
    if not root.is_dir():
        logger.info("Checkout root %s does not exist; nothing to sweep.", root)
        return 0

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=settings.CHECKOUT_MAX_AGE_HOURS)
    removed = 0
    for entry in sorted(root.iterdir()):
        if entry.is_symlink() or not entry.is_dir():
            continue
        try:
            modified = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
        except OSError as e:
            logger.warning("Cannot stat checkout %s: %s", entry, e)
            continue
        if modified >= cutoff:
            continue
        try:
            shutil.rmtree(entry)
        except OSError as e:
            logger.warning("Failed to remove checkout %s: %s", entry, e)
            continue
        removed += 1

    if removed > 0:
        logger.info(
            "Sweep run: cutoff=%s, checkouts_removed=%s",
            cutoff.isoformat(),
            removed,
        )
    return removed

"""
CLI entrypoint for the stale checkout sweeper. Run from cron, e.g.:

  python -m sastscan.sweep

Or hourly: 0 * * * * cd /path/to/sast-scan && .venv/bin/python -m sastscan.sweep
"""

import logging
import sys

from dotenv import load_dotenv

from sastscan.core.config import get_settings
from sastscan.services.checkout_sweeper import run_sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def main() -> int:
    """Remove checkouts older than CHECKOUT_MAX_AGE_HOURS."""
    load_dotenv()
    settings = get_settings()
    try:
        removed = run_sweep(settings)
        logger.info("Sweep completed: checkouts_removed=%s", removed)
        return 0
    except OSError as e:
        logger.exception("Sweep job failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())

# sheets/conf.py
from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_int(name: str, fallback: int) -> int:
    try:
        return int(os.getenv(name, str(fallback)))
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s, using %s", name, fallback)
        return fallback


# ----------------------------------------------------------------------
# Paths (all under assets/)
# ----------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent.parent
ASSETS_DIR = ROOT_DIR / "assets"

SERVER_DB_PATH = ASSETS_DIR / "server.db"

# Postgres is required in production for FOR UPDATE SKIP LOCKED claims
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{SERVER_DB_PATH}")

# ----------------------------------------------------------------------
# Trigger processing
# ----------------------------------------------------------------------
POLL_INTERVAL_SECONDS = _env_int("TRIGGER_POLL_INTERVAL_SECONDS", 30)
BATCH_SIZE = _env_int("TRIGGER_BATCH_SIZE", 200)
MAX_CONCURRENT_TRIGGERS = _env_int("TRIGGER_MAX_CONCURRENCY", 20)
WEBHOOK_TIMEOUT_SECONDS = _env_int("TRIGGER_WEBHOOK_TIMEOUT_SECONDS", 30)
STUCK_TRIGGER_TIMEOUT_SECONDS = _env_int("TRIGGER_STUCK_TIMEOUT_SECONDS", 5 * 60)
DEFAULT_MAX_RETRIES = _env_int("TRIGGER_MAX_RETRIES", 3)
BACKFILL_BATCH_SIZE = _env_int("TRIGGER_BACKFILL_BATCH_SIZE", 500)
BACKFILL_DELAY_SECONDS = _env_int("TRIGGER_BACKFILL_DELAY_SECONDS", 2)
BACKFILL_MAX_ATTEMPTS = _env_int("TRIGGER_BACKFILL_MAX_ATTEMPTS", 3)
# First backfill retry waits this long, doubling each attempt
BACKFILL_RETRY_BASE_SECONDS = 10

# Backfill must not fire on historical data older than this
STALE_THRESHOLD_SECONDS = 60
# Allowed drift between the stored original time and the live field value
TIMESTAMP_TOLERANCE_MS = 1000
RETRY_BASE_MINUTES = 5


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
    )

    logger.info("Time-based triggers – configuration")
    logger.info("Database       : %s", DATABASE_URL)
    logger.info("Poll interval  : %ss", POLL_INTERVAL_SECONDS)
    logger.info("Batch size     : %s", BATCH_SIZE)
    logger.info("Concurrency    : %s", MAX_CONCURRENT_TRIGGERS)
    logger.info("Webhook timeout: %ss", WEBHOOK_TIMEOUT_SECONDS)
    logger.info("Max retries    : %s", DEFAULT_MAX_RETRIES)

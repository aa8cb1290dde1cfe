# automation/conf.py
from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


# ----------------------------------------------------------------------
# Paths (all under assets/)
# ----------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent.parent
ASSETS_DIR = ROOT_DIR / "assets"

SERVER_DB_PATH = ASSETS_DIR / "workflows.db"
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{SERVER_DB_PATH}")

# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------
SCHEDULER_ENABLED = _env_bool("WORKFLOW_SCHEDULER_ENABLED", True)
DELAY_POLL_INTERVAL_MS = _env_int("WORKFLOW_DELAY_POLL_INTERVAL_MS", 10_000)
SCHEDULER_BATCH_SIZE = _env_int("WORKFLOW_SCHEDULER_BATCH_SIZE", 100)
CRON_CHECK_INTERVAL_MS = _env_int("WORKFLOW_CRON_CHECK_INTERVAL_MS", 60_000)

# Run a freshly triggered run in the request that created it
EXECUTE_ON_TRIGGER = _env_bool("WORKFLOW_EXECUTE_ON_TRIGGER", True)

# ----------------------------------------------------------------------
# Event bus
# ----------------------------------------------------------------------
EVENT_BUS_BACKEND = os.getenv("EVENT_BUS_BACKEND", "log").lower()  # "memory", "log" or "redis"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
EVENT_SUBJECT_PREFIX = os.getenv("EVENT_SUBJECT_PREFIX", "automation")


# ----------------------------------------------------------------------
# Debug output when run directly
# ----------------------------------------------------------------------
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
    )

    logger.info("Workflow engine configuration")
    logger.info("Database         : %s", DATABASE_URL)
    logger.info("Scheduler        : %s", "enabled" if SCHEDULER_ENABLED else "disabled")
    logger.info("Delay poll       : %d ms (batch %d)", DELAY_POLL_INTERVAL_MS, SCHEDULER_BATCH_SIZE)
    logger.info("Cron check       : %d ms", CRON_CHECK_INTERVAL_MS)
    logger.info("Execute on fire  : %s", EXECUTE_ON_TRIGGER)
    logger.info("Event bus        : %s", EVENT_BUS_BACKEND)

# ─── config.py ─────────────────────────────────────────────────────
# Everything that used to be hardcoded at the top of the bot now comes
# from the environment (.env is picked up automatically).

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer, using %s", name, raw, default)
        return default


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_admin_ids(raw: str | None) -> set[int]:
    """'123, 456,abc' → {123, 456}; junk entries are skipped."""
    ids: set[int] = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            ids.add(int(part))
    return ids


# ─── telegram ──────────────────────────────────────────────────────
BOT_TOKEN    = os.getenv("BOT_TOKEN", "")
BOT_USERNAME = os.getenv("BOT_USERNAME", "").lstrip("@")
CHANNEL_ID   = os.getenv("CHANNEL_ID", "")
ADMIN_IDS    = parse_admin_ids(os.getenv("ADMIN_IDS"))

# ─── postgres ──────────────────────────────────────────────────────
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_POOL_MIN  = _int("DB_POOL_MIN", 1)
DB_POOL_MAX  = _int("DB_POOL_MAX", 10)
RETRY_ATTEMPTS = 3
RETRY_BACKOFF_STEP = 1.0     # seconds × attempt
RETRY_BACKOFF_MAX  = 5.0

# ─── licensing ─────────────────────────────────────────────────────
# base64url of the 64-byte Ed25519 secret key; never log it
TOKEN_PRIVATE_KEY = os.getenv("TOKEN_PRIVATE_KEY", "")

# ─── listing rules ─────────────────────────────────────────────────
DESCRIPTION_MAX_LEN = _int("DESCRIPTION_MAX_LEN", 1000)
DISPLAY_ID_OFFSET   = _int("DISPLAY_ID_OFFSET", 0)
REQUIRE_CONTACT_REGISTRATION = _flag("REQUIRE_CONTACT_REGISTRATION", True)
MAX_MEDIA        = 8
MY_ADS_PAGE_SIZE = 10

# ─── in-memory state ───────────────────────────────────────────────
STATE_TTL             = timedelta(hours=2)
STATE_SWEEP_INTERVAL  = timedelta(minutes=30)
MEDIA_BATCH_TTL       = timedelta(minutes=10)
MEDIA_BATCH_DELAY     = 1.0  # seconds after the first album item
MENU_RESTORE_DELAY    = 1.5  # seconds after an unexpected error

# ─── housekeeping ──────────────────────────────────────────────────
CLICK_RETENTION_DAYS = 30
BROADCAST_RATE       = 25    # messages per second (Bot API limit)

# ─── misc ──────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

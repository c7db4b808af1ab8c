"""
Configuration Settings for the Informo Feeder

This module centralizes all configuration settings for the feeder,
including environment variables, Matrix credentials, and application constants.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Determine the application root directory
APP_ROOT = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
load_dotenv(dotenv_path=os.path.join(APP_ROOT, '.env'))


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# =============================================================================
# Matrix (publish transport)
# =============================================================================

MATRIX_HOMESERVER = os.getenv("MATRIX_HOMESERVER", "")
MATRIX_ACCESS_TOKEN = os.getenv("MATRIX_ACCESS_TOKEN", "")
MATRIX_USER_ID = os.getenv("MATRIX_USER_ID", "")
MATRIX_ROOM_ID = os.getenv("MATRIX_ROOM_ID", "")

# Each feed publishes under its own event type: prefix + feed identifier
EVENT_TYPE_PREFIX = os.getenv("EVENT_TYPE_PREFIX", "network.informo.news.")

# =============================================================================
# Signing
# =============================================================================

SIGNING_STRATEGIES = ["ed25519", "pgp"]
SIGNING_STRATEGY = os.getenv("SIGNING_STRATEGY", "ed25519").lower()

# Ed25519: one seed file per feed identifier
KEYS_DIRECTORY = os.getenv("KEYS_DIRECTORY", os.path.join(APP_ROOT, "keys"))
KEY_ENVELOPE_TYPE = "INFORMO FEEDER PRIVATE KEY"
KEY_SEED_LENGTH = 32

# PGP: a single identity signs every feed
PGP_KEY_FILE = os.getenv("PGP_KEY_FILE", "")
PGP_KEY_PASSPHRASE = os.getenv("PGP_KEY_PASSPHRASE", "")
PGP_USE_AGENT = _env_bool("PGP_USE_AGENT")
PGP_KEY_ID = os.getenv("PGP_KEY_ID", "")

# =============================================================================
# Storage
# =============================================================================

DATABASE_PATH = os.getenv("DATABASE_PATH", os.path.join(APP_ROOT, "feeder.db"))

# "snapshot" remembers every published link of the feed's current window,
# "watermark" only remembers the newest published timestamp
LEDGER_MODELS = ["snapshot", "watermark"]
LEDGER_MODEL = os.getenv("LEDGER_MODEL", "snapshot").lower()

# =============================================================================
# Feeds
# =============================================================================

FEEDS_FILE = os.getenv("FEEDS_FILE", os.path.join(APP_ROOT, "feeds.yaml"))
DEFAULT_POLL_INTERVAL = _env_int("DEFAULT_POLL_INTERVAL", 300)   # Seconds between two polls

# =============================================================================
# Network Settings
# =============================================================================

HTTP_TIMEOUT = _env_int("HTTP_TIMEOUT", 30)                    # Seconds timeout for feed and API calls
MEDIA_TIMEOUT = _env_int("MEDIA_TIMEOUT", 30)                  # Seconds timeout for media downloads
RATE_LIMIT_BACKOFF_SECONDS = _env_int("RATE_LIMIT_BACKOFF_SECONDS", 5)

USER_AGENT = 'informo-feeder/1.0 (+https://informo.network)'
REQUEST_HEADERS = {
    'User-Agent': USER_AGENT,
    'Accept': 'application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8',
}

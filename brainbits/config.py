"""Centralized configuration for Brain Bits.

Re-exports everything from brainbits.infrastructure.settings, then adds typed
constants for the database, delivery, digest and sequence jobs. Every value
has a safe default so the jobs start without extra env configuration.
"""

from __future__ import annotations

import os

from brainbits.infrastructure.settings import *  # noqa: F401, F403


def _env(key: str, default: str) -> str:
    """Read a BRAINBITS_* env var with a default."""
    return os.getenv(key, default)


# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(_env("BRAINBITS_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = 5.0
DB_CONNECT_TIMEOUT: float = 30.0
DB_TEMP_CONN_MAX: int = 10
DB_RETRY_MAX: int = 5
DB_RETRY_BASE_DELAY: float = 0.1
DB_RETRY_MAX_DELAY: float = 2.0
DB_RETRY_JITTER: float = 0.1

# --- Delivery (Resend) ---
DELIVERY_MAX_RETRIES: int = int(_env("BRAINBITS_DELIVERY_MAX_RETRIES", "3"))
DELIVERY_INITIAL_BACKOFF_SECONDS: float = float(_env("BRAINBITS_DELIVERY_BACKOFF", "1.0"))
DELIVERY_TIMEOUT_SECONDS: float = float(_env("BRAINBITS_DELIVERY_TIMEOUT", "10"))
DELIVERY_RETRYABLE_STATUSES: tuple[int, ...] = (429, 500)
IDEMPOTENCY_KEY_MAX_LENGTH: int = 256
WEBHOOK_TOLERANCE_SECONDS: int = 300

# --- Digest ---
DIGEST_DEFAULT_FREQUENCY: str = "weekly"
DIGEST_DEFAULT_NOTES_PER_DIGEST: int = 5
DIGEST_DEFAULT_SEND_HOUR: int = 8
DIGEST_DEFAULT_TIMEZONE: str = "UTC"
DIGEST_EXCERPT_MAX_LENGTH: int = 640
DIGEST_SCHEDULE_POLICY: str = _env("BRAINBITS_SCHEDULE_POLICY", "timezone")

# --- Selection scoring ---
SELECTION_DUE_SOON_DAYS: int = 3
SELECTION_MAX_OVERDUE_DAYS: int = 30
SELECTION_COOLDOWN_DAYS: int = 1
SELECTION_NEW_SHARE: float = 0.4
SELECTION_MIN_WEIGHT: float = 0.1
SELECTION_MAX_WEIGHT: float = 5.0

# --- Sequences ---
UPGRADE_DIGEST_THRESHOLD: int = 4

# --- Source sync ---
SYNC_DELAY_BETWEEN_CONNECTIONS: float = float(_env("BRAINBITS_SYNC_DELAY", "2.0"))

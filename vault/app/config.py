"""
Runtime configuration for the Clinical Note Vault.

All settings come from environment variables so the same build can run as a
desktop-local service, in CI (ENV=TEST) or behind a reverse proxy.

Variables:
  VAULT_DB_PATH                 SQLite file path (default /tmp/vault.db)
  VAULT_SYNC_INTERVAL_SECONDS   Background sync period (default 300)
  VAULT_SYNC_LOOKBACK_DAYS      First-sync download window (default 30)
  VAULT_REMOTE_URL              Base URL of the remote document service;
                                unset means an in-process peer is used
  VAULT_REMOTE_COLLECTION       Remote collection name
  VAULT_REMOTE_TIMEOUT_SECONDS  Per-request timeout for the remote peer
  VAULT_AUDIT_TRAIL_LIMIT       Row cap for the cross-note audit trail
  VAULT_LOG_LEVEL               Log level name (default INFO)
"""

import os

DEFAULT_DB_PATH = "/tmp/vault.db"
DEFAULT_REMOTE_COLLECTION = "encrypted_clinical_notes"


def get_sync_interval_seconds() -> int:
    return int(os.getenv("VAULT_SYNC_INTERVAL_SECONDS", "300"))


def get_sync_lookback_days() -> int:
    return int(os.getenv("VAULT_SYNC_LOOKBACK_DAYS", "30"))


def get_remote_url():
    url = os.getenv("VAULT_REMOTE_URL")
    return url.rstrip("/") if url else None


def get_remote_collection() -> str:
    return os.getenv("VAULT_REMOTE_COLLECTION", DEFAULT_REMOTE_COLLECTION)


def get_remote_timeout_seconds() -> float:
    return float(os.getenv("VAULT_REMOTE_TIMEOUT_SECONDS", "10"))


def get_audit_trail_limit() -> int:
    return int(os.getenv("VAULT_AUDIT_TRAIL_LIMIT", "1000"))


def get_log_level() -> str:
    return os.getenv("VAULT_LOG_LEVEL", "INFO").upper()


def is_test_mode() -> bool:
    """True when running under the test suite or with rate limits disabled."""
    return (
        os.environ.get("ENV") == "TEST" or os.environ.get("DISABLE_RATE_LIMITS") == "1"
    )

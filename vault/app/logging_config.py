"""
Structured JSON logging for the vault.

Log records carry identifiers, counts and statuses only. Note content,
passphrases and the text of removed identifiers must never be passed to a
logger; call sites log ``note_id``/``patient_ref_hash`` style fields instead.
"""

import logging
import sys

import structlog

from vault.app.config import get_log_level

_configured = False


def configure_logging(level: str = None) -> None:
    """Configure structlog for JSON output on stderr. Idempotent."""
    global _configured
    if _configured:
        return

    log_level = getattr(logging, level or get_log_level(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("vault")
    root.setLevel(log_level)
    root.addHandler(handler)
    root.propagate = False

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str):
    """Return a structlog logger under the ``vault`` namespace."""
    configure_logging()
    return structlog.get_logger(f"vault.{name}")

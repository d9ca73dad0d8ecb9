"""
Database migration utilities.

Alembic is the single source of truth for the vault schema. The store calls
``ensure_schema(db_path)`` when it is initialized; the FastAPI lifespan calls
it for the configured default database.

DB path resolution:
  1. Explicit ``db_path`` argument
  2. VAULT_DB_PATH env var
  3. Default: /tmp/vault.db
"""

import os
import sqlite3
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from vault.app.config import DEFAULT_DB_PATH
from vault.app.services.errors import StorageFailure

PathLike = Union[str, Path]


def get_db_path(db_path: Optional[PathLike] = None) -> Path:
    """
    Resolve the SQLite database file path.

    The default lives under /tmp so a database is never written inside the
    source tree.
    """
    if db_path:
        return Path(db_path)

    db_path_env = os.getenv("VAULT_DB_PATH")
    if db_path_env:
        return Path(db_path_env)

    return Path(DEFAULT_DB_PATH)


def get_database_url(db_path: Optional[PathLike] = None) -> str:
    """Return the SQLAlchemy URL Alembic uses for the resolved path."""
    return f"sqlite:///{get_db_path(db_path)}"


def ensure_db_permissions_secure(db_path: Path):
    """
    Restrict the database file to owner read/write (0600).

    Raises:
        PermissionError: If unable to set secure permissions
    """
    if not db_path.exists():
        return

    try:
        os.chmod(db_path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError as e:
        raise PermissionError(f"Failed to set secure permissions on database: {e}")


def enable_wal_mode(conn: sqlite3.Connection):
    """Switch the database to write-ahead logging."""
    conn.execute("PRAGMA journal_mode=WAL")
    conn.commit()


def _alembic_config(database_url: str):
    from alembic.config import Config

    # __file__ is vault/app/db/migrate.py, repo root is 4 levels up.
    repo_root = Path(__file__).parent.parent.parent.parent
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(repo_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    return alembic_cfg


def ensure_schema(db_path: Optional[PathLike] = None) -> Path:
    """
    Bring the database at ``db_path`` to the latest Alembic revision.

    Creates parent directories as needed, then applies WAL mode and 0600
    permissions. Idempotent. Returns the resolved path.
    """
    from alembic import command as alembic_command

    path = get_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    alembic_command.upgrade(_alembic_config(get_database_url(path)), "head")

    conn = sqlite3.connect(path)
    try:
        enable_wal_mode(conn)
    finally:
        conn.close()
    ensure_db_permissions_secure(path)
    return path


def get_connection(db_path: Optional[PathLike] = None) -> sqlite3.Connection:
    """
    Open a short-lived SQLite connection with ``sqlite3.Row`` rows.

    ``isolation_level=None`` leaves transaction control to the caller, which
    issues ``BEGIN IMMEDIATE`` around each logical operation.
    """
    conn = sqlite3.connect(
        get_db_path(db_path), timeout=30, isolation_level=None, check_same_thread=False
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def check_db_security(db_path: Optional[PathLike] = None) -> dict:
    """Report the hardening state of the database file."""
    path = get_db_path(db_path)

    results = {
        "db_exists": path.exists(),
        "permissions_secure": False,
        "wal_enabled": False,
    }

    if not path.exists():
        return results

    mode = stat.S_IMODE(os.stat(path).st_mode)
    results["permissions_secure"] = (mode & (stat.S_IRGRP | stat.S_IROTH)) == 0

    conn = get_connection(path)
    try:
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        results["wal_enabled"] = journal_mode.upper() == "WAL"
    finally:
        conn.close()

    return results


@contextmanager
def transaction(db_path: Optional[PathLike] = None) -> Iterator[sqlite3.Connection]:
    """
    One atomic unit of work on a fresh connection.

    Takes the write lock up front (``BEGIN IMMEDIATE``), commits on success and
    rolls back on any exception. ``sqlite3.Error`` is re-raised as
    ``StorageFailure``; other exceptions propagate unchanged after rollback.
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise StorageFailure(f"Database unavailable: {type(e).__name__}")

    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        _rollback(conn)
        raise StorageFailure(f"Database operation failed: {e}")
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")

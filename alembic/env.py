"""
Alembic migration environment for the Clinical Note Vault.

The vault is SQLite-only. The database URL is normally injected by
``vault.app.db.migrate.ensure_schema()``; when Alembic is driven from the
command line it falls back to VAULT_DB_PATH, then /tmp/vault.db.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _get_database_url() -> str:
    configured_url = config.get_main_option("sqlalchemy.url")
    if configured_url:
        return configured_url

    vault_db_path = os.getenv("VAULT_DB_PATH")
    if vault_db_path:
        return f"sqlite:///{vault_db_path}"

    return "sqlite:////tmp/vault.db"


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    context.configure(
        url=_get_database_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live SQLite connection."""
    connectable = create_engine(
        _get_database_url(),
        poolclass=pool.NullPool,
        connect_args={"check_same_thread": False},
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=None,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

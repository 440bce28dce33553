"""Alembic environment configuration for the notation OCR service.

Uses psycopg2 (sync) for migrations. Mirrors the connection priority of
notation_ocr/db.py with a postgresql+psycopg2:// prefix.
"""

import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _get_url() -> str:
    """Build database URL from environment."""
    if url := os.environ.get("DATABASE_URL"):
        # Ensure psycopg2 driver prefix for Alembic
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+psycopg2://", 1)
        return url

    if os.environ.get("K_SERVICE") or os.environ.get("CLOUD_RUN_JOB"):
        return (
            f"postgresql+psycopg2://{os.environ.get('ALLOYDB_USER', 'notation')}:"
            f"{os.environ.get('ALLOYDB_PASSWORD', '')}@"
            f"{os.environ.get('ALLOYDB_HOST')}/"
            f"{os.environ.get('ALLOYDB_DB', 'notation')}"
        )

    sslmode = os.environ.get("DB_SSLMODE", "disable")
    return (
        f"postgresql+psycopg2://{os.environ.get('DB_USER', 'notation')}:"
        f"{os.environ.get('DB_PASSWORD', 'notation')}@"
        f"{os.environ.get('DB_HOST', 'localhost')}:"
        f"{os.environ.get('DB_PORT', '5432')}/"
        f"{os.environ.get('DB_NAME', 'notation')}?sslmode={sslmode}"
    )


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=_get_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _get_url()
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=None)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

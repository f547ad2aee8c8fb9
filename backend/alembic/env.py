"""
Alembic environment configuration for async SQLAlchemy.

- Async engine built from MIGRATION_DATABASE_URL (schema owner)
- Model metadata imported for autogenerate support
- Script location and file template read from the project's pyproject.toml
- Offline (SQL script) and online modes
"""

import asyncio
import sys
import tomllib
from logging.config import dictConfig
from pathlib import Path

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

# backend/ holds the mpi package; the project root holds pyproject.toml
backend_dir = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_dir))

from mpi.core.config import settings
from mpi.core.database import Base

# Every model must be imported so autogenerate sees its table
import mpi.models  # noqa: F401

config = context.config

pyproject_path = backend_dir.parent / "pyproject.toml"
if pyproject_path.exists():
    with open(pyproject_path, "rb") as f:
        alembic_config = tomllib.load(f).get("tool", {}).get("alembic", {})

    for option in ("script_location", "file_template", "prepend_sys_path", "version_path_separator"):
        if option in alembic_config:
            config.set_main_option(option, str(alembic_config[option]))

dictConfig({
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "generic": {
            "format": "%(levelname)-5.5s [%(name)s] %(message)s",
            "datefmt": "%H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "formatter": "generic",
        },
    },
    "loggers": {
        "root": {"level": "WARN", "handlers": ["console"]},
        "sqlalchemy.engine": {"level": "WARN", "handlers": []},
        "alembic": {"level": "INFO", "handlers": []},
    },
})

target_metadata = Base.metadata

config.set_main_option("sqlalchemy.url", settings.MIGRATION_DATABASE_URL)


def run_migrations_offline() -> None:
    """Emit migration SQL to stdout for manual review and application."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations over an async connection without pooling."""
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

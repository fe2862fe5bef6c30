"""Alembic environment for the drug-test clinic database.

The URL comes from ``sqlalchemy.url`` when a caller sets it (tests, the
bootstrap script) and otherwise from the same environment variables the
service reads, so migrations always target the database the API will open.
"""

from __future__ import annotations

import sys
from pathlib import Path

from alembic import context
from sqlalchemy import pool

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from drugtest.db.config import DatabaseSettings, get_database_settings  # noqa: E402
from drugtest.db.models import Base  # noqa: E402


def _resolve_settings() -> DatabaseSettings:
    configured_url = (context.config.get_main_option("sqlalchemy.url") or "").strip()
    if configured_url:
        return DatabaseSettings(url=configured_url, source="alembic.ini")
    return get_database_settings()


def _configure_options(settings: DatabaseSettings) -> dict:
    # SQLite cannot ALTER most constraints in place; batch mode copies the table.
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "render_as_batch": settings.is_sqlite,
    }


def run_offline(settings: DatabaseSettings) -> None:
    context.configure(url=settings.url, literal_binds=True, **_configure_options(settings))
    with context.begin_transaction():
        context.run_migrations()


def run_online(settings: DatabaseSettings) -> None:
    engine = settings.create_engine(poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **_configure_options(settings))
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


settings = _resolve_settings()
context.config.set_main_option("sqlalchemy.url", settings.url)

if context.is_offline_mode():
    run_offline(settings)
else:
    run_online(settings)

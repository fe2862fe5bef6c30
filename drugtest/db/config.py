"""Database settings for the clinic store.

A SQLite file under the platform data directory is the default so a single
front-desk machine runs without setup.  ``DRUGTEST_DATABASE_URL`` (or the
generic ``DATABASE_URL``) points the service at PostgreSQL instead; pool
sizing comes from ``DB_POOL_*`` and is resolved once with the URL.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from platformdirs import user_data_dir
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url

APP_NAME = "drugtest"
DB_FILENAME = "drugtest.db"

# create_engine keyword -> environment variable
_POOL_ENV = {
    "pool_size": "DB_POOL_SIZE",
    "max_overflow": "DB_MAX_OVERFLOW",
    "pool_timeout": "DB_POOL_TIMEOUT",
}


@dataclass(frozen=True)
class DatabaseSettings:
    """Where clinic data lives and how engines talking to it are tuned.

    ``source`` records which setting chose the URL (``environment``,
    ``path``, ``default`` or ``explicit``) so startup logs show it.
    """

    url: str
    echo: bool = False
    source: str = "explicit"
    pool: Dict[str, int] = field(default_factory=dict)
    connect_timeout: Optional[int] = None

    @property
    def backend(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"

    @property
    def is_postgres(self) -> bool:
        return self.backend in {"postgresql", "postgres"}

    @property
    def display_url(self) -> str:
        return make_url(self.url).render_as_string(hide_password=True)

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, Any] = {"echo": self.echo, **self.pool}
        if self.is_sqlite:
            # The API hands sessions across FastAPI's threadpool.
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            # Collection dates and schedule overrides are compared as UTC calendar days.
            connect_args: Dict[str, Any] = {"options": "-c timezone=UTC"}
            if self.connect_timeout is not None:
                connect_args["connect_timeout"] = self.connect_timeout
            options["connect_args"] = connect_args
        return options

    def create_engine(self, **overrides: Any) -> Engine:
        """Build an engine; a ``poolclass`` override drops the pool sizing."""

        options = self.engine_options()
        if "poolclass" in overrides:
            for key in _POOL_ENV:
                options.pop(key, None)
        options.update(overrides)
        return create_engine(self.url, future=True, **options)


def _default_sqlite_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / DB_FILENAME


def _normalise_sqlite_path(path: str | os.PathLike[str]) -> Path:
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        resolved = resolved / DB_FILENAME
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the database settings derived from the environment.

    Raises ``ValueError`` when a pool or timeout variable is not an integer.
    """

    pool: Dict[str, int] = {}
    for option, env_name in _POOL_ENV.items():
        value = _get_int_env(env_name)
        if value is not None:
            pool[option] = value
    tuning: Dict[str, Any] = {
        "echo": os.getenv("DB_ECHO", "").strip().lower() in {"1", "true", "yes"},
        "pool": pool,
        "connect_timeout": _get_int_env("PGCONNECT_TIMEOUT"),
    }

    url = os.getenv("DRUGTEST_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=url, source="environment", **tuning)

    path_override = os.getenv("DRUGTEST_DB_PATH")
    if path_override:
        db_path = _normalise_sqlite_path(path_override)
        return DatabaseSettings(url=f"sqlite:///{db_path}", source="path", **tuning)
    return DatabaseSettings(url=f"sqlite:///{_default_sqlite_path()}", source="default", **tuning)


__all__ = ["APP_NAME", "DB_FILENAME", "DatabaseSettings", "get_database_settings"]

"""Database helpers for the drug-test clinic backend."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import (
    SessionLocal,
    configure_engine,
    get_engine,
    get_session,
    init_db,
    session_scope,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "SessionLocal",
    "configure_engine",
    "get_database_settings",
    "get_engine",
    "get_session",
    "init_db",
    "session_scope",
]

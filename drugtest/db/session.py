"""Engine and session management for the clinic database."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base


logger = structlog.get_logger(__name__)

SessionLocal: sessionmaker[Session] = sessionmaker(
    autoflush=False,
    expire_on_commit=False,
    future=True,
)

_ENGINE: Optional[Engine] = None


def configure_engine(engine: Engine) -> Engine:
    """Bind :data:`SessionLocal` to ``engine`` and remember it as the active engine."""

    global _ENGINE

    if _ENGINE is not None and _ENGINE is not engine:
        _ENGINE.dispose()
    _ENGINE = engine
    SessionLocal.configure(bind=engine)
    return engine


def get_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Return the active engine, creating it from the environment on first use."""

    if _ENGINE is not None and settings is None:
        return _ENGINE
    resolved = settings or get_database_settings()
    engine = resolved.create_engine()
    logger.info(
        "database_engine_created",
        url=resolved.display_url,
        source=resolved.source,
        sqlite=resolved.is_sqlite,
    )
    return configure_engine(engine)


def init_db(engine: Optional[Engine] = None) -> Engine:
    """Create every table known to the ORM metadata."""

    target = engine or get_engine()
    Base.metadata.create_all(target)
    return target


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context manager yielding a session that commits on success."""

    if _ENGINE is None:
        get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session."""

    if _ENGINE is None:
        get_engine()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


__all__ = [
    "SessionLocal",
    "configure_engine",
    "get_engine",
    "get_session",
    "init_db",
    "session_scope",
]

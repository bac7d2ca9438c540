"""Database session management."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set")
    return database_url


_ENGINE: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _engine_kwargs(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # one shared connection so in-memory databases survive across sessions
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


def get_engine(database_url: Optional[str] = None) -> Engine:
    global _ENGINE
    if _ENGINE is None or database_url is not None:
        url = database_url or get_database_url()
        _ENGINE = create_engine(url, future=True, **_engine_kwargs(url))
    return _ENGINE


def get_session_factory(database_url: Optional[str] = None) -> sessionmaker[Session]:
    global SessionLocal
    if SessionLocal is None or database_url is not None:
        engine = get_engine(database_url)
        SessionLocal = sessionmaker(bind=engine, future=True, expire_on_commit=False)
    return SessionLocal


@contextmanager
def get_session(database_url: Optional[str] = None) -> Generator[Session, None, None]:
    session_factory = get_session_factory(database_url)
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def init_db(database_url: Optional[str] = None) -> Engine:
    """Create all tables (development / tests; production uses alembic)."""
    from captable_mirror.db.models import Base

    if database_url is not None:
        get_session_factory(database_url)
    engine = get_engine()
    Base.metadata.create_all(engine)
    return engine


def dispose_engine() -> None:
    global _ENGINE, SessionLocal
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    SessionLocal = None

"""
Database engine and session management.

Provides:
- get_engine(): lazily created process-wide engine from DATABASE_URL
- get_session_factory(): sessionmaker bound to that engine
- get_db_session(): FastAPI dependency yielding one session per request
- get_db_session_sync(): generator for scripts and background jobs
"""

import logging
import os
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from docchat.config.auth import parse_env_int

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./docchat.db"

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """
    Read DATABASE_URL, normalizing the legacy postgres:// scheme.

    SQLAlchemy only accepts postgresql:// for the psycopg dialect.
    """
    url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def create_db_engine(url: str) -> Engine:
    """Create an engine with pool settings appropriate for the backend."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_size=parse_env_int("DB_POOL_SIZE", 5),
        max_overflow=parse_env_int("DB_MAX_OVERFLOW", 10),
        pool_pre_ping=True,
    )


def get_engine() -> Engine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        url = get_database_url()
        _engine = create_db_engine(url)
        logger.info(
            "Database engine created",
            extra={"dialect": _engine.dialect.name},
        )
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(), autoflush=False, expire_on_commit=False
        )
    return _session_factory


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency that yields a database session.

    The session is rolled back on error and always closed.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """Session generator for scripts and jobs (use with next())."""
    yield from get_db_session()


def reset_engine() -> None:
    """Dispose the engine and forget the factory (tests and scripts)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None

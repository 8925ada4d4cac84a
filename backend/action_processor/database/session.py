"""
Database session management with connection pooling.

The worker holds one engine and one session factory for its lifetime.
Repositories receive the factory and open a short-lived session per
operation through session_scope().

Usage:
    from action_processor.database.session import get_session_factory, session_scope

    with session_scope(get_session_factory()) as session:
        session.add(record)
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def normalize_database_url(database_url: Optional[str]) -> str:
    """
    Validate and normalize a database URL.

    Handles the postgres:// scheme some hosts hand out by converting it to
    postgresql://, which SQLAlchemy requires.

    Raises:
        ValueError: If no URL is configured
    """
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine(database_url: Optional[str] = None) -> Engine:
    """
    Get or create the database engine singleton.

    Pool settings:
    - pool_size: 5 connections
    - max_overflow: 10 additional connections under load
    - pool_pre_ping: verify connections before use
    """
    global _engine
    if _engine is None:
        if database_url is None:
            from action_processor.config.settings import get_settings

            database_url = get_settings().database_url
        try:
            url = normalize_database_url(database_url)
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise

        kwargs = {"pool_pre_ping": True}
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10, pool_recycle=1800)
        _engine = create_engine(url, **kwargs)
        logger.info("Database engine created with connection pooling")
    return _engine


def get_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(database_url),
        )
    return _SessionLocal


def dispose_engine() -> None:
    """Dispose the pooled engine on shutdown."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _SessionLocal = None


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on any error.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

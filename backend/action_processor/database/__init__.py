"""Database engine and session factory."""

from action_processor.database.session import (
    get_engine,
    get_session_factory,
    normalize_database_url,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "normalize_database_url",
    "session_scope",
]

"""
Repository for persisted platform rate limits.

Writes are last-write-wins upserts on (user_id, platform, method, endpoint).
A concurrent insert of the same key by another consumer surfaces as an
IntegrityError, in which case the existing row is updated instead.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from action_processor.database.session import session_scope
from action_processor.models import RateLimit

logger = logging.getLogger(__name__)


class RateLimitRepository:
    """Reads and upserts RateLimit rows."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_reset_at(
        self, user_id: str, platform: str, method: str, endpoint: str
    ) -> Optional[int]:
        """Recorded reset time in epoch seconds, or None when no record exists."""
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(RateLimit.limit_reset_at)
                .where(RateLimit.user_id == str(user_id))
                .where(RateLimit.platform == platform)
                .where(RateLimit.method == method)
                .where(RateLimit.endpoint == endpoint)
            ).scalar_one_or_none()

    def upsert(
        self,
        user_id: str,
        platform: str,
        method: str,
        endpoint: str,
        limit_reset_at: int,
    ) -> None:
        key = dict(
            user_id=str(user_id), platform=platform, method=method, endpoint=endpoint
        )
        if self._update(key, limit_reset_at):
            return
        try:
            with session_scope(self._session_factory) as session:
                session.add(RateLimit(limit_reset_at=int(limit_reset_at), **key))
        except IntegrityError:
            logger.debug("Rate limit inserted concurrently, updating", extra=key)
            self._update(key, limit_reset_at)

    def _update(self, key: dict, limit_reset_at: int) -> bool:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(RateLimit)
                .where(RateLimit.user_id == key["user_id"])
                .where(RateLimit.platform == key["platform"])
                .where(RateLimit.method == key["method"])
                .where(RateLimit.endpoint == key["endpoint"])
                .values(limit_reset_at=int(limit_reset_at))
            )
            return result.rowcount > 0

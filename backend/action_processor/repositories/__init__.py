"""Repositories for action processor persistence."""

from action_processor.repositories.action_store import (
    ActionStore,
    ActionStoreError,
    AlreadyParticipatingError,
    tweet_content_hash,
)
from action_processor.repositories.rate_limit_repo import RateLimitRepository

__all__ = [
    "ActionStore",
    "ActionStoreError",
    "AlreadyParticipatingError",
    "RateLimitRepository",
    "tweet_content_hash",
]

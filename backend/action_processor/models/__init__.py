"""
Database models for the action processor.

Rate limits are written by the rate-limit oracle; everything else is
written or read by individual action handlers.
"""

from action_processor.models.rate_limit import RateLimit
from action_processor.models.engagement import (
    FacebookParticipant,
    HiddenTweet,
    InteractionTracking,
    MetaAccount,
    SpeedThreadParticipant,
    TimedThreadActivity,
    TweetCache,
)

__all__ = [
    "RateLimit",
    "TweetCache",
    "HiddenTweet",
    "SpeedThreadParticipant",
    "TimedThreadActivity",
    "InteractionTracking",
    "FacebookParticipant",
    "MetaAccount",
]

"""
Engagement models written by datastore and Twitter actions.

Timestamps are epoch milliseconds, matching the values carried on actions.
"""

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from action_processor.db_base import Base


class TweetCache(Base):
    """Tweets sent on behalf of a widget, used for duplicate suppression."""

    __tablename__ = "tweet_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    widget_id = Column(String(255), nullable=True, index=True)
    tweet_id = Column(String(64), nullable=False, index=True)
    sender_id = Column(String(64), nullable=True)
    sender_handle = Column(String(255), nullable=True)
    mentioned_user_id = Column(String(64), nullable=True)
    mentioned_handle = Column(String(255), nullable=True)
    created_at = Column(BigInteger, nullable=False)
    tweet = Column(Text, nullable=True, comment="JSON response from Twitter")
    response_hash = Column(String(64), nullable=True)
    tweet_content_hash = Column(String(64), nullable=True)
    deleted_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_tweet_cache_widget_mentioned", "widget_id", "mentioned_handle"),
    )


class HiddenTweet(Base):
    """Replies hidden through HIDE_TWITTER_REPLY."""

    __tablename__ = "hidden_tweets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    widget_id = Column(String(255), nullable=True, index=True)
    tweet_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=True)
    user_handle = Column(String(255), nullable=True)
    created_at = Column(BigInteger, nullable=True)
    hidden_at = Column(BigInteger, nullable=False)
    reply_text = Column(Text, nullable=True)
    auto_hidden = Column(Integer, nullable=False, default=1)


class SpeedThreadParticipant(Base):
    """A participant racing through a speed thread experience."""

    __tablename__ = "speed_thread_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    widget_id = Column(String(255), nullable=False)
    user_id = Column(String(64), nullable=False)
    handle = Column(String(255), nullable=False)
    first_interaction_time = Column(BigInteger, nullable=True)
    last_interaction_time = Column(BigInteger, nullable=True)
    optin_id = Column(String(64), nullable=True)
    timeout_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint("widget_id", "user_id", name="uq_speed_thread_participant"),
    )

    @property
    def interaction_duration(self):
        """Elapsed ms between first and final interaction, None until stopped."""
        if self.first_interaction_time is None or self.last_interaction_time is None:
            return None
        return self.last_interaction_time - self.first_interaction_time


class TimedThreadActivity(Base):
    """One reply by a user within a timed thread experience."""

    __tablename__ = "timed_thread_activity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    widget_id = Column(String(255), nullable=False)
    twitter_user_id = Column(String(64), nullable=False)
    twitter_user_handle = Column(String(255), nullable=False)
    tweet_id = Column(String(64), nullable=False)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("widget_id", "tweet_id", name="uq_timed_thread_activity"),
    )


class InteractionTracking(Base):
    """Tracked social media interaction for reporting."""

    __tablename__ = "interaction_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column("eventId", String(255), nullable=True)
    widget_id = Column(String(255), nullable=False, index=True)
    tracking_id = Column(String(255), nullable=False)
    tracking_descr = Column(String(1024), nullable=False)
    data = Column(Text, nullable=False)


class FacebookParticipant(Base):
    """A Facebook user opted in to one-time notifications for a widget."""

    __tablename__ = "facebook_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    widget_id = Column(String(255), nullable=False)
    user_psid = Column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_facebook_participants_widget_psid", "widget_id", "user_psid"),
    )


class MetaAccount(Base):
    """
    Read-only view of the platform's users table.

    Only the columns needed to resolve encrypted Meta page access tokens
    are mapped.
    """

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    instagram_business_id = Column(String(64), nullable=True, index=True)
    page_access_token = Column(Text, nullable=True)

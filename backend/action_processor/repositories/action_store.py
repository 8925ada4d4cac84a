"""
Repository for everything action handlers read from or write to the database.

Each operation opens its own short-lived session from the injected factory,
so the store is safe to share across the worker's lifetime.

Dataset actions target caller-named tables. Table and column names are
bound through SQLAlchemy's table()/column() constructs so identifiers are
always quoted by the dialect, never interpolated into SQL text.
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import column, select, table, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from action_processor.database.session import session_scope
from action_processor.exceptions import InputValidationError
from action_processor.models import (
    FacebookParticipant,
    HiddenTweet,
    InteractionTracking,
    MetaAccount,
    SpeedThreadParticipant,
    TimedThreadActivity,
    TweetCache,
)

logger = logging.getLogger(__name__)


class ActionStoreError(Exception):
    """Base exception for action store errors."""
    pass


class AlreadyParticipatingError(ActionStoreError):
    """Speed thread participant already exists."""
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require(value: Any, label: str) -> None:
    if value is None or value == "":
        raise InputValidationError(f"{label} is required.")


def tweet_content_hash(
    widget_id: Optional[str], text: Optional[str], media: Any, user_id: Optional[str]
) -> str:
    """Stable hash of what a widget sent, used for duplicate suppression."""
    content = {"widgetId": widget_id, "text": text, "media": media, "userId": user_id}
    serialized = json.dumps(content, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class ActionStore:
    """Database access for Twitter, Meta and datastore actions."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Tweets
    # ------------------------------------------------------------------

    def get_tweet_content_hashes(
        self, widget_id: Optional[str], mentioned_handle: Optional[str]
    ) -> List[str]:
        """Content hashes of tweets already sent by a widget to a handle, newest first."""
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(TweetCache.tweet_content_hash)
                .where(TweetCache.widget_id == widget_id)
                .where(TweetCache.mentioned_handle == mentioned_handle)
                .where(TweetCache.deleted_at.is_(None))
                .order_by(TweetCache.created_at.desc())
            ).all()
        return [row[0] for row in rows if row[0]]

    def store_tweet(
        self,
        widget_id: Optional[str],
        tweet_id: str,
        sender_id: Optional[str],
        tweet: Dict[str, Any],
        content_hash: Optional[str] = None,
        sender_handle: Optional[str] = None,
        mentioned_user_id: Optional[str] = None,
        mentioned_handle: Optional[str] = None,
        created_at: Optional[int] = None,
        response_hash: Optional[str] = None,
    ) -> None:
        serialized = json.dumps(tweet, sort_keys=True)
        with session_scope(self._session_factory) as session:
            session.add(
                TweetCache(
                    widget_id=widget_id,
                    tweet_id=str(tweet_id),
                    sender_id=sender_id,
                    sender_handle=sender_handle,
                    mentioned_user_id=mentioned_user_id,
                    mentioned_handle=mentioned_handle,
                    created_at=created_at or _now_ms(),
                    tweet=serialized,
                    response_hash=response_hash,
                    tweet_content_hash=content_hash,
                )
            )

    def soft_delete_tweet(self, tweet_id: str) -> int:
        """Mark a cached tweet deleted. Returns the number of rows touched."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(TweetCache)
                .where(TweetCache.tweet_id == str(tweet_id))
                .values(deleted_at=_now_ms())
            )
            return result.rowcount

    def store_hidden_tweet(
        self,
        widget_id: Optional[str],
        tweet_id: str,
        user_id: Optional[str] = None,
        user_handle: Optional[str] = None,
        created_at: Optional[int] = None,
        reply_text: Optional[str] = None,
        auto_hidden: int = 1,
    ) -> None:
        with session_scope(self._session_factory) as session:
            session.add(
                HiddenTweet(
                    widget_id=widget_id,
                    tweet_id=str(tweet_id),
                    user_id=user_id,
                    user_handle=user_handle,
                    created_at=created_at,
                    hidden_at=_now_ms(),
                    reply_text=reply_text,
                    auto_hidden=auto_hidden,
                )
            )

    # ------------------------------------------------------------------
    # Speed thread / timed thread
    # ------------------------------------------------------------------

    def get_speed_thread_participant(
        self, widget_id: str, user_id: str
    ) -> Optional[Dict[str, Any]]:
        _require(widget_id, "Widget ID")
        _require(user_id, "User ID")
        with session_scope(self._session_factory) as session:
            participant = session.execute(
                select(SpeedThreadParticipant)
                .where(SpeedThreadParticipant.widget_id == widget_id)
                .where(SpeedThreadParticipant.user_id == user_id)
            ).scalar_one_or_none()
            if participant is None:
                return None
            return {
                "user_id": participant.user_id,
                "first_interaction_time": participant.first_interaction_time,
                "last_interaction_time": participant.last_interaction_time,
                "interaction_duration": participant.interaction_duration,
            }

    def start_speed_thread(
        self,
        widget_id: str,
        user_id: str,
        user_handle: str,
        first_interaction_time: int,
        optin_id: str,
        timeout: Optional[int] = None,
    ) -> None:
        """
        Register a participant's first interaction.

        Raises:
            InputValidationError: If a required field is missing
            AlreadyParticipatingError: If the participant already exists
        """
        _require(widget_id, "Widget ID")
        _require(user_id, "User ID")
        _require(user_handle, "User handle")
        _require(first_interaction_time, "First interaction time")
        _require(optin_id, "Optin ID")

        timeout_at = int(first_interaction_time) + int(timeout) if timeout else None
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    SpeedThreadParticipant(
                        widget_id=widget_id,
                        user_id=user_id,
                        handle=user_handle,
                        first_interaction_time=int(first_interaction_time),
                        optin_id=str(optin_id),
                        timeout_at=timeout_at,
                    )
                )
        except IntegrityError as e:
            raise AlreadyParticipatingError(
                f"User {user_id} is already participating in widget {widget_id}"
            ) from e

    def stop_speed_thread(
        self, widget_id: str, user_id: str, final_interaction_time: int
    ) -> Optional[int]:
        """Record the final interaction and return the elapsed ms."""
        _require(widget_id, "Widget ID")
        _require(user_id, "User ID")
        _require(final_interaction_time, "Final interaction time")

        with session_scope(self._session_factory) as session:
            participant = session.execute(
                select(SpeedThreadParticipant)
                .where(SpeedThreadParticipant.widget_id == widget_id)
                .where(SpeedThreadParticipant.user_id == user_id)
                .where(SpeedThreadParticipant.first_interaction_time.is_not(None))
            ).scalar_one_or_none()
            if participant is None:
                return None
            participant.last_interaction_time = int(final_interaction_time)
            return participant.interaction_duration

    def add_timed_thread_activity(
        self,
        widget_id: str,
        user_id: str,
        user_handle: str,
        tweet_id: str,
        timestamp: int,
    ) -> bool:
        """
        Record a timed thread reply.

        Returns:
            False when the activity was already recorded, True otherwise
        """
        _require(widget_id, "Widget ID")
        _require(user_id, "User ID")
        _require(user_handle, "User handle")
        _require(tweet_id, "Tweet ID")
        _require(timestamp, "Timestamp")

        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    TimedThreadActivity(
                        widget_id=widget_id,
                        twitter_user_id=user_id,
                        twitter_user_handle=user_handle,
                        tweet_id=str(tweet_id),
                        created_at=int(timestamp),
                    )
                )
        except IntegrityError:
            logger.info(
                "Timed thread activity already recorded",
                extra={"widget_id": widget_id, "tweet_id": tweet_id},
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Interaction tracking / Meta
    # ------------------------------------------------------------------

    def track_interaction(
        self,
        widget_id: str,
        tracking_id: str,
        tracking_description: str,
        interaction: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> None:
        _require(widget_id, "Widget ID")
        _require(tracking_id, "Tracking ID")
        _require(tracking_description, "Tracking Description")
        if not interaction:
            raise InputValidationError("Interaction data is required")

        with session_scope(self._session_factory) as session:
            session.add(
                InteractionTracking(
                    event_id=event_id,
                    widget_id=widget_id,
                    tracking_id=tracking_id,
                    tracking_descr=tracking_description,
                    data=json.dumps(interaction),
                )
            )

    def is_facebook_participant(self, widget_id: str, user_psid: str) -> bool:
        with session_scope(self._session_factory) as session:
            found = session.execute(
                select(FacebookParticipant.id)
                .where(FacebookParticipant.widget_id == widget_id)
                .where(FacebookParticipant.user_psid == str(user_psid))
                .limit(1)
            ).first()
        return found is not None

    def get_page_access_token(self, owner_id: str) -> Optional[str]:
        """
        Encrypted page access token for a Facebook page or Instagram business id.

        The id is matched against the user id first, then the Instagram
        business id.
        """
        if not owner_id:
            raise InputValidationError("No owner ID specified")

        with session_scope(self._session_factory) as session:
            for criterion in (
                MetaAccount.id == str(owner_id),
                MetaAccount.instagram_business_id == str(owner_id),
            ):
                token = session.execute(
                    select(MetaAccount.page_access_token).where(criterion).limit(1)
                ).scalar_one_or_none()
                if token:
                    return token
        return None

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    def dataset_insert(
        self, dataset: str, data: Any, insert_if_not_exist: bool = False
    ) -> bool:
        """
        Insert a row into a dataset table's `data` column.

        Returns:
            False when insert_if_not_exist is set and the row already exists
        """
        _require(dataset, "Dataset")
        target = table(dataset, column("data"))
        value = data if isinstance(data, str) else json.dumps(data)

        with session_scope(self._session_factory) as session:
            if insert_if_not_exist:
                exists = session.execute(
                    select(target.c.data).where(target.c.data == value).limit(1)
                ).first()
                if exists is not None:
                    return False
            session.execute(target.insert().values(data=value))
        return True

    def dataset_update(
        self,
        dataset: str,
        column_name: str,
        value: Any,
        search_column: str,
        search_key: Any,
    ) -> int:
        """Set one column on rows matching search_column = search_key."""
        _require(dataset, "Dataset")
        _require(column_name, "Column")
        _require(search_column, "Search column")

        target = table(dataset, column(column_name), column(search_column))
        with session_scope(self._session_factory) as session:
            result = session.execute(
                target.update()
                .where(target.c[search_column] == search_key)
                .values({column_name: value})
            )
            return result.rowcount

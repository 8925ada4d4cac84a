"""
Twitter action handlers.

Every handler asks the rate-limit oracle first and returns a DELAY result
without touching the network when the brand account is throttled.
Errors raised by the Twitter and media clients go through the matching
translator, which either produces a RETRY / DELAY result or re-raises.

Rate limits are always recorded under the key the handler checks
(e.g. statuses/update), not the endpoint actually called, so the next
pre-flight check sees them.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod
from action_processor.actions.models import Action, ActionType, Platform
from action_processor.actions.results import UniformResult
from action_processor.exceptions import InputValidationError, MediaServiceError, TwitterApiError
from action_processor.integrations.twitter.client import TwitterCredentials
from action_processor.messaging.broker import Publisher
from action_processor.repositories.action_store import tweet_content_hash
from action_processor.translators import translate_media_error, translate_twitter_error

logger = logging.getLogger(__name__)

TWITTER = Platform.TWITTER.value

TWEET_LIMIT_ENDPOINT = "statuses/update"
DM_LIMIT_ENDPOINT = "direct_messages/events/new"
TYPING_LIMIT_ENDPOINT = "direct_messages/indicate_typing"
FEEDBACK_LIMIT_ENDPOINT = "feedback/create"
DELETE_LIMIT_ENDPOINT = "statuses/destroy"

FORBIDDEN = 403


def _last_segment(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return str(value).rstrip("/").split("/")[-1]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _dm_media_id(media: Any) -> Optional[str]:
    # A DM carries at most one attachment: an id, {"id": ...} or a one-item list
    if isinstance(media, Mapping):
        return media.get("id")
    if isinstance(media, list):
        return media[0] if media else None
    return media or None


class TwitterHandler(ActionHandler):
    """Tweets, replies, DMs and tweet moderation."""

    action_types = (
        ActionType.SEND_TWEET,
        ActionType.SEND_REPLY,
        ActionType.SEND_DARK_TWEET,
        ActionType.SEND_DARK_REPLY,
        ActionType.SEND_DM,
        ActionType.INDICATE_TYPING,
        ActionType.SEND_FEEDBACK_REQUEST,
        ActionType.DELETE_TWEET,
        ActionType.HIDE_TWITTER_REPLY,
    )

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {
            ActionType.SEND_TWEET: self.send_tweet,
            ActionType.SEND_REPLY: self.send_reply,
            ActionType.SEND_DARK_TWEET: self.send_dark_tweet,
            ActionType.SEND_DARK_REPLY: self.send_dark_reply,
            ActionType.SEND_DM: self.send_dm,
            ActionType.INDICATE_TYPING: self.indicate_typing,
            ActionType.SEND_FEEDBACK_REQUEST: self.request_feedback,
            ActionType.DELETE_TWEET: self.delete_tweet,
            ActionType.HIDE_TWITTER_REPLY: self.hide_reply,
        }

    def _credentials(self, action: Action) -> TwitterCredentials:
        return TwitterCredentials.from_action_tokens(
            self.settings.twitter_consumer_key,
            self.settings.twitter_consumer_secret,
            action.get("twitterAccessTokens"),
        )

    def _translate(self, error: Exception, action: Action, endpoint: str) -> UniformResult:
        return translate_twitter_error(
            error, action, "POST", endpoint, self.oracle, self.settings
        )

    # ------------------------------------------------------------------
    # Tweets
    # ------------------------------------------------------------------

    async def send_tweet(self, action: Action, publisher: Publisher) -> UniformResult:
        return await self._send_tweet(action)

    async def send_reply(self, action: Action, publisher: Publisher) -> UniformResult:
        return await self._send_tweet(action, is_reply=True)

    async def send_dark_tweet(self, action: Action, publisher: Publisher) -> UniformResult:
        return await self._send_tweet(action, nullcast=True)

    async def send_dark_reply(self, action: Action, publisher: Publisher) -> UniformResult:
        return await self._send_tweet(action, nullcast=True, is_reply=True)

    async def _resolve_media(self, action: Action, destination: str) -> List[str]:
        gcs_media_ids = action.get("media") or []
        if not gcs_media_ids:
            return []
        resolved = await self.deps.media.get_twitter_media_ids(
            gcs_media_ids, action.subject, destination
        )
        return [media_id for media_id in resolved if media_id]

    def _build_tweet(
        self,
        action: Action,
        media_ids: List[str],
        nullcast: bool,
        reply_to: Optional[str],
    ) -> Dict[str, Any]:
        tweet = {
            "text": action.get("text"),
            "media": {"media_ids": media_ids} if media_ids else None,
            "nullcast": True if nullcast else None,
            "quote_tweet_id": _last_segment(action.get("attachmentUrl")),
            "card_uri": _last_segment(action.get("cardUri")),
            # Replies come from the brand account; never mention the brand itself
            "reply": {
                "in_reply_to_tweet_id": reply_to,
                "exclude_reply_user_ids": [action.subject],
            }
            if reply_to
            else None,
        }
        return {key: value for key, value in tweet.items() if value}

    async def _send_tweet(
        self, action: Action, nullcast: bool = False, is_reply: bool = False
    ) -> UniformResult:
        throttled = self.oracle.check(action, TWITTER, "POST", TWEET_LIMIT_ENDPOINT)
        if throttled:
            return throttled

        credentials = self._credentials(action)

        try:
            media_ids = await self._resolve_media(action, "tweet")
        except (MediaServiceError, httpx.RequestError) as e:
            return translate_media_error(
                e, action, "POST", TWEET_LIMIT_ENDPOINT, self.oracle, self.settings
            )
        media_ids.extend(action.get("tweetMediaIds") or [])

        reply_to = None
        if is_reply:
            reply_to = action.get("replyToStatusId") or action.get("statusId")
        tweet = self._build_tweet(action, media_ids, nullcast, reply_to)

        widget_id = action.widget_id
        recipient_handle = action.get("recipientHandle")
        content_hash = tweet_content_hash(
            widget_id, action.get("text"), action.get("media"), action.subject
        )
        if content_hash in self.deps.store.get_tweet_content_hashes(widget_id, recipient_handle):
            logger.warning(
                f"Skipping duplicate tweet, widgetID: {widget_id} for handle: {recipient_handle}",
                extra={"widget_id": widget_id, "action_type": action.type},
            )
            return UniformResult.completed(status=200)

        try:
            response = await self.deps.twitter.post("tweets", credentials, body=tweet)
        except (TwitterApiError, httpx.RequestError) as e:
            return self._translate(e, action, TWEET_LIMIT_ENDPOINT)

        data = response.get("data") if isinstance(response, dict) else None
        data = data or {}
        tweet_id = data.get("id")

        if tweet_id is None:
            logger.warning(
                "Twitter response carried no tweet id, not storing Tweet",
                extra={"widget_id": widget_id},
            )
        else:
            self._store_tweet(action, data, content_hash)

        body = {"tweetId": tweet_id}
        if is_reply:
            body["replyId"] = data.get("in_reply_to_tweet_id", reply_to)
        return UniformResult.completed(status=200, body=body)

    def _store_tweet(self, action: Action, tweet: Dict[str, Any], content_hash: str) -> None:
        # The tweet is already sent; a storage failure must not fail the action
        try:
            self.deps.store.store_tweet(
                widget_id=action.widget_id,
                tweet_id=tweet["id"],
                sender_id=action.subject,
                tweet=tweet,
                content_hash=content_hash,
                sender_handle=action.get("ownerHandle"),
                mentioned_user_id=action.get("recipientId"),
                mentioned_handle=action.get("recipientHandle"),
                response_hash=action.get("hashedResponse"),
            )
        except SQLAlchemyError as e:
            logger.warning(
                f"Error storing Tweet: {e}",
                extra={"widget_id": action.widget_id, "tweet_id": tweet["id"]},
            )

    # ------------------------------------------------------------------
    # Direct messages
    # ------------------------------------------------------------------

    async def send_dm(self, action: Action, publisher: Publisher) -> UniformResult:
        throttled = self.oracle.check(action, TWITTER, "POST", DM_LIMIT_ENDPOINT)
        if throttled:
            return throttled

        credentials = self._credentials(action)
        recipient_id = action.get("recipientId")
        if not recipient_id:
            raise InputValidationError("Action is missing required field: 'recipientId'")

        dm: Dict[str, Any] = {"text": action.get("text")}
        gcs_media_id = _dm_media_id(action.get("media"))
        if gcs_media_id:
            try:
                media_id = await self.deps.media.get_twitter_media_id(
                    gcs_media_id, action.subject, "dm"
                )
            except (MediaServiceError, httpx.RequestError) as e:
                return translate_media_error(
                    e, action, "POST", DM_LIMIT_ENDPOINT, self.oracle, self.settings
                )
            dm["attachments"] = [{"media_id": media_id}]

        try:
            response = await self.deps.twitter.post(
                f"dm_conversations/with/{recipient_id}/messages", credentials, body=dm
            )
        except (TwitterApiError, httpx.RequestError) as e:
            return self._translate(e, action, DM_LIMIT_ENDPOINT)

        return UniformResult.completed(status=200, body=response)

    async def indicate_typing(self, action: Action, publisher: Publisher) -> UniformResult:
        throttled = self.oracle.check(action, TWITTER, "POST", TYPING_LIMIT_ENDPOINT)
        if throttled:
            return throttled

        credentials = self._credentials(action)
        try:
            response = await self.deps.twitter.post(
                "direct_messages/indicate_typing.json",
                credentials,
                base_url=self.settings.twitter_legacy_api_url,
                params={"recipient_id": action.get("recipientId")},
            )
        except (TwitterApiError, httpx.RequestError) as e:
            return self._translate(e, action, TYPING_LIMIT_ENDPOINT)

        return UniformResult.completed(status=200, body=response)

    async def request_feedback(self, action: Action, publisher: Publisher) -> UniformResult:
        """
        Ask a user for CSAT / NPS feedback.

        Twitter answers 403 once an account has hit its feedback quota;
        the user then gets a plain DM instead.
        """
        throttled = self.oracle.check(action, TWITTER, "POST", FEEDBACK_LIMIT_ENDPOINT)
        if throttled:
            return throttled

        credentials = self._credentials(action)
        request = {
            "feedback_type": action.get("feedbackType"),
            "display_name": action.get("displayName"),
            "external_id": action.get("externalId"),
            "message": action.get("message"),
            "privacy_url": action.get("privacyUrl"),
            "failure_message": action.get("failureMessage"),
            "question_variant_id": action.get("questionVariantId"),
            "test": action.get("test"),
            "to_user_id": action.get("toUserId"),
        }
        request = {key: value for key, value in request.items() if value is not None}

        try:
            response = await self.deps.twitter.post(
                "feedback/create.json",
                credentials,
                body=request,
                base_url=self.settings.twitter_legacy_api_url,
            )
        except TwitterApiError as e:
            if e.status_code == FORBIDDEN:
                return UniformResult.fallback(self._feedback_fallback(action))
            return self._translate(e, action, FEEDBACK_LIMIT_ENDPOINT)
        except httpx.RequestError as e:
            return self._translate(e, action, FEEDBACK_LIMIT_ENDPOINT)

        return UniformResult.completed(status=200, body=response)

    def _feedback_fallback(self, action: Action) -> Action:
        return Action.from_payload(
            {
                "type": ActionType.SEND_DM.value,
                "userId": action.subject,
                "widgetId": action.widget_id,
                "twitterAccessTokens": action.get("twitterAccessTokens"),
                "recipientId": action.get("toUserId"),
                "text": action.get("fallbackText") or action.get("failureMessage"),
            }
        )

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def delete_tweet(self, action: Action, publisher: Publisher) -> UniformResult:
        throttled = self.oracle.check(action, TWITTER, "POST", DELETE_LIMIT_ENDPOINT)
        if throttled:
            return throttled

        credentials = self._credentials(action)
        tweet_id = action.get("tweetId")
        if not tweet_id:
            raise InputValidationError("Action is missing required field: 'tweetId'")

        try:
            await self.deps.twitter.delete(f"tweets/{tweet_id}", credentials)
        except (TwitterApiError, httpx.RequestError) as e:
            return self._translate(e, action, DELETE_LIMIT_ENDPOINT)

        self.deps.store.soft_delete_tweet(tweet_id)
        return UniformResult.completed(status=200, body={"tweetId": tweet_id})

    async def hide_reply(self, action: Action, publisher: Publisher) -> UniformResult:
        credentials = self._credentials(action)
        tweet_id = action.get("tweetId")
        if not tweet_id:
            raise InputValidationError("Action is missing required field: 'tweetId'")

        response = await self.deps.twitter.put(
            f"tweets/{tweet_id}/hidden", credentials, body={"hidden": True}
        )
        self.deps.store.store_hidden_tweet(
            widget_id=action.widget_id,
            tweet_id=tweet_id,
            user_id=action.get("replyFromUserId"),
            user_handle=action.get("handle"),
            created_at=_as_int(action.get("replyCreatedAt")),
            reply_text=action.get("eventText"),
        )
        return UniformResult.completed(status=200, body=response)

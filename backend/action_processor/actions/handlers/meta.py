"""
Meta platform handlers: Facebook Messenger, Facebook comments, Instagram
messaging and WhatsApp (360dialog).

All calls go through the outbound call executor. Its result, or the
OutboundCallError it raises once the retry budget is spent, is handed to
the platform translator, which records rate limits and recognizes the
errors that count as handled.

SECURITY:
- Page access tokens and WhatsApp API keys are stored encrypted and
  decrypted only for the request that needs them
- Tokens travel as query parameters; the executor never logs URLs with
  their query string
"""

import logging
from typing import Any, Dict, Mapping, Optional

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod, service_url
from action_processor.actions.models import Action, ActionType, Platform
from action_processor.actions.results import ResultKind, UniformResult
from action_processor.exceptions import InputValidationError, OutboundCallError
from action_processor.integrations.http.client import OutboundRequest
from action_processor.messaging.broker import Publisher
from action_processor.translators import (
    translate_facebook_error,
    translate_instagram_result,
    translate_whatsapp_result,
)
from action_processor.translators.meta import (
    FACEBOOK_COMMENTS_ENDPOINT,
    FACEBOOK_DELAY_CODES,
    FACEBOOK_MESSAGES_ENDPOINT,
    INSTAGRAM_MESSAGING_ENDPOINT,
    WHATSAPP_DELAY_STATUSES,
    WHATSAPP_MESSAGES_ENDPOINT,
    is_facebook_rate_limited,
)

logger = logging.getLogger(__name__)

CONSENT_TEMPLATE = "notification_messages"
QUICK_REPLY_MESSAGING_TYPE = "RESPONSE"
QUICK_REPLY_API_VERSION = "v8.0"


def _path(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def is_consent_message(message: Any) -> bool:
    """True for a one-time / recurring notification opt-in template."""
    template_type = _path(message, "message", "attachment", "payload", "template_type")
    return template_type == CONSENT_TEMPLATE


class MetaHandler(ActionHandler):
    """Facebook, Instagram and WhatsApp messaging."""

    action_types = (
        ActionType.SEND_FACEBOOK_MESSAGE,
        ActionType.SEND_FACEBOOK_COMMENT,
        ActionType.SEND_INSTAGRAM_MESSAGE,
        ActionType.SEND_INSTAGRAM_COMMENT_REPLY,
        ActionType.SEND_WHATSAPP_MESSAGE,
    )

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {
            ActionType.SEND_FACEBOOK_MESSAGE: self.send_facebook_message,
            ActionType.SEND_FACEBOOK_COMMENT: self.send_facebook_comment,
            ActionType.SEND_INSTAGRAM_MESSAGE: self.send_instagram_message,
            ActionType.SEND_INSTAGRAM_COMMENT_REPLY: self.send_instagram_comment_reply,
            ActionType.SEND_WHATSAPP_MESSAGE: self.send_whatsapp_message,
        }

    async def _page_access_token(self, owner_id: Optional[str]) -> str:
        encrypted = self.deps.store.get_page_access_token(owner_id)
        return await self.decrypt(encrypted, "page access token")

    def _graph_url(self, version: str, path: str) -> str:
        base = self.settings.facebook_base_api_url.rstrip("/")
        return f"{base}/{version}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Facebook
    # ------------------------------------------------------------------

    async def send_facebook_message(self, action: Action, publisher: Publisher) -> UniformResult:
        message = action.get("message")

        if is_consent_message(message):
            participant_id = action.get("participantId")
            if self.deps.store.is_facebook_participant(action.widget_id, participant_id):
                logger.debug(
                    "User already opted in",
                    extra={"widget_id": action.widget_id, "participant_id": participant_id},
                )
                return UniformResult.completed(status=409, body="User already opted in")

        throttled = self.oracle.check(
            action, Platform.FACEBOOK.value, "POST", FACEBOOK_MESSAGES_ENDPOINT
        )
        if throttled:
            return throttled

        token = await self._page_access_token(action.subject)
        request = OutboundRequest.build(
            method="POST",
            url=f"{self.settings.facebook_api_url.rstrip('/')}/me/messages",
            body=message,
            query={"access_token": token},
            retry_statuses=FACEBOOK_DELAY_CODES,
            retry_remaining=self.budget(action, self.settings.facebook_action_retry_limit),
        )
        result = await self._send_facebook(request, action)
        await self._cache_facebook_message(action, message, request, result)
        return result

    async def _cache_facebook_message(
        self,
        action: Action,
        message: Any,
        request: OutboundRequest,
        result: UniformResult,
    ) -> None:
        """
        Report a sent Messenger message to the Facebook subscriptions service.

        Notification messages are cached against their blast, with the
        participant flagged for deletion once a one-time token is used or
        the participant stopped notifications. Other messages are cached as
        the request that was sent, without its page access token. Caching
        failures are logged and never change the send result.
        """
        if result.kind in (ResultKind.DELAY, ResultKind.RETRY):
            return
        context = self.log_context(action)
        if not action.widget_id or not self.settings.facebook_subscription_url:
            logger.warning(
                "Facebook message not cached: missing widgetId or subscription URL",
                extra=context,
            )
            return

        response = {
            "facebookResponseCode": result.status or 0,
            "facebookResponseBody": result.body or {},
        }
        recipient = _path(message, "recipient")
        recipient = recipient if isinstance(recipient, Mapping) else {}
        one_time = "one_time_notif_token" in recipient
        if one_time or "notification_messages_token" in recipient:
            url = self._fb_cache_url("blast", action.widget_id)
            body = {
                "blastId": action.get("blastId"),
                "message": message,
                "participantId": action.get("participantId"),
                "deleteParticipant": one_time or result.delete_participant,
                **response,
            }
        else:
            url = self._fb_cache_url("request", action.widget_id)
            body = {
                "payload": {"method": request.method, "url": request.url, "body": message},
                **response,
            }

        cache_request = OutboundRequest.build(method="POST", url=url, body=body, retry_remaining=0)
        try:
            cached = await self.deps.executor.execute(cache_request, context=context)
        except OutboundCallError as e:
            logger.warning("Failed to cache Facebook message", extra={**context, "error": str(e)})
            return
        if cached.is_error_status:
            logger.warning(
                "Failed to cache Facebook message", extra={**context, "status": cached.status}
            )

    def _fb_cache_url(self, kind: str, widget_id: str) -> str:
        base = self.settings.facebook_subscription_url.rstrip("/")
        return f"{base}/cache/{kind}/{widget_id}"

    async def send_facebook_comment(self, action: Action, publisher: Publisher) -> UniformResult:
        throttled = self.oracle.check(
            action, Platform.FACEBOOK.value, "POST", FACEBOOK_COMMENTS_ENDPOINT
        )
        if throttled:
            return throttled

        object_id = action.get("objectId")
        if not object_id:
            raise InputValidationError("Action is missing required field: 'objectId'")

        token = await self._page_access_token(action.subject)
        request = OutboundRequest.build(
            method="POST",
            url=f"{self.settings.facebook_api_url.rstrip('/')}/{object_id}/comments",
            body=action.get("message"),
            query={"access_token": token},
            retry_statuses=FACEBOOK_DELAY_CODES,
            retry_remaining=self.budget(action, self.settings.facebook_action_retry_limit),
        )
        return await self._send_facebook(request, action)

    async def _send_facebook(self, request: OutboundRequest, action: Action) -> UniformResult:
        try:
            result = await self.deps.executor.execute(request, context=self.log_context(action))
        except OutboundCallError as e:
            return translate_facebook_error(e, action, self.oracle, self.settings)

        if result.is_error_status or is_facebook_rate_limited(result):
            return translate_facebook_error(result, action, self.oracle, self.settings)

        logger.debug("Facebook request succeeded", extra=self.log_context(action))
        return result

    # ------------------------------------------------------------------
    # Instagram
    # ------------------------------------------------------------------

    async def send_instagram_message(self, action: Action, publisher: Publisher) -> UniformResult:
        payload = self.require(action, "userId", "message")
        message = payload["message"]

        throttled = self.oracle.check(
            action, Platform.INSTAGRAM.value, "POST", INSTAGRAM_MESSAGING_ENDPOINT
        )
        if throttled:
            return throttled

        if action.get("accessToken"):
            token = await self.decrypt(action.get("accessToken"), "access token")
        else:
            token = await self._page_access_token(action.subject)

        # Quick replies are only accepted by the older Graph API version
        version = self.settings.facebook_api_version
        if isinstance(message, Mapping) and message.get("messaging_type") == QUICK_REPLY_MESSAGING_TYPE:
            version = QUICK_REPLY_API_VERSION

        request = OutboundRequest.build(
            method="POST",
            url=self._graph_url(version, INSTAGRAM_MESSAGING_ENDPOINT),
            body=message,
            query={"access_token": token},
            timeout=self.settings.meta_api_timeout_ms,
            retry_remaining=self.budget(action, self.settings.instagram_messaging_retry_limit),
        )
        return await self._send_instagram(request, action)

    async def send_instagram_comment_reply(
        self, action: Action, publisher: Publisher
    ) -> UniformResult:
        payload = self.require(action, "userId", "message")

        throttled = self.oracle.check(
            action, Platform.INSTAGRAM.value, "POST", INSTAGRAM_MESSAGING_ENDPOINT
        )
        if throttled:
            return throttled

        comment_id = _path(payload["message"], "recipient", "comment_id")
        text = _path(payload["message"], "message", "text")
        if not comment_id:
            raise InputValidationError("Action is missing required field: 'message.recipient.comment_id'")

        token = await self._page_access_token(action.subject)
        request = OutboundRequest.build(
            method="POST",
            url=f"{self.settings.facebook_api_url.rstrip('/')}/{comment_id}/replies",
            body={"message": text},
            query={"access_token": token},
            retry_remaining=self.budget(action, self.settings.instagram_messaging_retry_limit),
        )
        return await self._send_instagram(request, action)

    async def _send_instagram(self, request: OutboundRequest, action: Action) -> UniformResult:
        try:
            result = await self.deps.executor.execute(request, context=self.log_context(action))
        except OutboundCallError as e:
            return translate_instagram_result(e, action, self.oracle, self.settings)
        return translate_instagram_result(result, action, self.oracle, self.settings)

    # ------------------------------------------------------------------
    # WhatsApp
    # ------------------------------------------------------------------

    async def send_whatsapp_message(self, action: Action, publisher: Publisher) -> UniformResult:
        throttled = self.oracle.check(
            action, Platform.WHATSAPP.value, "POST", WHATSAPP_MESSAGES_ENDPOINT
        )
        if throttled:
            return throttled

        url = service_url(self.settings.d360_api_url, "D360_API_URL")
        api_key = await self.decrypt(action.get("apiKey"), "WhatsApp API key")
        headers: Dict[str, str] = {"D360-Api-Key": api_key}

        request = OutboundRequest.build(
            method="POST",
            url=url,
            headers=headers,
            body=action.get("message"),
            retry_statuses=WHATSAPP_DELAY_STATUSES,
            retry_remaining=self.budget(action, self.settings.whatsapp_action_retry_limit),
        )

        try:
            result = await self.deps.executor.execute(request, context=self.log_context(action))
        except OutboundCallError as e:
            return translate_whatsapp_result(e, action, self.oracle, self.settings)
        return translate_whatsapp_result(result, action, self.oracle, self.settings)

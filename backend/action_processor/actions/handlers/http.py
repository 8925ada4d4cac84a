"""
Handlers for actions that are plain HTTP calls.

Each handler builds an OutboundRequest and lets the outbound call
executor classify the outcome. Internal service base URLs come from
ProcessorSettings; a missing one fails the action as invalid input.
"""

import logging
from typing import Any, Dict, Mapping

import httpx

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod, service_url
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.exceptions import OutboundCallError
from action_processor.integrations.http.client import OutboundRequest
from action_processor.messaging.broker import Publisher

logger = logging.getLogger(__name__)

BLAST_TIMEOUT_MS = 60 * 1000
NO_CONTENT = 204


def _no_content(result: UniformResult) -> UniformResult:
    if result.status == NO_CONTENT:
        return UniformResult.completed(status=NO_CONTENT, body="No Content")
    return result


class HttpHandler(ActionHandler):
    """Webhooks, internal services and analytics trackers."""

    action_types = (
        ActionType.CALL_ENDPOINT,
        ActionType.SEND_BLAST,
        ActionType.OPT_IN,
        ActionType.OPT_OUT,
        ActionType.DASHBOT_TRACK,
        ActionType.CHATBASE_TRACK,
        ActionType.GOOGLE_ANALYTICS_TRACK_EVENT,
        ActionType.FB_OPT_IN_ONE_TIME,
        ActionType.FB_OPT_OUT_ONE_TIME,
        ActionType.FB_OPT_IN_RECURRING,
        ActionType.FB_OPT_OUT_RECURRING,
        ActionType.SEND_FACEBOOK_BLAST,
        ActionType.UNLOCK_COUPONS,
    )

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {
            ActionType.CALL_ENDPOINT: self.call_endpoint,
            ActionType.SEND_BLAST: self.send_blast,
            ActionType.OPT_IN: self.opt_in,
            ActionType.OPT_OUT: self.opt_out,
            ActionType.DASHBOT_TRACK: self.dashbot_track,
            ActionType.CHATBASE_TRACK: self.chatbase_track,
            ActionType.GOOGLE_ANALYTICS_TRACK_EVENT: self.google_analytics_track_event,
            ActionType.FB_OPT_IN_ONE_TIME: self.fb_opt_in_one_time,
            ActionType.FB_OPT_OUT_ONE_TIME: self.fb_opt_out,
            ActionType.FB_OPT_IN_RECURRING: self.fb_opt_in_recurring,
            ActionType.FB_OPT_OUT_RECURRING: self.fb_opt_out,
            ActionType.SEND_FACEBOOK_BLAST: self.send_facebook_blast,
            ActionType.UNLOCK_COUPONS: self.unlock_coupons,
        }

    async def _execute(self, action: Action, request: OutboundRequest) -> UniformResult:
        return await self.deps.executor.execute(request, context=self.log_context(action))

    def _default_budget(self, action: Action) -> int:
        return self.budget(action, self.settings.default_retries)

    # ------------------------------------------------------------------
    # Generic calls
    # ------------------------------------------------------------------

    async def call_endpoint(self, action: Action, publisher: Publisher) -> UniformResult:
        request = OutboundRequest.from_action(
            action, retry_remaining=self._default_budget(action)
        )
        return await self._execute(action, request)

    async def google_analytics_track_event(
        self, action: Action, publisher: Publisher
    ) -> UniformResult:
        # The action itself describes the measurement protocol request
        request = OutboundRequest.from_action(
            action, retry_remaining=self._default_budget(action)
        )
        return await self._execute(action, request)

    async def dashbot_track(self, action: Action, publisher: Publisher) -> UniformResult:
        request = OutboundRequest.build(
            method="POST",
            url=self.settings.dashbot_url,
            body={
                "text": action.get("text"),
                "userId": action.subject,
                "platformJson": action.get("platformJson"),
            },
            query={
                "type": "incoming",
                "v": self.settings.dashbot_api_version,
                "platform": action.get("platform"),
                "apiKey": action.get("apiKey"),
            },
            retry_remaining=self._default_budget(action),
        )
        return await self._execute(action, request)

    async def chatbase_track(self, action: Action, publisher: Publisher) -> UniformResult:
        body = action.without("apiKey", "userId", "timestamp", "retryRemaining")
        body.update(
            {
                "api_key": action.get("apiKey"),
                "user_id": action.subject,
                "time_stamp": action.get("timestamp"),
                "type": "user",
            }
        )
        request = OutboundRequest.build(
            method="POST",
            url=self.settings.chatbase_url,
            body=body,
            retry_remaining=self._default_budget(action),
        )
        return await self._execute(action, request)

    # ------------------------------------------------------------------
    # Blasts and subscriptions
    # ------------------------------------------------------------------

    async def send_blast(self, action: Action, publisher: Publisher) -> UniformResult:
        request = OutboundRequest.build(
            method="POST",
            url=service_url(self.settings.kraken_url, "KRAKEN_URL", "release"),
            body=action.without("type"),
            timeout=BLAST_TIMEOUT_MS,
            retry_remaining=action.retry_remaining,
        )
        return await self._execute(action, request)

    async def send_facebook_blast(self, action: Action, publisher: Publisher) -> UniformResult:
        message = action.get("message") or {}
        request = OutboundRequest.build(
            method="POST",
            url=service_url(
                self.settings.kraken_url, "KRAKEN_URL", "release-facebook", action.widget_id
            ),
            body={
                "message": message.get("message") if isinstance(message, Mapping) else None,
                "frequency": action.get("frequency"),
            },
            retry_remaining=action.retry_remaining,
        )
        return await self._execute(action, request)

    async def opt_in(self, action: Action, publisher: Publisher) -> UniformResult:
        request = OutboundRequest.build(
            method="POST",
            url=service_url(
                self.settings.subscriptions_url, "SUBSCRIPTIONS_URL", "participants", action.widget_id
            ),
            body={
                "widgetId": action.widget_id,
                "userId": action.subject,
                "handle": action.get("handle"),
                "responseType": action.get("responseType"),
                "optinId": action.get("optinId"),
            },
            retry_remaining=action.retry_remaining,
        )
        return await self._execute(action, request)

    async def opt_out(self, action: Action, publisher: Publisher) -> UniformResult:
        request = OutboundRequest.build(
            method="DELETE",
            url=service_url(
                self.settings.subscriptions_url,
                "SUBSCRIPTIONS_URL",
                "participants",
                action.widget_id,
                action.subject,
            ),
            retry_remaining=action.retry_remaining,
        )
        return await self._execute(action, request)

    def _fb_subscriptions_url(self, *parts: Any) -> str:
        return service_url(
            self.settings.facebook_subscription_url,
            "FACEBOOK_SUBSCRIPTION_URL",
            "participants",
            *parts,
        )

    def _fb_opt_in_body(self, action: Action) -> Dict[str, Any]:
        return {
            "userPsid": action.get("userPsid"),
            "username": action.get("username"),
            "token": action.get("token"),
            "responseType": action.get("responseType"),
        }

    async def fb_opt_in_one_time(self, action: Action, publisher: Publisher) -> UniformResult:
        if self.deps.store.is_facebook_participant(action.widget_id, action.get("userPsid")):
            logger.info("User already opted in", extra=self.log_context(action))
            return UniformResult.completed(status=200, body="User already opted in")

        request = OutboundRequest.build(
            method="POST",
            url=self._fb_subscriptions_url(action.widget_id),
            body=self._fb_opt_in_body(action),
            retry_remaining=action.retry_remaining,
        )
        return await self._execute(action, request)

    async def fb_opt_in_recurring(self, action: Action, publisher: Publisher) -> UniformResult:
        body = self._fb_opt_in_body(action)
        body["tokenExpiryTimestamp"] = action.get("tokenExpiryTimestamp")
        request = OutboundRequest.build(
            method="POST",
            url=self._fb_subscriptions_url(action.widget_id),
            body=body,
            retry_remaining=action.retry_remaining,
        )
        return _no_content(await self._execute(action, request))

    async def fb_opt_out(self, action: Action, publisher: Publisher) -> UniformResult:
        request = OutboundRequest.build(
            method="DELETE",
            url=self._fb_subscriptions_url(action.widget_id, "optout", action.get("userPsid")),
            retry_remaining=action.retry_remaining,
        )
        return _no_content(await self._execute(action, request))

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    async def unlock_coupons(self, action: Action, publisher: Publisher) -> UniformResult:
        """Unlock a widget's coupons. Any failure is reported, never raised."""
        request = OutboundRequest.build(
            method="POST",
            url=service_url(
                self.settings.coupon_service_url,
                "COUPON_SERVICE_URL",
                "coupon",
                "unlock",
                action.widget_id,
            ),
            body=action.to_payload(),
        )
        try:
            result = await self._execute(action, request)
        except (OutboundCallError, httpx.HTTPError) as e:
            logger.error(
                f"Failed call to coupon service to update coupons for widget {action.widget_id}",
                extra={"status_code": getattr(e, "status_code", None), "error": str(e)},
            )
            return UniformResult.unsuccessful(f"Failed to unlock coupons: {e}")

        if not result.is_success:
            logger.error(
                f"Failed call to coupon service to update coupons for widget {action.widget_id}",
                extra={"status_code": result.status},
            )
            return UniformResult.unsuccessful("Failed to unlock coupons")
        return UniformResult.completed(status=result.status)

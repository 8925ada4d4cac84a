"""
Meta platform translators: Facebook, Instagram and WhatsApp.

Errors reach these translators either raised (OutboundCallError once the
retry budget is spent) or as an error-shaped COMPLETED / RETRY result.
Both shapes are normalized here.

Facebook Graph error codes:
    4, 17, 32        app / user / page rate limit -> one hour DELAY, recorded
    613 / 1893016    duplicate opt-in              -> HANDLED
    10 / 1893015     user stopped notifications    -> HANDLED, delete participant
    551              user unavailable              -> HANDLED
    -1               Meta internal error           -> HANDLED

https://developers.facebook.com/docs/messenger-platform/error-codes/
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple, Union

from action_processor.actions.models import Action, ActionType, Platform
from action_processor.actions.results import ResultKind, UniformResult
from action_processor.config.settings import ProcessorSettings
from action_processor.exceptions import OutboundCallError
from action_processor.services.rate_limit_oracle import RateLimitOracle

logger = logging.getLogger(__name__)

FACEBOOK_DELAY_CODES = (4, 17, 32)
INSTAGRAM_RATE_LIMIT_CODE = 613
WHATSAPP_DELAY_STATUSES = (429, 503)

FACEBOOK_MESSAGES_ENDPOINT = "messages"
FACEBOOK_COMMENTS_ENDPOINT = "comments"
INSTAGRAM_MESSAGING_ENDPOINT = "/me/messages"
WHATSAPP_MESSAGES_ENDPOINT = "messages"

ErrorOrResult = Union[Exception, UniformResult]


def graph_error(source: ErrorOrResult) -> Dict[str, Any]:
    """The `error` object of a Graph API response body, or {}."""
    if isinstance(source, UniformResult):
        body = source.body
    else:
        body = getattr(source, "response_body", None)
        if body is None:
            body = getattr(source, "body", None)

    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except ValueError:
            return {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def _codes(source: ErrorOrResult) -> Tuple[Optional[int], Optional[int]]:
    error = graph_error(source)
    return error.get("code"), error.get("error_subcode")


def _status(source: ErrorOrResult) -> Any:
    if isinstance(source, UniformResult):
        return source.status
    return getattr(source, "status_code", None)


def _passthrough(source: ErrorOrResult) -> UniformResult:
    if isinstance(source, Exception):
        raise source
    return source


def facebook_endpoint(action: Action) -> str:
    if action.type == ActionType.SEND_FACEBOOK_COMMENT.value:
        return FACEBOOK_COMMENTS_ENDPOINT
    return FACEBOOK_MESSAGES_ENDPOINT


def is_facebook_rate_limited(source: ErrorOrResult) -> bool:
    code, _ = _codes(source)
    return code in FACEBOOK_DELAY_CODES


def translate_facebook_error(
    source: ErrorOrResult,
    action: Action,
    oracle: RateLimitOracle,
    settings: ProcessorSettings,
) -> UniformResult:
    """
    Normalize a Facebook failure.

    Returns the result unchanged, or re-raises the error, when no rule applies.
    """
    code, subcode = _codes(source)
    log_extra = {
        "action_type": action.type,
        "widget_id": action.widget_id,
        "meta_error_code": code,
        "meta_error_subcode": subcode,
    }

    if code in FACEBOOK_DELAY_CODES:
        logger.warning("Facebook rate limit reached", extra=log_extra)
        return oracle.apply_fixed_limit(
            action,
            Platform.FACEBOOK.value,
            "POST",
            facebook_endpoint(action),
            settings.facebook_rate_limit_delay_ms,
        )

    if code == 613 and subcode == 1893016:
        logger.info("Participant already opted in", extra=log_extra)
        return UniformResult.handled(message="Duplicate opt-in")

    if code == 10 and subcode == 1893015:
        logger.info("Participant stopped notifications", extra=log_extra)
        return UniformResult.handled(delete_participant=True, message="Notifications stopped")

    if code == 551:
        logger.warning("Facebook user is not available", extra=log_extra)
        return UniformResult.handled(message="User not available")

    if code == -1:
        logger.warning("Facebook returned an unexpected internal error", extra=log_extra)
        return UniformResult.handled(message="Unexpected internal error")

    if code is not None or isinstance(source, Exception):
        logger.error("Unhandled Facebook error", extra=log_extra)
    return _passthrough(source)


def translate_instagram_result(
    source: ErrorOrResult,
    action: Action,
    oracle: RateLimitOracle,
    settings: ProcessorSettings,
) -> UniformResult:
    """Error code 613 in the body records a messaging rate limit; otherwise passthrough."""
    code, _ = _codes(source)
    if code == INSTAGRAM_RATE_LIMIT_CODE:
        logger.warning(
            "User has been rate-limited for Instagram Messaging. Delaying action.",
            extra={"action_type": action.type},
        )
        return oracle.apply_fixed_limit(
            action,
            Platform.INSTAGRAM.value,
            "POST",
            INSTAGRAM_MESSAGING_ENDPOINT,
            settings.instagram_messaging_delay_ms,
        )
    return _passthrough(source)


def translate_whatsapp_result(
    source: ErrorOrResult,
    action: Action,
    oracle: RateLimitOracle,
    settings: ProcessorSettings,
) -> UniformResult:
    """Status 429 or 503 records a fixed WhatsApp delay; otherwise passthrough."""
    status = _status(source)
    rate_limited = status in WHATSAPP_DELAY_STATUSES and (
        isinstance(source, OutboundCallError)
        or (isinstance(source, UniformResult) and source.kind in (ResultKind.RETRY, ResultKind.COMPLETED))
    )
    if rate_limited:
        logger.warning(
            "WhatsApp rate limit reached",
            extra={"action_type": action.type, "status": status},
        )
        return oracle.apply_fixed_limit(
            action,
            Platform.WHATSAPP.value,
            "POST",
            WHATSAPP_MESSAGES_ENDPOINT,
            settings.whatsapp_delay_ms,
        )
    return _passthrough(source)

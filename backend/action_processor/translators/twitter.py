"""
Twitter error translator.

Rules, first match wins:

1. HTTP 420 (enhance your calm): rate limit, reset from headers or a
   default backoff (1 minute for DM endpoints, 10 minutes otherwise)
2. HTTP 429 or API error 88: rate limit, reset from headers
3. API error 185 (daily status limit): fixed DELAY, nothing recorded
4. transport timeout: RETRY with the action's budget or the default
5. status in the action's retry set: RETRY
6. anything else: re-raised
"""

import logging
from typing import Optional

import httpx

from action_processor.actions.models import Action, Platform
from action_processor.actions.results import UniformResult
from action_processor.config.settings import ProcessorSettings, parse_status_list
from action_processor.exceptions import TwitterApiError
from action_processor.integrations.http.client import transport_code, parse_retry_budget
from action_processor.services.rate_limit_oracle import RateLimitOracle, reset_at_after

logger = logging.getLogger(__name__)

ENHANCE_CALM_STATUS = 420
RATE_LIMIT_STATUS = 429
RATE_LIMIT_CODE = 88
DAILY_LIMIT_CODE = 185

DM_ENDPOINT_PREFIXES = ("direct_messages", "dm_conversations")


def api_error_code(error: TwitterApiError) -> Optional[int]:
    """Vendor code from a v2 problem body (`status`) or a v1.1 `errors` array."""
    body = error.body if isinstance(error.body, dict) else {}
    if body.get("detail") is not None and isinstance(body.get("status"), int):
        return body["status"]
    return error.first_error_code


def _default_backoff_reset(endpoint: str, settings: ProcessorSettings, clock) -> int:
    if endpoint.startswith(DM_ENDPOINT_PREFIXES):
        return reset_at_after(settings.twitter_dm_backoff_ms, clock)
    return reset_at_after(settings.twitter_tweet_backoff_ms, clock)


def _retry_statuses(action: Action, settings: ProcessorSettings):
    # A supplied list is used even when nothing in it parses
    statuses = action.get("retryStatuses")
    if statuses in (None, ""):
        return settings.retry_statuses
    if isinstance(statuses, (list, tuple)):
        return tuple(int(s) for s in statuses if str(s).isdigit() and int(s))
    return parse_status_list(statuses)


def translate_twitter_error(
    error: Exception,
    action: Action,
    method: str,
    endpoint: str,
    oracle: RateLimitOracle,
    settings: ProcessorSettings,
) -> UniformResult:
    """
    Normalize an error raised by a Twitter call.

    Args:
        error: Exception raised by TwitterClient
        action: Action being executed
        method, endpoint: Rate-limit key the handler checks before calling

    Raises:
        The original error when no rule applies
    """
    log_extra = {"action_type": action.type, "method": method, "endpoint": endpoint}

    if isinstance(error, TwitterApiError):
        if error.status_code == ENHANCE_CALM_STATUS:
            logger.warning(
                f"Twitter rate limit 420 error received. {error.message}", extra=log_extra
            )
            return oracle.apply_rate_limit(
                action,
                Platform.TWITTER.value,
                method,
                endpoint,
                error.headers or {},
                default_reset_at=_default_backoff_reset(endpoint, settings, oracle.now),
            )

        code = api_error_code(error)
        if error.status_code == RATE_LIMIT_STATUS or code == RATE_LIMIT_CODE:
            logger.warning("Twitter rate limit error received.", extra=log_extra)
            return oracle.apply_rate_limit(
                action, Platform.TWITTER.value, method, endpoint, error.headers
            )

        if code == DAILY_LIMIT_CODE:
            logger.warning("Twitter daily limit error received.", extra=log_extra)
            return UniformResult.delay(settings.twitter_daily_limit_delay_ms, action)

    budget = parse_retry_budget(action.retry_remaining)
    budget = settings.default_retries if budget is None else budget

    if isinstance(error, httpx.TimeoutException):
        code = transport_code(error)
        logger.warning("Timeout error received.", extra={**log_extra, "code": code})
        return UniformResult.retry(status=code, body=str(error) or code, retry_remaining=budget)

    status = getattr(error, "status_code", None)
    if status is not None and status in _retry_statuses(action, settings):
        return UniformResult.retry(status=status, body=str(error), retry_remaining=budget)

    raise error

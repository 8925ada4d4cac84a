"""
Media service error translator.

Failures while resolving media ids are normalized as:

- 429: rate limit recorded from the response headers
- 403 with error code 185: daily limit, fixed DELAY
- connection failure or 423 (media still uploading): RETRY with a
  budget of 1000 so it never competes with call-endpoint budgets
- anything else: MediaServiceError("Error obtaining media: ...")
"""

import logging

import httpx

from action_processor.actions.models import Action, Platform
from action_processor.actions.results import UniformResult
from action_processor.config.settings import ProcessorSettings
from action_processor.exceptions import MediaServiceError
from action_processor.services.rate_limit_oracle import RateLimitOracle

logger = logging.getLogger(__name__)

MEDIA_RETRY_BUDGET = 1000
UPLOADING_STATUS = 423
DAILY_LIMIT_CODE = 185

CONNECTION_ERROR_MARKERS = (
    "ECONNREFUSED",
    "socket hang up",
    "ECONNRESET",
    "ETIMEDOUT",
    "EHOSTUNREACH",
)


def is_connection_error(error: Exception) -> bool:
    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError)):
        return True
    message = str(error)
    return any(marker in message for marker in CONNECTION_ERROR_MARKERS)


def _daily_limit_reached(body) -> bool:
    if not isinstance(body, dict):
        return False
    errors = body.get("errors")
    return isinstance(errors, list) and any(
        isinstance(e, dict) and e.get("code") == DAILY_LIMIT_CODE for e in errors
    )


def translate_media_error(
    error: Exception,
    action: Action,
    method: str,
    endpoint: str,
    oracle: RateLimitOracle,
    settings: ProcessorSettings,
) -> UniformResult:
    """
    Normalize an error raised while resolving media.

    The rate limit is recorded under the calling handler's Twitter key so
    the handler's own pre-flight check picks it up.

    Raises:
        MediaServiceError: When no rule applies
    """
    log_extra = {"action_type": action.type, "endpoint": "media.get_twitter_media_ids"}
    status = getattr(error, "status_code", None)

    if isinstance(error, MediaServiceError):
        if status == 429:
            logger.warning(f"Media service rate limit error received: {error}", extra=log_extra)
            return oracle.apply_rate_limit(
                action, Platform.TWITTER.value, method, endpoint, error.headers
            )
        if status == 403 and _daily_limit_reached(error.body):
            logger.warning(
                f"Media service daily limit reached error received: {error}", extra=log_extra
            )
            return UniformResult.delay(settings.twitter_daily_limit_delay_ms, action)

    if is_connection_error(error):
        logger.warning(f"Error connecting to media service: {error}", extra=log_extra)
        return UniformResult.retry(
            status=None, body=str(error), retry_remaining=MEDIA_RETRY_BUDGET
        )

    if status == UPLOADING_STATUS:
        logger.debug(f"Error obtaining media: {error}", extra=log_extra)
        return UniformResult.retry(
            status=status, body=str(error), retry_remaining=MEDIA_RETRY_BUDGET
        )

    raise MediaServiceError(
        f"Error obtaining media: {error}",
        status_code=status,
        body=getattr(error, "body", None),
    ) from error

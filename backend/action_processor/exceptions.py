"""
Exceptions raised while processing actions.

Every error carries enough context (status code, vendor code, parsed
response body, headers) for the translators and the error classifier to
decide between retry, delay, requeue and discard without string parsing.
"""

from typing import Any, Dict, Optional


class ActionProcessorError(Exception):
    """Base exception for action processing errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class InputValidationError(ActionProcessorError):
    """Raised when an action or delivery is malformed. Never retried."""


class UnknownActionTypeError(ActionProcessorError):
    """Raised when no handler is registered for an action type."""

    def __init__(self, action_type: Any):
        super().__init__(f"Action not recognized: {action_type}", code="UNKNOWN_TYPE")
        self.action_type = action_type


class RateLimitRecordError(ActionProcessorError):
    """Raised when a rate limit is detected but no reset time can be derived."""


class OutboundCallError(ActionProcessorError):
    """Raised by the outbound call executor when a failed call has no retry budget."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, code=code, **kwargs)
        self.response_body = response_body
        self.headers = headers or {}


class PlatformApiError(ActionProcessorError):
    """Raised when an upstream platform rejects a request."""

    platform = "UNKNOWN"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[Any] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, code=code, **kwargs)
        self.body = body
        self.headers = headers or {}


class TwitterApiError(PlatformApiError):
    """Raised when the Twitter API responds with a non-2xx status."""

    platform = "TWITTER"

    @property
    def first_error_code(self) -> Optional[int]:
        """Code of the first entry in the body's `errors` array, if any."""
        if not isinstance(self.body, dict):
            return None
        errors = self.body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("code")
        return None

    @property
    def first_error_message(self) -> Optional[str]:
        if not isinstance(self.body, dict):
            return None
        errors = self.body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("message")
        return None


class MediaServiceError(PlatformApiError):
    """Raised when the media service cannot resolve a Twitter media id."""

    platform = "MEDIA"


class SendGridError(PlatformApiError):
    """Raised when SendGrid rejects an email."""

    platform = "SENDGRID"

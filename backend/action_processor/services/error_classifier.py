"""
Error classification for failed actions.

Any exception that escapes a handler (after the platform translators had
their chance) is mapped to one Disposition:

- REQUEUE: transient infrastructure or vendor capacity problems; the
  original action is republished unchanged
- DISCARD_QUIET: expected failures; dropped and logged at info/warning
- DISCARD: everything else; dropped and logged at error level

Rules come from config/error_policy.yml (see ErrorPolicyLoader).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx
from kombu.exceptions import OperationalError as BrokerOperationalError
from sqlalchemy.exc import DisconnectionError, InterfaceError
from sqlalchemy.exc import OperationalError as DatabaseOperationalError

from action_processor.actions.models import Action
from action_processor.config.error_policy import ErrorPolicy, ErrorPolicyLoader
from action_processor.exceptions import OutboundCallError, TwitterApiError

logger = logging.getLogger(__name__)

TWITTER_CODE_NOTES = {
    130: "Over capacity",
    131: "Twitter Internal error",
    187: "Duplicate tweet",
}

DB_CONNECTIVITY_MARKERS = (
    "server closed the connection",
    "could not connect",
    "connection refused",
    "connection reset",
    "lost connection",
    "terminating connection",
)


class DispositionKind(str, Enum):
    REQUEUE = "REQUEUE"
    DISCARD_QUIET = "DISCARD_QUIET"
    DISCARD = "DISCARD"


@dataclass(frozen=True)
class Disposition:
    """What to do with an action whose execution raised."""

    kind: DispositionKind
    message: str
    level: int = logging.ERROR
    alert_level: Optional[str] = None
    reason: Optional[str] = None

    @property
    def requeue(self) -> bool:
        return self.kind is DispositionKind.REQUEUE


def describe_error(error: BaseException) -> str:
    """Log message for an error, annotated for known Twitter codes."""
    if isinstance(error, TwitterApiError) and error.first_error_code is not None:
        code = error.first_error_code
        message = error.first_error_message or error.message
        note = TWITTER_CODE_NOTES.get(code)
        if note:
            return f"Twitter error {code}: {message}. BR says: {note}"
        return f"Twitter error {code}: {message}"
    return getattr(error, "message", None) or str(error) or error.__class__.__name__


class ErrorClassifier:
    """Maps exceptions to dispositions using the error policy."""

    def __init__(self, policy: Optional[ErrorPolicy] = None):
        self.policy = policy or ErrorPolicyLoader().load()

    def _infrastructure_code(self, error: BaseException) -> Optional[str]:
        code = getattr(error, "code", None)
        message = str(error)
        for infra_code in self.policy.infrastructure_codes:
            if code is not None and infra_code in str(code):
                return infra_code
            if infra_code in message:
                return infra_code
        return None

    def _is_database_connectivity(self, error: BaseException) -> bool:
        if isinstance(error, DisconnectionError):
            return True
        if not isinstance(error, (DatabaseOperationalError, InterfaceError)):
            return False
        if getattr(error, "connection_invalidated", False):
            return True
        message = str(error).lower()
        return any(marker in message for marker in DB_CONNECTIVITY_MARKERS)

    def _requeue_reason(self, error: BaseException) -> Optional[str]:
        # An OutboundCallError means the call's own retry budget is spent
        if isinstance(error, OutboundCallError):
            return None

        if isinstance(error, TwitterApiError):
            if error.first_error_code in self.policy.requeue_vendor_codes:
                return f"twitter_{error.first_error_code}"

        if isinstance(error, BrokerOperationalError):
            return "broker_connection"
        if self._is_database_connectivity(error):
            return "database_connection"
        if isinstance(error, httpx.TransportError):
            return "transport"
        if isinstance(error, (ConnectionError, TimeoutError)):
            return "connection"

        return self._infrastructure_code(error)

    def classify(self, error: BaseException, action: Optional[Action] = None) -> Disposition:
        """
        Decide the disposition for an error raised while executing an action.

        Args:
            error: The raised exception
            action: The action being executed, if it was parsed
        """
        message = describe_error(error)

        reason = self._requeue_reason(error)
        if reason:
            return Disposition(
                DispositionKind.REQUEUE, message, level=logging.WARNING, reason=reason
            )

        if isinstance(error, TwitterApiError):
            level = self.policy.quiet_vendor_codes.get(error.first_error_code)
            if level is not None:
                return Disposition(DispositionKind.DISCARD_QUIET, message, level=level)

        raw_message = getattr(error, "message", None) or str(error)
        for rule in self.policy.message_rules:
            if rule.matches(raw_message):
                return Disposition(
                    DispositionKind.DISCARD_QUIET,
                    message,
                    level=rule.level,
                    alert_level=rule.alert_level,
                )

        if action is not None and _truthy(action.get("ignoreErrors")):
            return Disposition(DispositionKind.DISCARD_QUIET, message, level=logging.INFO)

        return Disposition(DispositionKind.DISCARD, message, level=logging.ERROR)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)

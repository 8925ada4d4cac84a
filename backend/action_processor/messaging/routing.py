"""
Routing key value type.

Every routing key the processor consumes or produces is built and parsed
here. Consumed keys have exactly four dot-separated segments:

    <prefix>.<prefix>.<type>.<subject>
"""

from dataclasses import dataclass
from typing import Optional

from action_processor.exceptions import InputValidationError


@dataclass(frozen=True)
class RoutingKey:
    """A dot-separated AMQP routing key."""

    value: str

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse_action_key(cls, value: Optional[str]) -> "RoutingKey":
        """
        Validate a consumed action routing key.

        Raises:
            InputValidationError: If the key does not have four non-empty segments
        """
        parts = (value or "").split(".")
        if len(parts) != 4 or not all(parts):
            raise InputValidationError(f"Malformed routing key: {value!r}")
        return cls(value)

    @property
    def segments(self):
        return tuple(self.value.split("."))

    @property
    def action_type(self) -> str:
        return self.segments[2]

    @property
    def subject(self) -> str:
        return self.segments[3]

    @classmethod
    def join(cls, *parts) -> "RoutingKey":
        return cls(".".join(str(p) for p in parts))

    @classmethod
    def throttle(cls, action_type: str, subject: Optional[str], prefix: str = "actions.throttle") -> "RoutingKey":
        """Key used to republish an action for rate-aware re-delivery."""
        return cls.join(prefix, action_type, subject)

    @classmethod
    def builder(cls, widget_id: Optional[str], prefix: str = "actions.build") -> "RoutingKey":
        """Key of the action-builder service for a widget."""
        return cls.join(prefix, widget_id)

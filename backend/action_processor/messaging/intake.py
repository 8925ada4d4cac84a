"""
Message intake and normalization.

Turns one broker delivery into one normalized Action. The routing key
supplies the action type and subject; values in the JSON body always win
over key-derived ones, so a payload userId is never overwritten.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from pydantic import ValidationError

from action_processor.actions.models import Action
from action_processor.exceptions import InputValidationError
from action_processor.messaging.broker import Delivery
from action_processor.messaging.routing import RoutingKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundAction:
    """A normalized action plus the delivery properties that travel with it."""

    action: Action
    priority: int = 0
    headers: Dict[str, Any] = field(default_factory=dict)


def parse_delivery(delivery: Delivery) -> InboundAction:
    """
    Normalize a delivery.

    Raises:
        InputValidationError: On a malformed routing key, invalid JSON,
            a non-object body or an invalid action payload
    """
    key = RoutingKey.parse_action_key(delivery.routing_key)

    try:
        body = json.loads(delivery.body.decode("utf-8") if isinstance(delivery.body, bytes) else delivery.body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InputValidationError(f"Message body is not valid JSON: {e}") from e

    if not isinstance(body, dict):
        raise InputValidationError("Message body must be a JSON object")

    payload = dict(body)
    if payload.get("userId") is None:
        payload["userId"] = key.subject
    if not body.get("type"):
        payload["type"] = key.action_type

    try:
        action = Action.from_payload(payload)
    except ValidationError as e:
        raise InputValidationError(f"Invalid action payload: {e.errors()[0].get('msg')}") from e

    logger.debug(
        "Action received",
        extra={"action_type": action.type, "routing_key": delivery.routing_key},
    )
    return InboundAction(
        action=action,
        priority=delivery.priority or 0,
        headers=dict(delivery.headers or {}),
    )

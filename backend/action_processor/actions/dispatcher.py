"""
Action dispatcher.

Routes a normalized action to its handler through the immutable registry
and executes SEQUENCE actions itself:

- `delay` (ms) is slept before anything else happens
- sub-actions of a sequence run strictly in order and inherit the
  sequence's userId unless they carry their own
- the first sub-action that fails (raises, or returns anything but a
  COMPLETED below 400 or HANDLED) ends the sequence with its outcome
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Mapping

from pydantic import ValidationError

from action_processor.actions.handlers.base import ActionHandler
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.exceptions import InputValidationError, UnknownActionTypeError
from action_processor.messaging.broker import Publisher

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class ActionDispatcher:
    """Type-keyed routing with delay-before-execute and ordered sequences."""

    def __init__(
        self,
        registry: Mapping[ActionType, ActionHandler],
        sleep: Sleep = asyncio.sleep,
        require_exhaustive: bool = True,
    ):
        """
        Args:
            registry: Handler for every ActionType except SEQUENCE
            sleep: Coroutine used for `delay`, injectable for tests
            require_exhaustive: Reject registries that leave a type unhandled
        """
        if require_exhaustive:
            missing = set(ActionType) - set(registry) - {ActionType.SEQUENCE}
            if missing:
                names = ", ".join(sorted(t.value for t in missing))
                raise ValueError(f"No handler registered for: {names}")
        self._registry = registry
        self._sleep = sleep

    async def dispatch(self, action: Action, publisher: Publisher) -> UniformResult:
        """
        Execute one action.

        Raises:
            UnknownActionTypeError: If the type has no handler
            InputValidationError: On a malformed sequence
        """
        if action.delay:
            logger.debug(
                "Delaying action before dispatch",
                extra={"action_type": action.type, "delay_ms": action.delay},
            )
            await self._sleep(float(action.delay) / 1000.0)

        action_type = action.action_type
        if action_type is ActionType.SEQUENCE:
            return await self._sequence(action, publisher)

        handler = self._registry.get(action_type) if action_type else None
        if handler is None:
            raise UnknownActionTypeError(action.type)

        logger.debug(
            "Dispatching action",
            extra={"action_type": action.type, "handler": handler.__class__.__name__},
        )
        return await handler.handle(action, publisher)

    def _sub_actions(self, action: Action) -> List[Action]:
        raw_actions = action.get("actions")
        if not isinstance(raw_actions, list):
            raise InputValidationError("Sequence requires a valid array of actions")

        if any(
            isinstance(raw, Mapping) and raw.get("type") == ActionType.SEQUENCE.value
            for raw in raw_actions
        ):
            raise InputValidationError("Sequence cannot contain a sequence of actions")

        sub_actions = []
        for raw in raw_actions:
            if not isinstance(raw, Mapping):
                raise InputValidationError("Sequence requires a valid array of actions")
            payload = dict(raw)
            if payload.get("userId") is None and action.subject is not None:
                payload["userId"] = action.subject
            try:
                sub_actions.append(Action.from_payload(payload))
            except ValidationError as e:
                raise InputValidationError(f"Invalid action in sequence: {e}") from e
        return sub_actions

    async def _sequence(self, action: Action, publisher: Publisher) -> UniformResult:
        sub_actions = self._sub_actions(action)

        results: List[UniformResult] = []
        for index, sub_action in enumerate(sub_actions):
            result = await self.dispatch(sub_action, publisher)
            if not result.is_success:
                logger.info(
                    "Sequence stopped at unsuccessful action",
                    extra={
                        "index": index,
                        "action_type": sub_action.type,
                        "result_kind": result.kind.value,
                    },
                )
                return result
            results.append(result)

        return UniformResult.completed(status=200, results=results)


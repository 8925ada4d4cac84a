"""
Tests for the action dispatcher.

Handlers are replaced by recording doubles; the dispatcher's own
behavior (delay, routing, sequences) is under test.
"""

from unittest.mock import AsyncMock

import pytest

from action_processor.actions.dispatcher import ActionDispatcher
from action_processor.actions.handlers import build_registry
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import ResultKind, UniformResult
from action_processor.exceptions import InputValidationError, UnknownActionTypeError


class RecordingHandler:
    """Returns queued results per action type and records what it handled."""

    def __init__(self):
        self.handled = []
        self.results = {}
        self.events = []

    async def handle(self, action, publisher):
        self.handled.append(action)
        self.events.append(("handle", action.type))
        return self.results.get(action.type, UniformResult.completed())


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def dispatcher(handler, sleep):
    registry = {t: handler for t in ActionType if t is not ActionType.SEQUENCE}
    return ActionDispatcher(registry, sleep=sleep)


def _sequence(actions, **extra):
    return Action.from_payload({"type": "SEQUENCE", "actions": actions, **extra})


class TestDispatch:
    """Tests for single action routing."""

    @pytest.mark.asyncio
    async def test_routes_to_handler(self, dispatcher, handler, broker):
        action = Action.from_payload({"type": "SEND_TWEET", "userId": "42"})

        result = await dispatcher.dispatch(action, broker)

        assert result.kind is ResultKind.COMPLETED
        assert handler.handled == [action]

    @pytest.mark.asyncio
    async def test_delay_is_slept_first(self, dispatcher, handler, sleep, broker):
        sleep.side_effect = lambda seconds: handler.events.append(("sleep", seconds))
        action = Action.from_payload({"type": "SEND_TWEET", "userId": "42", "delay": 500})

        await dispatcher.dispatch(action, broker)

        sleep.assert_awaited_once_with(0.5)
        assert handler.events == [("sleep", 0.5), ("handle", "SEND_TWEET")]

    @pytest.mark.asyncio
    async def test_no_delay_no_sleep(self, dispatcher, sleep, broker):
        await dispatcher.dispatch(Action.from_payload({"type": "SEND_DM"}), broker)

        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_type(self, dispatcher, broker):
        with pytest.raises(UnknownActionTypeError) as exc_info:
            await dispatcher.dispatch(Action.from_payload({"type": "UNKNOWN_TYPE"}), broker)

        assert str(exc_info.value) == "Action not recognized: UNKNOWN_TYPE"


class TestRegistry:
    """Tests for registry validation."""

    def test_non_exhaustive_registry_rejected(self, handler):
        with pytest.raises(ValueError, match="No handler registered for"):
            ActionDispatcher({ActionType.SEND_TWEET: handler})

    def test_non_exhaustive_registry_allowed_when_requested(self, handler):
        ActionDispatcher({ActionType.SEND_TWEET: handler}, require_exhaustive=False)

    def test_built_registry_is_exhaustive(self, handler_deps):
        registry = build_registry(handler_deps)

        ActionDispatcher(registry)
        assert ActionType.SEQUENCE not in registry

    def test_built_registry_is_immutable(self, handler_deps):
        registry = build_registry(handler_deps)

        with pytest.raises(TypeError):
            registry[ActionType.SEQUENCE] = None


class TestSequence:
    """Tests for SEQUENCE execution."""

    @pytest.mark.asyncio
    async def test_runs_in_order(self, dispatcher, handler, broker):
        action = _sequence(
            [{"type": "SEND_TWEET", "text": "a"}, {"type": "SEND_DM", "text": "b"}],
            userId="42",
        )

        result = await dispatcher.dispatch(action, broker)

        assert result.kind is ResultKind.COMPLETED
        assert len(result.results) == 2
        assert [a.type for a in handler.handled] == ["SEND_TWEET", "SEND_DM"]

    @pytest.mark.asyncio
    async def test_sub_actions_inherit_user_id(self, dispatcher, handler, broker):
        action = _sequence(
            [{"type": "SEND_TWEET"}, {"type": "SEND_DM", "userId": "99"}], userId="42"
        )

        await dispatcher.dispatch(action, broker)

        assert [a.subject for a in handler.handled] == ["42", "99"]

    @pytest.mark.asyncio
    async def test_first_failure_short_circuits(self, dispatcher, handler, broker):
        handler.results["SEND_DM"] = UniformResult.unsuccessful("no")
        action = _sequence(
            [{"type": "SEND_TWEET"}, {"type": "SEND_DM"}, {"type": "SEND_REPLY"}], userId="42"
        )

        result = await dispatcher.dispatch(action, broker)

        assert result.kind is ResultKind.UNSUCCESSFUL
        assert [a.type for a in handler.handled] == ["SEND_TWEET", "SEND_DM"]

    @pytest.mark.asyncio
    async def test_error_status_short_circuits(self, dispatcher, handler, broker):
        handler.results["SEND_TWEET"] = UniformResult.completed(status=500)
        action = _sequence([{"type": "SEND_TWEET"}, {"type": "SEND_DM"}])

        result = await dispatcher.dispatch(action, broker)

        assert result.status == 500
        assert len(handler.handled) == 1

    @pytest.mark.asyncio
    async def test_handled_continues(self, dispatcher, handler, broker):
        handler.results["SEND_TWEET"] = UniformResult.handled()
        action = _sequence([{"type": "SEND_TWEET"}, {"type": "SEND_DM"}])

        result = await dispatcher.dispatch(action, broker)

        assert result.kind is ResultKind.COMPLETED
        assert len(handler.handled) == 2

    @pytest.mark.asyncio
    async def test_nested_sequence_rejected_before_dispatch(self, dispatcher, handler, broker):
        action = _sequence([{"type": "SEND_TWEET"}, {"type": "SEQUENCE", "actions": []}])

        with pytest.raises(InputValidationError, match="cannot contain a sequence"):
            await dispatcher.dispatch(action, broker)

        assert handler.handled == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actions", [None, "not-a-list", ["not-an-object"]])
    async def test_invalid_actions(self, dispatcher, actions, broker):
        action = Action.from_payload({"type": "SEQUENCE", "actions": actions})

        with pytest.raises(InputValidationError, match="valid array of actions"):
            await dispatcher.dispatch(action, broker)

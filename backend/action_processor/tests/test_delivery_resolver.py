"""
Tests for delivery outcome resolution.

The dispatcher is replaced by a stub returning a configured result (or
raising a configured error); publishing and settlement go through the
RecordingBroker so every test can assert on exactly one ack or nack.
"""

import json
import logging
from unittest.mock import AsyncMock

import pytest

from action_processor.actions.dispatcher import ActionDispatcher
from action_processor.actions.results import UniformResult
from action_processor.actions.models import Action, ActionType
from action_processor.exceptions import (
    InputValidationError,
    OutboundCallError,
    TwitterApiError,
)
from action_processor.services.delivery_resolver import DeliveryResolver, OutcomeKind
from helpers.recording_broker import RecordingBroker, make_delivery

NOW = 1_700_000_000
ROUTING_KEY = "actions.process.SEND_TWEET.42"


class StubDispatcher:
    """Returns `result` or raises `error`; counts dispatches."""

    def __init__(self, result=None, error=None):
        self.result = result or UniformResult.completed()
        self.error = error
        self.dispatched = []

    async def dispatch(self, action, publisher):
        self.dispatched.append(action)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def make_resolver(settings, clock):
    def _make(result=None, error=None):
        dispatcher = StubDispatcher(result=result, error=error)
        return DeliveryResolver(dispatcher, settings, clock=clock), dispatcher

    return _make


def _body(**extra):
    return {"type": "SEND_TWEET", "text": "hello", "widgetId": "w1", **extra}


def _settled_once(broker):
    return len(broker.acked) + len(broker.nacked) == 1


class TestResultOutcomes:
    """Tests for mapping UniformResults to settlements."""

    @pytest.mark.asyncio
    async def test_completed_publishes_success_follow_ons(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.completed(status=200, body={"id": "t1"}))
        body = _body(success=[{"type": "SEND_DM", "text": "thanks"}])

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.kind is OutcomeKind.ACK_TRIGGER_FOLLOWUPS
        assert broker.routing_keys == ["actions.throttle.SEND_DM.42"]
        published = broker.published[0]
        assert published.priority == 1
        assert published.payload["context"] == {"id": "t1"}
        assert published.payload["userId"] == "42"
        assert len(broker.acked) == 1
        assert _settled_once(broker)

    @pytest.mark.asyncio
    async def test_retry_decrements_budget(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.retry(status=503, body=None, retry_remaining=3))

        outcome = await resolver.process(
            make_delivery(ROUTING_KEY, _body(retryRemaining=3), priority=5), broker
        )

        assert outcome.kind is OutcomeKind.ACK_REPUBLISH
        published = broker.published[0]
        assert published.routing_key == "actions.throttle.SEND_TWEET.42"
        assert published.payload["retryRemaining"] == 2
        assert published.priority == 5
        assert _settled_once(broker)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("budget", [0, None])
    async def test_exhausted_retry_is_dropped(self, make_resolver, broker, budget, caplog):
        resolver, _ = make_resolver(
            UniformResult.retry(status="ETIMEDOUT", body="timed out", retry_remaining=budget)
        )

        with caplog.at_level(logging.ERROR):
            outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.ACK_DROP
        assert outcome.reason == "retry_exhausted"
        assert broker.published == []
        assert len(broker.acked) == 1
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_delay_sets_x_delay_header(self, make_resolver, broker):
        delayed = Action.from_payload({"type": "SEND_TWEET", "userId": "42", "text": "other"})
        resolver, _ = make_resolver(UniformResult.delay(12000, delayed))

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.ACK_REPUBLISH
        published = broker.published[0]
        assert published.headers == {"x-delay": 12000}
        assert published.payload == {"userId": "42", **_body()}
        assert published.routing_key == "actions.throttle.SEND_TWEET.42"

    @pytest.mark.asyncio
    async def test_fallback_is_published_to_its_own_key(self, make_resolver, broker):
        fallback = Action.from_payload({"type": "SEND_DM", "userId": "42", "text": "fallback"})
        resolver, _ = make_resolver(UniformResult.fallback(fallback))

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.ACK_REPUBLISH
        assert broker.routing_keys == ["actions.throttle.SEND_DM.42"]
        assert broker.published[0].payload["text"] == "fallback"

    @pytest.mark.asyncio
    async def test_lookup_failed_routes_failure_bundle(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.lookup_failed("Transient error"))
        body = _body(failure=[{"type": "SEND_DM", "text": "sorry"}])

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.kind is OutcomeKind.ACK_TRIGGER_FOLLOWUPS
        assert broker.routing_keys == ["actions.build.w1"]
        assert broker.published[0].payload["actions"] == [{"type": "SEND_DM", "text": "sorry"}]

    @pytest.mark.asyncio
    async def test_duplicate_publishes_nothing(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.completed(status=409, body="duplicate"))
        body = _body(
            success=[{"type": "SEND_DM"}], failure=[{"type": "SEND_DM", "text": "sorry"}]
        )

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.kind is OutcomeKind.ACK_DROP
        assert outcome.reason == "duplicate"
        assert broker.published == []
        assert len(broker.acked) == 1

    @pytest.mark.asyncio
    async def test_error_status_routes_failure_and_discards(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.completed(status=500, body="upstream broke"))
        body = _body(failure=[{"type": "SEND_DM", "text": "sorry"}])

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.kind is OutcomeKind.ACK_TRIGGER_FOLLOWUPS
        assert outcome.reason == "discard"
        assert broker.routing_keys == ["actions.build.w1"]
        assert _settled_once(broker)

    @pytest.mark.asyncio
    async def test_error_status_without_failure_list_drops(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.completed(status=400, body=None))

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.ACK_DROP
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_unsuccessful_routes_failure(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.unsuccessful("Participant already exists"))
        body = _body(failure=[{"type": "SEND_DM", "text": "sorry"}])

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.kind is OutcomeKind.ACK_TRIGGER_FOLLOWUPS
        assert broker.routing_keys == ["actions.build.w1"]

    @pytest.mark.asyncio
    async def test_handled_publishes_nothing(self, make_resolver, broker):
        resolver, _ = make_resolver(UniformResult.handled(message="Duplicate opt-in"))
        body = _body(success=[{"type": "SEND_DM"}])

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.kind is OutcomeKind.ACK_DROP
        assert outcome.reason == "handled"
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_expired_action_is_not_dispatched(self, make_resolver, broker):
        resolver, dispatcher = make_resolver()
        body = _body(expiration=(NOW - 1) * 1000)

        outcome = await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert outcome.reason == "expired"
        assert dispatcher.dispatched == []
        assert len(broker.acked) == 1

    @pytest.mark.asyncio
    async def test_future_expiration_is_dispatched(self, make_resolver, broker):
        resolver, dispatcher = make_resolver()
        body = _body(expiration=(NOW + 60) * 1000)

        await resolver.process(make_delivery(ROUTING_KEY, body), broker)

        assert len(dispatcher.dispatched) == 1


class ScriptedHandler:
    """Returns a fixed result per action type and records the order handled."""

    def __init__(self, results):
        self.results = results
        self.handled = []

    async def handle(self, action, publisher):
        self.handled.append(action.type)
        return self.results.get(action.type, UniformResult.completed(status=200))


@pytest.fixture
def make_sequence_resolver(settings, clock):
    def _make(results):
        handler = ScriptedHandler(results)
        registry = {t: handler for t in ActionType if t is not ActionType.SEQUENCE}
        dispatcher = ActionDispatcher(registry, sleep=AsyncMock())
        return DeliveryResolver(dispatcher, settings, clock=clock), handler

    return _make


SEQUENCE_BODY = {
    "type": "SEQUENCE",
    "actions": [
        {"type": "SEND_TWEET", "text": "first"},
        {"type": "SEND_DM", "text": "second"},
        {"type": "CALL_ENDPOINT", "url": "https://example.com", "method": "GET"},
    ],
}


class TestSequenceOutcomes:
    """Tests for sequences interrupted by a throttled or retried sub-action."""

    @pytest.mark.asyncio
    async def test_delayed_sub_action_republishes_whole_sequence(
        self, make_sequence_resolver, broker
    ):
        dm = Action.from_payload({"type": "SEND_DM", "userId": "42", "text": "second"})
        resolver, handler = make_sequence_resolver({"SEND_DM": UniformResult.delay(5000, dm)})

        outcome = await resolver.process(
            make_delivery("actions.process.SEQUENCE.42", SEQUENCE_BODY), broker
        )

        assert handler.handled == ["SEND_TWEET", "SEND_DM"]
        assert outcome.kind is OutcomeKind.ACK_REPUBLISH
        assert broker.routing_keys == ["actions.throttle.SEQUENCE.42"]
        published = broker.published[0]
        assert published.headers == {"x-delay": 5000}
        assert published.payload == {"userId": "42", **SEQUENCE_BODY}
        assert _settled_once(broker)

    @pytest.mark.asyncio
    async def test_retried_sub_action_republishes_whole_sequence(
        self, make_sequence_resolver, broker
    ):
        resolver, handler = make_sequence_resolver(
            {"SEND_DM": UniformResult.retry(status=503, body=None, retry_remaining=2)}
        )

        outcome = await resolver.process(
            make_delivery("actions.process.SEQUENCE.42", SEQUENCE_BODY), broker
        )

        assert handler.handled == ["SEND_TWEET", "SEND_DM"]
        assert outcome.kind is OutcomeKind.ACK_REPUBLISH
        assert broker.routing_keys == ["actions.throttle.SEQUENCE.42"]
        published = broker.published[0]
        assert published.payload["actions"] == SEQUENCE_BODY["actions"]
        assert published.payload["retryRemaining"] == 1
        assert _settled_once(broker)


class TestErrorOutcomes:
    """Tests for raised errors."""

    @pytest.mark.asyncio
    async def test_connection_error_requeues_unchanged(self, make_resolver, broker):
        resolver, _ = make_resolver(error=ConnectionError("connection reset by peer"))

        outcome = await resolver.process(
            make_delivery(ROUTING_KEY, _body(retryRemaining=3)), broker
        )

        assert outcome.kind is OutcomeKind.ACK_REPUBLISH
        assert outcome.reason == "requeue"
        assert broker.published[0].payload["retryRemaining"] == 3
        assert broker.routing_keys == ["actions.throttle.SEND_TWEET.42"]

    @pytest.mark.asyncio
    async def test_twitter_over_capacity_requeues(self, make_resolver, broker):
        error = TwitterApiError(
            "Over capacity", status_code=503, body={"errors": [{"code": 130, "message": "Over capacity"}]}
        )
        resolver, _ = make_resolver(error=error)

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.reason == "requeue"

    @pytest.mark.asyncio
    async def test_exhausted_call_is_never_requeued(self, make_resolver, broker):
        resolver, _ = make_resolver(error=OutboundCallError("connect ETIMEDOUT", code="ETIMEDOUT"))

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.ACK_DROP
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_duplicate_tweet_is_quiet(self, make_resolver, broker, caplog):
        error = TwitterApiError(
            "Forbidden", status_code=403, body={"errors": [{"code": 187, "message": "Status is a duplicate."}]}
        )
        resolver, _ = make_resolver(error=error)

        with caplog.at_level(logging.INFO):
            outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.reason == "discard_quiet"
        assert outcome.level == logging.INFO
        assert not any(
            r.levelno >= logging.ERROR and r.name == "action_processor.services.delivery_resolver"
            for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_validation_error_discarded_with_details(self, make_resolver, broker, caplog):
        resolver, _ = make_resolver(error=InputValidationError("No text provided"))

        with caplog.at_level(logging.ERROR):
            outcome = await resolver.process(
                make_delivery(ROUTING_KEY, _body(apiKey="secret-key")), broker
            )

        assert outcome.reason == "discard"
        records = [r for r in caplog.records if hasattr(r, "errorDetails")]
        assert records
        details = records[0].errorDetails
        assert details["message"] == "No text provided"
        assert "secret-key" not in details["jsonString"]
        assert json.loads(details["jsonString"])["text"] == "hello"


class TestSettlement:
    """Tests for publish-then-ack settlement."""

    @pytest.mark.asyncio
    async def test_publish_failure_nacks_with_requeue(self, make_resolver):
        broker = RecordingBroker(fail_publish=True)
        resolver, _ = make_resolver(UniformResult.retry(status=503, body=None, retry_remaining=2))

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.NACK_REQUEUE
        assert len(broker.nacked) == 1
        assert broker.acked == []

    @pytest.mark.asyncio
    async def test_outcome_without_publications_still_acks(self, make_resolver):
        broker = RecordingBroker(fail_publish=True)
        resolver, _ = make_resolver(UniformResult.handled())

        outcome = await resolver.process(make_delivery(ROUTING_KEY, _body()), broker)

        assert outcome.kind is OutcomeKind.ACK_DROP
        assert len(broker.acked) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "routing_key,body",
        [
            (ROUTING_KEY, b"{not json"),
            (ROUTING_KEY, [1, 2]),
            ("actions.process.SEND_TWEET", {"text": "x"}),
        ],
    )
    async def test_invalid_delivery_is_dropped(self, make_resolver, broker, routing_key, body):
        resolver, dispatcher = make_resolver()

        outcome = await resolver.process(make_delivery(routing_key, body), broker)

        assert outcome.reason == "invalid_message"
        assert dispatcher.dispatched == []
        assert len(broker.acked) == 1

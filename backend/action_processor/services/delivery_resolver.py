"""
Delivery outcome resolution.

Turns one broker delivery into exactly one settlement. The dispatched
action's UniformResult (or the exception it raised) is mapped to a
DeliveryOutcome, in this order:

1. expired action               -> ack-drop, not dispatched
2. RETRY                        -> republish with retryRemaining - 1
3. DELAY                        -> republish with an x-delay header
4. FALLBACK                     -> republish the fallback action
5. LOOKUP_FAILED                -> failure follow-ons
6. COMPLETED >= 400             -> 409 dropped as duplicate, otherwise
                                   failure follow-ons + error handling
7. UNSUCCESSFUL                 -> failure follow-ons
8. HANDLED                      -> ack
9. COMPLETED                    -> success follow-ons
10. raised error                -> ErrorClassifier disposition

Every delivery is acked once its publications went out. If publishing
fails the delivery is nacked with requeue so the broker redelivers it.

SECURITY:
- Actions are passed through sanitize_action before they are logged
"""

import json
import logging
import time
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from action_processor.actions.dispatcher import ActionDispatcher
from action_processor.actions.models import Action
from action_processor.actions.results import ResultKind, UniformResult
from action_processor.config.settings import ProcessorSettings
from action_processor.exceptions import ActionProcessorError, OutboundCallError
from action_processor.messaging.broker import Broker, Delivery, Publication, Publisher
from action_processor.messaging.intake import InboundAction, parse_delivery
from action_processor.messaging.routing import RoutingKey
from action_processor.monitoring.metrics import get_processor_metrics
from action_processor.platform.secrets import DEFAULT_SENSITIVE_ACTION_KEYS, sanitize_action
from action_processor.services.error_classifier import DispositionKind, ErrorClassifier
from action_processor.services.follow_ons import FollowOnPublisher

logger = logging.getLogger(__name__)

DELAY_HEADER = "x-delay"
DUPLICATE_STATUS = 409


class OutcomeKind(str, Enum):
    ACK_DROP = "ACK_DROP"
    ACK_REPUBLISH = "ACK_REPUBLISH"
    ACK_TRIGGER_FOLLOWUPS = "ACK_TRIGGER_FOLLOWUPS"
    NACK_REQUEUE = "NACK_REQUEUE"


@dataclass(frozen=True)
class DeliveryOutcome:
    """How one delivery is settled and what is published before the ack."""

    kind: OutcomeKind
    publications: Tuple[Publication, ...] = ()
    reason: str = ""
    level: int = logging.INFO

    @classmethod
    def drop(cls, reason: str, level: int = logging.INFO) -> "DeliveryOutcome":
        return cls(OutcomeKind.ACK_DROP, reason=reason, level=level)


class DeliveryResolver:
    """Dispatches deliveries and settles them against the broker."""

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        settings: ProcessorSettings,
        classifier: Optional[ErrorClassifier] = None,
        follow_ons: Optional[FollowOnPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.dispatcher = dispatcher
        self.settings = settings
        self.classifier = classifier or ErrorClassifier()
        self.follow_ons = follow_ons or FollowOnPublisher(settings)
        self._clock = clock
        self._metrics = get_processor_metrics()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, delivery: Delivery, broker: Broker) -> DeliveryOutcome:
        """Parse, dispatch and settle one delivery."""
        try:
            inbound = parse_delivery(delivery)
        except ActionProcessorError as e:
            logger.error(
                "Discarding undeliverable message",
                extra={"routing_key": delivery.routing_key, "error": e.message},
            )
            outcome = DeliveryOutcome.drop("invalid_message", level=logging.ERROR)
            await broker.ack(delivery)
            self._metrics.record_processed(None, outcome.kind.value)
            return outcome

        outcome = await self.resolve(inbound, broker)
        outcome = await self.settle(delivery, outcome, broker)
        self._metrics.record_processed(inbound.action.type, outcome.kind.value)
        return outcome

    async def settle(
        self, delivery: Delivery, outcome: DeliveryOutcome, broker: Broker
    ) -> DeliveryOutcome:
        """Publish the outcome's messages, then ack. Nack with requeue if publishing fails."""
        try:
            for publication in outcome.publications:
                await broker.publish(
                    publication.routing_key,
                    publication.payload,
                    priority=publication.priority,
                    headers=publication.headers,
                )
        except Exception as e:
            logger.error(
                "Failed to publish delivery outcome, requeueing delivery",
                extra={"routing_key": delivery.routing_key, "error": str(e)},
            )
            await broker.nack(delivery, requeue=True)
            return DeliveryOutcome(OutcomeKind.NACK_REQUEUE, reason="publish_failed")

        await broker.ack(delivery)
        return outcome

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def is_expired(self, action: Action) -> bool:
        if not action.expiration:
            return False
        return action.expiration < self._clock() * 1000

    async def resolve(self, inbound: InboundAction, publisher: Publisher) -> DeliveryOutcome:
        """Map the dispatched action's result (or error) to an outcome."""
        action = inbound.action

        if self.is_expired(action):
            logger.info(
                "Action expired, discarding",
                extra={"action_type": action.type, "expiration": action.expiration},
            )
            self._metrics.record_expired(action.type)
            return DeliveryOutcome.drop("expired")

        try:
            result = await self.dispatcher.dispatch(action, publisher)
        except Exception as e:
            return self.from_error(e, inbound)

        return self.from_result(result, inbound)

    def _throttle(
        self,
        action: Action,
        payload: Dict[str, Any],
        priority: Optional[int],
        headers: Optional[Dict[str, Any]] = None,
    ) -> Publication:
        routing_key = RoutingKey.throttle(
            action.type, action.subject, prefix=self.settings.throttle_prefix
        )
        return Publication(str(routing_key), payload, priority=priority, headers=headers)

    def from_result(self, result: UniformResult, inbound: InboundAction) -> DeliveryOutcome:
        action = inbound.action
        kind = result.kind

        if kind is ResultKind.RETRY:
            return self._retry(result, inbound)

        if kind is ResultKind.DELAY:
            # A throttled sub-action still republishes the whole inbound action.
            throttled = result.action or action
            self._metrics.record_rate_limit(throttled.type, result.delay_ms)
            logger.info(
                "Delaying action",
                extra={
                    "action_type": action.type,
                    "throttled_type": throttled.type,
                    "delay_ms": result.delay_ms,
                },
            )
            publication = self._throttle(
                action,
                action.to_payload(),
                inbound.priority,
                headers={DELAY_HEADER: result.delay_ms},
            )
            return DeliveryOutcome(OutcomeKind.ACK_REPUBLISH, (publication,), reason="delay")

        if kind is ResultKind.FALLBACK:
            fallback = result.action
            logger.error(
                "Action failed, publishing fallback action",
                extra={
                    "action_type": action.type,
                    "fallback_type": fallback.type if fallback else None,
                },
            )
            if fallback is None:
                return DeliveryOutcome.drop("fallback_missing", level=logging.ERROR)
            publication = self._throttle(fallback, fallback.to_payload(), inbound.priority)
            return DeliveryOutcome(OutcomeKind.ACK_REPUBLISH, (publication,), reason="fallback")

        if kind is ResultKind.LOOKUP_FAILED:
            logger.info(
                "Lookup failed, routing failure actions",
                extra={"action_type": action.type, "reason": result.message},
            )
            self._metrics.record_failed(action.type)
            return self._follow_ups(action, result, succeeded=False, reason="lookup_failed")

        if result.is_error_status:
            return self._error_status(result, inbound)

        if kind is ResultKind.UNSUCCESSFUL:
            logger.warning(
                "Action unsuccessful, routing failure actions",
                extra={"action_type": action.type, "reason": result.message},
            )
            self._metrics.record_failed(action.type)
            return self._follow_ups(action, result, succeeded=False, reason="unsuccessful")

        if kind is ResultKind.HANDLED:
            logger.info(
                "Action handled",
                extra={"action_type": action.type, "reason": result.message},
            )
            self._metrics.record_handled(action.type)
            return DeliveryOutcome.drop("handled")

        logger.debug(
            "Action completed",
            extra={"action_type": action.type, "status": result.status},
        )
        return self._follow_ups(action, result, succeeded=True, reason="completed")

    def _follow_ups(
        self, action: Action, result: UniformResult, succeeded: bool, reason: str
    ) -> DeliveryOutcome:
        publications = self.follow_ons.publications(action, result, succeeded)
        return DeliveryOutcome(
            OutcomeKind.ACK_TRIGGER_FOLLOWUPS,
            publications,
            reason=reason,
            level=logging.INFO if succeeded else logging.WARNING,
        )

    def _retry(self, result: UniformResult, inbound: InboundAction) -> DeliveryOutcome:
        action = inbound.action
        budget = result.retry_remaining

        if budget is None or budget <= 0:
            # An exhausted budget is fatal, never requeued
            error = OutboundCallError(
                f"Retry budget exhausted: {result.body or result.status}",
                code=result.status if isinstance(result.status, str) else None,
                status_code=result.status if isinstance(result.status, int) else None,
                response_body=result.body,
            )
            self._log_discard(error, action, logging.ERROR)
            self._metrics.record_discarded(action.type, "retry_exhausted")
            return DeliveryOutcome.drop("retry_exhausted", level=logging.ERROR)

        remaining = budget - 1
        logger.warning(
            "Retrying action",
            extra={
                "action_type": action.type,
                "status": result.status,
                "retry_remaining": remaining,
            },
        )
        self._metrics.record_retry(action.type, remaining)
        publication = self._throttle(
            action, action.with_payload({"retryRemaining": remaining}).to_payload(), inbound.priority
        )
        return DeliveryOutcome(
            OutcomeKind.ACK_REPUBLISH, (publication,), reason="retry", level=logging.WARNING
        )

    def _error_status(self, result: UniformResult, inbound: InboundAction) -> DeliveryOutcome:
        action = inbound.action

        if result.status == DUPLICATE_STATUS:
            logger.info(
                "Duplicate action detected, discarding",
                extra={"action_type": action.type, "body": result.body},
            )
            self._metrics.record_duplicate(action.type)
            return DeliveryOutcome.drop("duplicate")

        self._metrics.record_failed(action.type, result.status)
        failure = self.follow_ons.publications(action, result, succeeded=False)

        body = result.body
        message = body if isinstance(body, str) and body else f"Request failed with status {result.status}"
        error = OutboundCallError(message, status_code=result.status, response_body=body)
        handled = self.from_error(error, inbound)

        publications = failure + handled.publications
        if handled.publications:
            kind = OutcomeKind.ACK_REPUBLISH
        elif failure:
            kind = OutcomeKind.ACK_TRIGGER_FOLLOWUPS
        else:
            kind = OutcomeKind.ACK_DROP
        return DeliveryOutcome(kind, publications, reason=handled.reason, level=handled.level)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def from_error(self, error: BaseException, inbound: InboundAction) -> DeliveryOutcome:
        action = inbound.action
        disposition = self.classifier.classify(error, action)

        if disposition.kind is DispositionKind.REQUEUE:
            logger.warning(
                "Requeueing action after transient error",
                extra={
                    "action_type": action.type,
                    "error": disposition.message,
                    "reason": disposition.reason,
                },
            )
            self._metrics.record_requeued(action.type, disposition.reason or "transient")
            publication = self._throttle(action, action.to_payload(), inbound.priority)
            return DeliveryOutcome(
                OutcomeKind.ACK_REPUBLISH, (publication,), reason="requeue", level=logging.WARNING
            )

        self._metrics.record_discarded(action.type, error.__class__.__name__)

        if disposition.kind is DispositionKind.DISCARD_QUIET:
            logger.log(
                disposition.level,
                disposition.message,
                extra={
                    "action_type": action.type,
                    "widget_id": action.widget_id,
                    "alert_level": disposition.alert_level,
                },
            )
            return DeliveryOutcome.drop("discard_quiet", level=disposition.level)

        self._log_discard(error, action, logging.ERROR, message=disposition.message)
        return DeliveryOutcome.drop("discard", level=logging.ERROR)

    def _log_discard(
        self, error: BaseException, action: Action, level: int, message: Optional[str] = None
    ) -> None:
        sensitive_keys = self.classifier.policy.sensitive_keys or DEFAULT_SENSITIVE_ACTION_KEYS
        payload = sanitize_action(action.to_payload(), sensitive_keys)
        logger.log(
            level,
            message or str(error),
            extra={
                "action_type": action.type,
                "widget_id": action.widget_id,
                "errorDetails": {
                    "jsonString": json.dumps(payload, default=str),
                    "message": getattr(error, "message", None) or str(error),
                    "stack": "".join(
                        traceback.format_exception(type(error), error, error.__traceback__)
                    ),
                },
            },
        )

"""
Action processor metrics.

Emits structured log events that log aggregators can turn into counters
for dashboards and alerting. Every event carries the action type.

Metrics emitted:
- action_processed: delivery resolved (any outcome)
- action_retry: action republished with a decremented retry budget
- action_rate_limited: action republished with an x-delay header
- action_expired: action dropped past its expiration
- action_duplicate: 409 from upstream, dropped
- action_failed: failure follow-ons published
- action_handled: expected platform failure treated as success
- action_requeued: action republished unchanged after a transient error
- action_discarded: action dropped after an error
"""

import logging
from typing import Optional

metrics_logger = logging.getLogger("actions.metrics")


class ProcessorMetrics:
    """Collects and emits action processor metrics via structured logging."""

    _instance: Optional["ProcessorMetrics"] = None

    @classmethod
    def get_instance(cls) -> "ProcessorMetrics":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _emit(self, metric: str, action_type: Optional[str], level: int = logging.INFO, **fields) -> None:
        metrics_logger.log(
            level,
            metric,
            extra={"metric": metric, "action_type": action_type, **fields},
        )

    def record_processed(self, action_type: Optional[str], disposition: str) -> None:
        self._emit("action_processed", action_type, disposition=disposition)

    def record_retry(self, action_type: Optional[str], retry_remaining: int) -> None:
        self._emit("action_retry", action_type, retry_remaining=retry_remaining)

    def record_rate_limit(self, action_type: Optional[str], delay_ms: int) -> None:
        self._emit("action_rate_limited", action_type, delay_ms=delay_ms)

    def record_expired(self, action_type: Optional[str]) -> None:
        self._emit("action_expired", action_type)

    def record_duplicate(self, action_type: Optional[str]) -> None:
        self._emit("action_duplicate", action_type)

    def record_failed(self, action_type: Optional[str], status: Optional[int] = None) -> None:
        self._emit("action_failed", action_type, logging.WARNING, status=status)

    def record_handled(self, action_type: Optional[str]) -> None:
        self._emit("action_handled", action_type)

    def record_requeued(self, action_type: Optional[str], reason: str) -> None:
        self._emit("action_requeued", action_type, logging.WARNING, reason=reason)

    def record_discarded(self, action_type: Optional[str], error_type: str) -> None:
        self._emit("action_discarded", action_type, logging.WARNING, error_type=error_type)


def get_processor_metrics() -> ProcessorMetrics:
    """Get the processor metrics singleton."""
    return ProcessorMetrics.get_instance()

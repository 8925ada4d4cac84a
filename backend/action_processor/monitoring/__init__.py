"""Processor metrics emitted as structured log events."""

from action_processor.monitoring.metrics import ProcessorMetrics, get_processor_metrics

__all__ = ["ProcessorMetrics", "get_processor_metrics"]

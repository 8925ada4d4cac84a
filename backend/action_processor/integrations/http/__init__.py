"""Generic outbound HTTP call executor."""

from action_processor.integrations.http.client import (
    OutboundCallExecutor,
    OutboundRequest,
    parse_response_body,
    parse_retry_budget,
)

__all__ = [
    "OutboundCallExecutor",
    "OutboundRequest",
    "parse_response_body",
    "parse_retry_budget",
]

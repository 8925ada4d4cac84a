"""
Uniform action results.

Every handler, translator and the outbound call executor reduces its
outcome to one UniformResult. The delivery resolver matches on `kind`;
raised exceptions are the fatal case and never appear here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from action_processor.actions.models import Action


class ResultKind(str, Enum):
    COMPLETED = "COMPLETED"
    RETRY = "RETRY"
    DELAY = "DELAY"
    FALLBACK = "FALLBACK"
    LOOKUP_FAILED = "LOOKUP_FAILED"
    UNSUCCESSFUL = "UNSUCCESSFUL"
    HANDLED = "HANDLED"


@dataclass(frozen=True)
class UniformResult:
    """Tagged result of executing one action."""

    kind: ResultKind
    status: Any = None
    body: Any = None
    results: List["UniformResult"] = field(default_factory=list)
    retry_remaining: Optional[int] = None
    delay_ms: Optional[int] = None
    action: Optional[Action] = None
    message: Optional[str] = None
    delete_participant: bool = False

    @classmethod
    def completed(cls, status: int = 200, body: Any = None, results=None) -> "UniformResult":
        return cls(ResultKind.COMPLETED, status=status, body=body, results=list(results or []))

    @classmethod
    def retry(cls, status: Any, body: Any, retry_remaining: int) -> "UniformResult":
        return cls(ResultKind.RETRY, status=status, body=body, retry_remaining=retry_remaining)

    @classmethod
    def delay(cls, delay_ms: int, action: Optional[Action] = None) -> "UniformResult":
        return cls(ResultKind.DELAY, delay_ms=int(delay_ms), action=action)

    @classmethod
    def fallback(cls, action: Action) -> "UniformResult":
        return cls(ResultKind.FALLBACK, action=action)

    @classmethod
    def lookup_failed(cls, message: Optional[str] = None) -> "UniformResult":
        return cls(ResultKind.LOOKUP_FAILED, message=message)

    @classmethod
    def unsuccessful(cls, message: str) -> "UniformResult":
        return cls(ResultKind.UNSUCCESSFUL, message=message)

    @classmethod
    def handled(cls, delete_participant: bool = False, message: Optional[str] = None) -> "UniformResult":
        return cls(ResultKind.HANDLED, delete_participant=delete_participant, message=message)

    @property
    def is_error_status(self) -> bool:
        """COMPLETED with an HTTP error status."""
        return (
            self.kind is ResultKind.COMPLETED
            and isinstance(self.status, int)
            and self.status >= 400
        )

    @property
    def is_success(self) -> bool:
        """COMPLETED below 400, or HANDLED."""
        if self.kind is ResultKind.HANDLED:
            return True
        return self.kind is ResultKind.COMPLETED and not self.is_error_status

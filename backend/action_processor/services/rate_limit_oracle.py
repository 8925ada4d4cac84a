"""
Rate-limit oracle.

Persists per-(subject, platform, method, endpoint) reset times and turns
them into delays. Rate-limit-sensitive handlers ask the oracle before any
network call; a reset time in the future short-circuits the handler with
a DELAY result.

    delay_ms = max(0, (reset_at - now + buffer) * 1000)

where buffer is ACTION_RATE_LIMIT_DELAY seconds (default 2).
"""

import logging
import time
from typing import Callable, Mapping, Optional

from action_processor.actions.models import Action
from action_processor.actions.results import UniformResult
from action_processor.config.settings import ProcessorSettings
from action_processor.exceptions import RateLimitRecordError
from action_processor.repositories.rate_limit_repo import RateLimitRepository

logger = logging.getLogger(__name__)


def reset_at_after(delay_ms: int, clock: Callable[[], float] = time.time) -> int:
    """Epoch seconds `delay_ms` from now."""
    return round((clock() * 1000 + delay_ms) / 1000)


class RateLimitOracle:
    """Reset-time store and delay calculator."""

    def __init__(
        self,
        repository: RateLimitRepository,
        settings: ProcessorSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.buffer_seconds = settings.rate_limit_buffer_seconds
        self._clock = clock

    def now(self) -> int:
        return round(self._clock())

    def get_reset_at(self, subject: str, platform: str, method: str, endpoint: str) -> int:
        """Recorded reset time in epoch seconds, or 0 when none is in the future."""
        reset_at = self.repository.get_reset_at(subject, platform, method, endpoint)
        if not reset_at or int(reset_at) <= self.now():
            return 0
        return int(reset_at)

    def record_limit(
        self, subject: str, platform: str, method: str, endpoint: str, reset_at: int
    ) -> None:
        self.repository.upsert(subject, platform, method, endpoint, int(reset_at))

    def compute_delay(self, reset_at: Optional[float]) -> int:
        """Milliseconds to wait until `reset_at` plus the buffer, never negative."""
        if not reset_at:
            return 0
        delay = (float(reset_at) - self.now() + self.buffer_seconds) * 1000
        return int(delay) if delay > 0 else 0

    def delay_for(self, action: Action, reset_at: float) -> UniformResult:
        """DELAY result for the unmodified action."""
        return UniformResult.delay(self.compute_delay(reset_at), action)

    def check(
        self, action: Action, platform: str, method: str, endpoint: str
    ) -> Optional[UniformResult]:
        """DELAY result when the subject is currently throttled, else None."""
        reset_at = self.get_reset_at(action.subject, platform, method, endpoint)
        if reset_at > 0:
            logger.info(
                "Subject is rate limited, delaying action",
                extra={
                    "action_type": action.type,
                    "platform": platform,
                    "endpoint": endpoint,
                    "limit_reset_at": reset_at,
                },
            )
            return self.delay_for(action, reset_at)
        return None

    def apply_rate_limit(
        self,
        action: Action,
        platform: str,
        method: str,
        endpoint: str,
        headers: Optional[Mapping[str, str]],
        default_reset_at: Optional[int] = None,
    ) -> UniformResult:
        """
        Record a rate limit reported by a platform and delay the action.

        Raises:
            RateLimitRecordError: When there are no headers or no reset time
        """
        logger.warning(
            "Rate limit exceeded",
            extra={
                "platform": platform,
                "method": method,
                "endpoint": endpoint,
                "action_type": action.type,
            },
        )
        if not headers and not default_reset_at:
            raise RateLimitRecordError(f"No headers in the rate limited {platform} response")

        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        reset_at = lowered.get("x-rate-limit-reset") or default_reset_at
        if not reset_at:
            raise RateLimitRecordError(
                "No x-rate-limit-reset field found in headers of the rate limited "
                f"{platform} response"
            )

        reset_at = int(float(reset_at))
        self.record_limit(action.subject, platform, method, endpoint, reset_at)
        return self.delay_for(action, reset_at)

    def apply_fixed_limit(
        self, action: Action, platform: str, method: str, endpoint: str, delay_ms: int
    ) -> UniformResult:
        """Record a limit lasting `delay_ms` from now, for platforms that send no reset header."""
        headers = {"x-rate-limit-reset": str(reset_at_after(delay_ms, self._clock))}
        return self.apply_rate_limit(action, platform, method, endpoint, headers)

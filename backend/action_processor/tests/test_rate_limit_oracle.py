"""
Tests for the rate-limit oracle and its repository.

Uses the SQLite database from conftest and a controllable clock.
"""

import pytest

from action_processor.actions.models import Action
from action_processor.actions.results import ResultKind
from action_processor.exceptions import RateLimitRecordError
from action_processor.services.rate_limit_oracle import reset_at_after

NOW = 1_700_000_000


@pytest.fixture
def action():
    return Action.from_payload({"type": "SEND_TWEET", "userId": "42", "text": "hi"})


class TestRateLimitRepository:
    """Tests for reset time persistence."""

    def test_missing_record(self, rate_limit_repo):
        assert rate_limit_repo.get_reset_at("42", "TWITTER", "POST", "tweets") is None

    def test_upsert_is_last_write_wins(self, rate_limit_repo):
        rate_limit_repo.upsert("42", "TWITTER", "POST", "tweets", NOW + 10)
        rate_limit_repo.upsert("42", "TWITTER", "POST", "tweets", NOW + 90)

        assert rate_limit_repo.get_reset_at("42", "TWITTER", "POST", "tweets") == NOW + 90

    def test_keys_are_independent(self, rate_limit_repo):
        rate_limit_repo.upsert("42", "TWITTER", "POST", "tweets", NOW + 10)

        assert rate_limit_repo.get_reset_at("42", "TWITTER", "POST", "dm_conversations") is None
        assert rate_limit_repo.get_reset_at("43", "TWITTER", "POST", "tweets") is None
        assert rate_limit_repo.get_reset_at("42", "FACEBOOK", "POST", "tweets") is None


class TestComputeDelay:
    """Tests for the delay formula."""

    def test_future_reset_includes_buffer(self, oracle):
        assert oracle.compute_delay(NOW + 10) == 12000

    def test_past_reset_is_zero(self, oracle):
        assert oracle.compute_delay(NOW - 100) == 0

    def test_missing_reset_is_zero(self, oracle):
        assert oracle.compute_delay(None) == 0

    def test_reset_at_after(self, clock):
        assert reset_at_after(5000, clock) == NOW + 5


class TestCheck:
    """Tests for the pre-flight throttle check."""

    def test_not_throttled(self, oracle, action):
        assert oracle.check(action, "TWITTER", "POST", "tweets") is None

    def test_throttled_returns_delay_for_same_action(self, oracle, action):
        oracle.record_limit("42", "TWITTER", "POST", "tweets", NOW + 60)

        result = oracle.check(action, "TWITTER", "POST", "tweets")

        assert result.kind is ResultKind.DELAY
        assert result.delay_ms == 62000
        assert result.action is action

    def test_expired_limit_is_ignored(self, oracle, action, clock):
        oracle.record_limit("42", "TWITTER", "POST", "tweets", NOW + 60)
        clock.advance(61)

        assert oracle.check(action, "TWITTER", "POST", "tweets") is None


class TestApplyRateLimit:
    """Tests for recording platform-reported limits."""

    def test_records_reset_from_headers(self, oracle, action, rate_limit_repo):
        result = oracle.apply_rate_limit(
            action, "TWITTER", "POST", "tweets", {"X-Rate-Limit-Reset": str(NOW + 30)}
        )

        assert result.kind is ResultKind.DELAY
        assert result.delay_ms == 32000
        assert rate_limit_repo.get_reset_at("42", "TWITTER", "POST", "tweets") == NOW + 30

    def test_no_headers(self, oracle, action):
        with pytest.raises(RateLimitRecordError, match="No headers"):
            oracle.apply_rate_limit(action, "TWITTER", "POST", "tweets", None)

    def test_no_reset_header(self, oracle, action):
        with pytest.raises(RateLimitRecordError, match="x-rate-limit-reset"):
            oracle.apply_rate_limit(action, "TWITTER", "POST", "tweets", {"x-other": "1"})

    def test_default_reset_used_without_headers(self, oracle, action):
        result = oracle.apply_rate_limit(
            action, "TWITTER", "POST", "tweets", {}, default_reset_at=NOW + 60
        )

        assert result.delay_ms == 62000

    def test_fixed_limit(self, oracle, action, rate_limit_repo):
        result = oracle.apply_fixed_limit(action, "WHATSAPP", "POST", "messages", 5000)

        assert result.kind is ResultKind.DELAY
        assert result.delay_ms == 7000
        assert rate_limit_repo.get_reset_at("42", "WHATSAPP", "POST", "messages") == NOW + 5

    def test_recorded_limit_short_circuits_next_check(self, oracle, action):
        oracle.apply_fixed_limit(action, "INSTAGRAM", "POST", "/me/messages", 5000)

        result = oracle.check(action, "INSTAGRAM", "POST", "/me/messages")

        assert result is not None
        assert result.kind is ResultKind.DELAY

"""
Tests for rate limiting functionality.
"""

from unittest.mock import MagicMock

import pytest

from atelier.core.exceptions import RateLimitError
from atelier.core.rate_limit import (
    InMemoryRateLimiter,
    RateLimitRule,
    RedisRateLimiter,
    build_rules,
    compute_retry_after,
    get_rate_limiter,
    reset_rate_limiter,
)


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> InMemoryRateLimiter:
    return InMemoryRateLimiter(
        rules={"timeline": RateLimitRule(limit=5, window_seconds=900)},
        clock=clock,
    )


class TestInMemoryRateLimiter:
    """Tests for in-memory sliding window limiter."""

    def test_allows_calls_under_limit(self, limiter: InMemoryRateLimiter) -> None:
        """Calls under the quota should be allowed."""
        for _ in range(4):
            limiter.record_request("timeline", "user-1")

        check = limiter.check_rate_limit("timeline", "user-1")
        assert check.allowed is True
        assert check.retry_after_seconds is None

    def test_blocks_when_quota_used(self, limiter: InMemoryRateLimiter, clock: FakeClock) -> None:
        """The sixth call waits until the first one leaves the window."""
        for _ in range(5):
            limiter.record_request("timeline", "user-1")
            clock.advance(10)

        check = limiter.check_rate_limit("timeline", "user-1")
        assert check.allowed is False
        # First call at t0, now is t0 + 50, window 900
        assert check.retry_after_seconds == 850

    def test_window_slides(self, limiter: InMemoryRateLimiter, clock: FakeClock) -> None:
        """Calls older than the window stop counting."""
        for _ in range(5):
            limiter.record_request("timeline", "user-1")

        clock.advance(901)

        assert limiter.check_rate_limit("timeline", "user-1").allowed is True
        assert limiter.window_size("timeline", "user-1") == 0

    def test_subjects_are_isolated(self, limiter: InMemoryRateLimiter) -> None:
        """Each platform user has its own window."""
        for _ in range(5):
            limiter.record_request("timeline", "user-1")

        assert limiter.check_rate_limit("timeline", "user-1").allowed is False
        assert limiter.check_rate_limit("timeline", "user-2").allowed is True

    def test_unconfigured_endpoint_is_unlimited(self, limiter: InMemoryRateLimiter) -> None:
        for _ in range(50):
            limiter.record_request("search", "user-1")

        assert limiter.check_rate_limit("search", "user-1").allowed is True

    def test_status_reports_remaining_and_reset(
        self, limiter: InMemoryRateLimiter, clock: FakeClock
    ) -> None:
        limiter.record_request("timeline", "user-1")
        limiter.record_request("timeline", "user-1")

        status = limiter.get_status("timeline", "user-1")
        assert status.limit == 5
        assert status.remaining == 3
        assert status.reset_at is not None
        assert status.reset_at.timestamp() == pytest.approx(clock.now + 900)

    def test_clear_resets_window(self, limiter: InMemoryRateLimiter) -> None:
        for _ in range(5):
            limiter.record_request("timeline", "user-1")

        limiter.clear_rate_limit("timeline", "user-1")

        assert limiter.check_rate_limit("timeline", "user-1").allowed is True

    def test_execute_with_rate_limit_records_call(self, limiter: InMemoryRateLimiter) -> None:
        """A permitted call runs and is counted."""
        result = limiter.execute_with_rate_limit("timeline", "user-1", lambda: "posts")

        assert result == "posts"
        assert limiter.window_size("timeline", "user-1") == 1

    def test_execute_with_rate_limit_raises_when_exhausted(
        self, limiter: InMemoryRateLimiter
    ) -> None:
        """An exhausted quota raises without calling the function."""
        for _ in range(5):
            limiter.record_request("timeline", "user-1")
        fn = MagicMock()

        with pytest.raises(RateLimitError) as exc_info:
            limiter.execute_with_rate_limit("timeline", "user-1", fn)

        fn.assert_not_called()
        assert exc_info.value.retry_after == 900

    def test_execute_with_rate_limit_counts_failed_call(
        self, limiter: InMemoryRateLimiter
    ) -> None:
        """A call that raises still used up a slot upstream."""
        fn = MagicMock(side_effect=ConnectionError("reset by peer"))

        with pytest.raises(ConnectionError):
            limiter.execute_with_rate_limit("timeline", "user-1", fn)

        assert limiter.window_size("timeline", "user-1") == 1

    def test_repeated_checks_stay_blocked_as_time_passes(
        self, limiter: InMemoryRateLimiter, clock: FakeClock
    ) -> None:
        """Rapid checks after a full window stay denied and the wait only shrinks."""
        for _ in range(5):
            limiter.record_request("timeline", "user-1")

        first = limiter.check_rate_limit("timeline", "user-1")
        clock.advance(2.5)
        second = limiter.check_rate_limit("timeline", "user-1")

        assert first.allowed is False
        assert second.allowed is False
        assert first.retry_after_seconds == 900
        assert second.retry_after_seconds == 898
        assert second.retry_after_seconds <= first.retry_after_seconds
        # Checking does not consume quota
        assert limiter.window_size("timeline", "user-1") == 5


class TestComputeRetryAfter:
    """Tests for retry delay rounding."""

    def test_rounds_up(self) -> None:
        assert compute_retry_after(oldest=100.0, window_seconds=60, now=130.5) == 30

    def test_never_below_one_second(self) -> None:
        assert compute_retry_after(oldest=100.0, window_seconds=60, now=170.0) == 1


class TestRedisRateLimiter:
    """Tests for Redis rate limiter (without actual Redis)."""

    def test_fails_open_when_redis_unavailable(self) -> None:
        """Should allow calls when Redis is unavailable."""
        limiter = RedisRateLimiter(
            redis_url="redis://nonexistent:6379",
            rules={"timeline": RateLimitRule(limit=1, window_seconds=60)},
        )
        limiter._get_redis = MagicMock(return_value=None)

        assert limiter.check_rate_limit("timeline", "user-1").allowed is True

    def test_blocks_from_sorted_set_count(self) -> None:
        """Uses the oldest score in the sorted set for the retry delay."""
        pipe = MagicMock()
        pipe.execute.return_value = [0, 1, [("member", 1000.0)]]
        client = MagicMock()
        client.pipeline.return_value = pipe

        limiter = RedisRateLimiter(
            redis_url="redis://localhost:6379",
            rules={"timeline": RateLimitRule(limit=1, window_seconds=60)},
            clock=lambda: 1030.0,
        )
        limiter._get_redis = MagicMock(return_value=client)

        check = limiter.check_rate_limit("timeline", "user-1")

        assert check.allowed is False
        assert check.retry_after_seconds == 30
        pipe.zremrangebyscore.assert_called_once_with("rate_limit:timeline:user-1", 0, 970.0)

    def test_repeated_checks_stay_blocked_as_time_passes(self) -> None:
        """Two checks against a full window both deny, with a shrinking wait."""
        clock = FakeClock(now=1_000_000.0)
        oldest = [("first-call", 1_000_000.0)]
        pipe = MagicMock()
        pipe.execute.side_effect = [[0, 5, oldest], [0, 5, oldest]]
        client = MagicMock()
        client.pipeline.return_value = pipe

        limiter = RedisRateLimiter(
            redis_url="redis://localhost:6379",
            rules={"timeline": RateLimitRule(limit=5, window_seconds=900)},
            clock=clock,
        )
        limiter._get_redis = MagicMock(return_value=client)

        first = limiter.check_rate_limit("timeline", "user-1")
        clock.advance(2.5)
        second = limiter.check_rate_limit("timeline", "user-1")

        assert (first.allowed, second.allowed) == (False, False)
        assert first.retry_after_seconds == 900
        assert second.retry_after_seconds == 898
        pipe.zadd.assert_not_called()


class TestGetRateLimiter:
    """Tests for the global limiter factory."""

    def test_development_uses_in_memory_backend(self) -> None:
        reset_rate_limiter()
        try:
            limiter = get_rate_limiter()
            assert isinstance(limiter, InMemoryRateLimiter)
            assert get_rate_limiter() is limiter
        finally:
            reset_rate_limiter()

    def test_rules_come_from_settings(self, settings) -> None:
        rules = build_rules(settings)

        assert rules["timeline"].limit == 5
        assert rules["timeline"].window_seconds == 900

"""
Sliding window rate limiting for third-party API quotas.

Jobs that call quota-constrained APIs consult the limiter before each call
and record the call afterwards. Quotas are tracked per (endpoint, external
subject) pair, where the subject is the upstream platform's own account id,
since that is what the provider enforces against.

Supports both in-memory (development, tests) and Redis-based (production)
backends. The Redis backend keeps one sorted set of call timestamps per key
so every worker process shares the same window.
"""

import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from atelier.core.config import Settings, get_settings
from atelier.core.exceptions import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Extra lifetime on a tracking key beyond its window
KEY_EXPIRY_GRACE_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    """Quota for a single endpoint."""

    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitCheck:
    """
    Outcome of a rate limit check.

    Attributes:
        allowed: Whether a call may be made now
        retry_after_seconds: Seconds until the oldest call leaves the window
            (only set when not allowed)
    """

    allowed: bool
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class RateLimitStatus:
    """Current usage for an (endpoint, subject) pair."""

    limit: int | None
    remaining: int | None
    reset_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


def build_rules(settings: Settings | None = None) -> dict[str, RateLimitRule]:
    """
    Build the endpoint quota table from settings.

    Args:
        settings: Optional settings override

    Returns:
        Mapping of endpoint name to RateLimitRule
    """
    settings = settings or get_settings()
    return {
        endpoint: RateLimitRule(limit=limit, window_seconds=settings.rate_limit_window_seconds)
        for endpoint, limit in settings.rate_limit_quotas.items()
    }


def compute_retry_after(oldest: float, window_seconds: int, now: float) -> int:
    """
    Seconds until the oldest counted call falls out of the window.

    Always at least 1 so a caller never reschedules with zero delay.
    """
    return max(1, math.ceil(oldest + window_seconds - now))


class RateLimiterBackend(ABC):
    """Abstract base class for rate limiter backends."""

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        key_prefix: str = "rate_limit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = dict(rules)
        self.key_prefix = key_prefix
        self._clock = clock

    def rule_for(self, endpoint: str) -> RateLimitRule | None:
        """Return the quota for an endpoint, or None if it is unrestricted."""
        return self.rules.get(endpoint)

    def _key(self, endpoint: str, subject_id: str) -> str:
        return f"{self.key_prefix}{endpoint}:{subject_id}"

    @abstractmethod
    def check_rate_limit(self, endpoint: str, subject_id: str) -> RateLimitCheck:
        """
        Check whether a call to endpoint may be made for subject_id now.

        Args:
            endpoint: Endpoint name (must match a configured rule to be limited)
            subject_id: External platform subject identifier

        Returns:
            RateLimitCheck with allowed flag and retry delay
        """

    @abstractmethod
    def record_request(self, endpoint: str, subject_id: str) -> None:
        """Record a call made now against the (endpoint, subject) window."""

    @abstractmethod
    def get_status(self, endpoint: str, subject_id: str) -> RateLimitStatus:
        """Report limit, remaining calls and reset time for the window."""

    @abstractmethod
    def clear_rate_limit(self, endpoint: str, subject_id: str) -> None:
        """Drop all tracked calls for the (endpoint, subject) pair."""

    def execute_with_rate_limit(
        self,
        endpoint: str,
        subject_id: str,
        fn: Callable[[], T],
    ) -> T:
        """
        Run fn if the quota allows it and record the call.

        Args:
            endpoint: Endpoint name
            subject_id: External platform subject identifier
            fn: Zero-argument callable performing the API call

        Returns:
            Whatever fn returns

        Raises:
            RateLimitError: If the quota is exhausted
        """
        check = self.check_rate_limit(endpoint, subject_id)
        if not check.allowed:
            raise RateLimitError(
                message=f"Rate limit exceeded for {endpoint}",
                retry_after=check.retry_after_seconds,
            )

        try:
            return fn()
        finally:
            # A call that raised still counts against the upstream quota
            self.record_request(endpoint, subject_id)


class InMemoryRateLimiter(RateLimiterBackend):
    """
    In-memory sliding window rate limiter.

    Suitable for single-process development and tests. Not shared between
    worker processes.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        key_prefix: str = "rate_limit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(rules, key_prefix=key_prefix, clock=clock)
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _prune(self, key: str, window_seconds: int, now: float) -> list[float]:
        window_start = now - window_seconds
        requests = [ts for ts in self._requests[key] if ts > window_start]
        if requests:
            self._requests[key] = requests
        else:
            self._requests.pop(key, None)
        return requests

    def check_rate_limit(self, endpoint: str, subject_id: str) -> RateLimitCheck:
        rule = self.rule_for(endpoint)
        if rule is None:
            return RateLimitCheck(allowed=True)

        now = self._clock()
        requests = self._prune(self._key(endpoint, subject_id), rule.window_seconds, now)

        if len(requests) >= rule.limit:
            return RateLimitCheck(
                allowed=False,
                retry_after_seconds=compute_retry_after(min(requests), rule.window_seconds, now),
            )

        return RateLimitCheck(allowed=True)

    def record_request(self, endpoint: str, subject_id: str) -> None:
        self._requests[self._key(endpoint, subject_id)].append(self._clock())

    def get_status(self, endpoint: str, subject_id: str) -> RateLimitStatus:
        rule = self.rule_for(endpoint)
        if rule is None:
            return RateLimitStatus(limit=None, remaining=None, reset_at=None)

        now = self._clock()
        requests = self._prune(self._key(endpoint, subject_id), rule.window_seconds, now)
        reset_at = None
        if requests:
            reset_at = datetime.fromtimestamp(min(requests) + rule.window_seconds, tz=UTC)

        return RateLimitStatus(
            limit=rule.limit,
            remaining=max(0, rule.limit - len(requests)),
            reset_at=reset_at,
        )

    def clear_rate_limit(self, endpoint: str, subject_id: str) -> None:
        self._requests.pop(self._key(endpoint, subject_id), None)

    def window_size(self, endpoint: str, subject_id: str) -> int:
        """Number of calls currently counted, after pruning."""
        rule = self.rule_for(endpoint)
        if rule is None:
            return 0
        return len(self._prune(self._key(endpoint, subject_id), rule.window_seconds, self._clock()))


class RedisRateLimiter(RateLimiterBackend):
    """
    Redis-based sliding window rate limiter.

    Uses Redis sorted sets scored by call timestamp for distributed rate
    limiting across multiple workers. Falls back to allowing requests if
    Redis is unavailable.
    """

    def __init__(
        self,
        redis_url: str,
        rules: dict[str, RateLimitRule],
        key_prefix: str = "rate_limit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(rules, key_prefix=key_prefix, clock=clock)
        self._redis: Any = None
        self._redis_url = redis_url

    def _get_redis(self) -> Any:
        """Lazy initialization of Redis connection."""
        if self._redis is None:
            try:
                import redis
                self._redis = redis.from_url(self._redis_url, decode_responses=True)
                # Test connection
                self._redis.ping()
            except Exception as e:
                logger.warning(f"Failed to connect to Redis for rate limiting: {e}")
                self._redis = None
        return self._redis

    def check_rate_limit(self, endpoint: str, subject_id: str) -> RateLimitCheck:
        rule = self.rule_for(endpoint)
        if rule is None:
            return RateLimitCheck(allowed=True)

        redis_client = self._get_redis()
        if redis_client is None:
            # Fail open - allow the call if Redis is unavailable
            logger.warning(
                "Redis unavailable, allowing call without rate limiting",
                extra={"endpoint": endpoint, "subject_id": subject_id},
            )
            return RateLimitCheck(allowed=True)

        try:
            now = self._clock()
            key = self._key(endpoint, subject_id)

            pipe = redis_client.pipeline()
            pipe.zremrangebyscore(key, 0, now - rule.window_seconds)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            _, current_count, oldest = pipe.execute()

            if current_count >= rule.limit:
                oldest_score = float(oldest[0][1]) if oldest else now
                retry_after = compute_retry_after(oldest_score, rule.window_seconds, now)
                logger.info(
                    f"Rate limit reached for {endpoint}",
                    extra={
                        "endpoint": endpoint,
                        "subject_id": subject_id,
                        "count": current_count,
                        "limit": rule.limit,
                        "retry_after": retry_after,
                    },
                )
                return RateLimitCheck(allowed=False, retry_after_seconds=retry_after)

            return RateLimitCheck(allowed=True)

        except Exception as e:
            logger.error(f"Redis rate limiting error: {e}")
            # Fail open on errors
            return RateLimitCheck(allowed=True)

    def record_request(self, endpoint: str, subject_id: str) -> None:
        rule = self.rule_for(endpoint)
        redis_client = self._get_redis()
        if rule is None or redis_client is None:
            return

        try:
            now = self._clock()
            key = self._key(endpoint, subject_id)
            member = f"{now}_{uuid.uuid4().hex[:9]}"

            pipe = redis_client.pipeline()
            pipe.zadd(key, {member: now})
            pipe.expire(key, rule.window_seconds + KEY_EXPIRY_GRACE_SECONDS)
            pipe.execute()
        except Exception as e:
            logger.error(
                f"Failed to record rate-limited call: {e}",
                extra={"endpoint": endpoint, "subject_id": subject_id},
            )

    def get_status(self, endpoint: str, subject_id: str) -> RateLimitStatus:
        rule = self.rule_for(endpoint)
        if rule is None:
            return RateLimitStatus(limit=None, remaining=None, reset_at=None)

        redis_client = self._get_redis()
        if redis_client is None:
            return RateLimitStatus(limit=rule.limit, remaining=rule.limit, reset_at=None)

        now = self._clock()
        key = self._key(endpoint, subject_id)

        pipe = redis_client.pipeline()
        pipe.zremrangebyscore(key, 0, now - rule.window_seconds)
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        _, current_count, oldest = pipe.execute()

        reset_at = None
        if oldest:
            reset_at = datetime.fromtimestamp(float(oldest[0][1]) + rule.window_seconds, tz=UTC)

        return RateLimitStatus(
            limit=rule.limit,
            remaining=max(0, rule.limit - current_count),
            reset_at=reset_at,
        )

    def clear_rate_limit(self, endpoint: str, subject_id: str) -> None:
        redis_client = self._get_redis()
        if redis_client is not None:
            redis_client.delete(self._key(endpoint, subject_id))


# Global rate limiter instance
_rate_limiter: RateLimiterBackend | None = None


def get_rate_limiter() -> RateLimiterBackend:
    """
    Get or create the global rate limiter instance.

    Uses Redis outside development, in-memory for development.
    """
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        rules = build_rules(settings)

        if settings.is_development:
            _rate_limiter = InMemoryRateLimiter(rules=rules)
            logger.info("Using in-memory rate limiter (development mode)")
        else:
            _rate_limiter = RedisRateLimiter(redis_url=settings.redis_url, rules=rules)
            logger.info("Using Redis rate limiter")

    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the rate limiter instance (useful for testing)."""
    global _rate_limiter
    _rate_limiter = None


__all__ = [
    "RateLimitRule",
    "RateLimitCheck",
    "RateLimitStatus",
    "RateLimiterBackend",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    "build_rules",
    "compute_retry_after",
    "get_rate_limiter",
    "reset_rate_limiter",
]

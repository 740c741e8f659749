"""
Shared HTTP plumbing for the render service and the social platform.

Both peers speak JSON over bearer-token auth and shed load with 429 or 5xx
responses. SyncBaseHTTPClient retries transport failures and 5xx with capped
exponential backoff, honouring the peer's own hint when it sends one. A 429
is never waited out in-process: it surfaces at once as RateLimitError so the
caller can reschedule the job. Everything else becomes the project's
exception types. Task-level retries sit on top of this, so the in-process
budget is kept small.
"""

import logging
import math
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from atelier.core.config import Settings, get_settings
from atelier.core.exceptions import ExternalServiceError, RateLimitError

logger = logging.getLogger(__name__)

# Statuses worth another attempt inside a single job run
RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})


@dataclass
class UsageMetrics:
    """
    Running totals for one client instance.

    units_used counts whatever the peer bills on: rendered seconds for the
    render service, nothing for the social platform.
    """

    provider: str
    units_used: int = 0
    unit_type: str = "units"
    estimated_cost_usd: Decimal = field(default_factory=lambda: Decimal("0"))
    request_count: int = 0
    latency_ms: int = 0

    def add_units(self, units: int, cost_per_unit: Decimal | None = None) -> None:
        self.units_used += units
        if cost_per_unit is not None:
            self.estimated_cost_usd += Decimal(str(units)) * cost_per_unit

    def record_request(self, latency_ms: int) -> None:
        self.request_count += 1
        self.latency_ms += latency_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "units_used": self.units_used,
            "unit_type": self.unit_type,
            "estimated_cost_usd": float(self.estimated_cost_usd),
            "request_count": self.request_count,
            "latency_ms": self.latency_ms,
        }


def retry_hint_seconds(response: httpx.Response, now: float | None = None) -> float | None:
    """
    Read how long the peer asked us to wait, if it said.

    Retry-After carries seconds; the social platform instead sends
    x-rate-limit-reset as an epoch timestamp.
    """
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            return None

    reset_at = response.headers.get("x-rate-limit-reset")
    if reset_at:
        try:
            return max(float(reset_at) - (now if now is not None else time.time()), 0.0)
        except ValueError:
            return None
    return None


class SyncBaseHTTPClient(ABC):
    """
    Blocking httpx client base for Celery workers.

    Subclasses provide service_name and _get_headers(); a user-context token
    can still be passed per request through the headers argument.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        settings: Settings | None = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            base_url: Root URL the request paths are joined onto
            api_key: Bearer token used when no per-request token is given
            settings: Application settings instance
            max_retries: Attempts per call, including the first
            base_delay: First backoff delay in seconds
            max_delay: Ceiling for any single wait, including peer hints
            timeout: Default request timeout in seconds
            transport: Optional httpx transport (httpx.MockTransport in tests)
            sleep: Wait function between attempts
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._settings = settings or get_settings()
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._timeout = timeout
        self._sleep = sleep

        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            transport=transport,
        )
        self._total_usage = UsageMetrics(provider=self.service_name)

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Display name used in logs and errors."""

    @abstractmethod
    def _get_headers(self) -> dict[str, str]:
        """Headers sent with every request."""

    @property
    def total_usage(self) -> UsageMetrics:
        return self._total_usage

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SyncBaseHTTPClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _backoff(self, attempt: int, hint: float | None = None) -> float:
        """Delay before attempt number attempt + 1 (0-indexed)."""
        if hint is not None:
            return min(hint, self._max_delay)
        delay = min(self._base_delay * (2**attempt), self._max_delay)
        return delay + delay * (0.1 + 0.2 * random.random())

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """One attempt, timed and logged."""
        started = time.monotonic()
        response = self._client.request(method, path.lstrip("/"), **kwargs)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._total_usage.record_request(elapsed_ms)

        logger.info(
            f"{self.service_name} {method} {path} -> {response.status_code}",
            extra={
                "service": self.service_name,
                "status_code": response.status_code,
                "elapsed_ms": elapsed_ms,
            },
        )
        return response

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """
        Send a request, retrying transport failures and retryable statuses.

        Raises:
            RateLimitError: The peer answered 429; never retried here
            ExternalServiceError: Any other failure that outlived the retries,
                or a non-retryable 4xx on the first try
        """
        request_headers = {**self._get_headers(), **(headers or {})}
        last_error = "no attempt made"

        for attempt in range(self._max_retries):
            final = attempt == self._max_retries - 1
            try:
                response = self._send(
                    method,
                    path,
                    headers=request_headers,
                    params=params,
                    json=json_data,
                    timeout=timeout or self._timeout,
                )
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"{self.service_name} transport error on attempt {attempt + 1}",
                    extra={"service": self.service_name, "error": last_error},
                )
                if not final:
                    self._sleep(self._backoff(attempt))
                continue

            if response.status_code < 400:
                return response

            hint = retry_hint_seconds(response)
            if response.status_code == 429:
                logger.warning(
                    f"{self.service_name} returned 429",
                    extra={"service": self.service_name, "retry_after": hint},
                )
                raise RateLimitError(
                    message=f"{self.service_name} rate limit exceeded",
                    retry_after=math.ceil(hint) if hint else None,
                )

            body = response.text[:500]
            if response.status_code not in RETRYABLE_STATUSES:
                raise ExternalServiceError(
                    service=self.service_name,
                    message=f"{self.service_name} API error: {response.status_code}",
                    original_error=body,
                )

            last_error = f"{response.status_code}: {body}"
            if not final:
                delay = self._backoff(attempt, hint)
                logger.warning(
                    f"{self.service_name} returned {response.status_code}, "
                    f"retrying in {delay:.1f}s",
                    extra={"service": self.service_name, "attempt": attempt + 1},
                )
                self._sleep(delay)

        logger.error(
            f"{self.service_name} request failed after {self._max_retries} attempts",
            extra={"service": self.service_name, "error": last_error},
        )
        raise ExternalServiceError(
            service=self.service_name,
            message=f"{self.service_name} API call failed after retries",
            original_error=last_error,
        )

    def _get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return self._request("GET", path, params=params, headers=headers)

    def _post(
        self,
        path: str,
        *,
        json_data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return self._request("POST", path, json_data=json_data, headers=headers)

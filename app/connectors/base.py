"""
app/connectors/base.py

Shared HTTP mechanics for upstream calls: transport retries, error
classification, and per-endpoint call metrics.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

from app.config import ExternalHTTPSettings

logger = logging.getLogger(__name__)


class ApiErrorKind(str, enum.Enum):
    """
    Closed set of failure kinds surfaced by the client boundary.
    """

    TRANSPORT = "transport"
    APPLICATION = "application"
    CONFIGURATION = "configuration"


class ApiError(RuntimeError):
    """
    Raised when an upstream call cannot produce a usable response.
    """

    def __init__(
        self,
        kind: ApiErrorKind,
        endpoint: str,
        message: str,
        *,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(f"{kind.value} error on {endpoint}: {message}")
        self.kind = kind
        self.endpoint = endpoint
        self.message = message
        self.status_code = status_code
        self.attempts = attempts

    @property
    def is_transport(self) -> bool:
        return self.kind is ApiErrorKind.TRANSPORT


@dataclass(frozen=True)
class ApiResponse:
    """
    Decoded upstream response.
    """

    endpoint: str
    status_code: int
    data: Any
    retry_count: int = 0
    from_cache: bool = False
    duration_seconds: float = 0.0


@dataclass
class EndpointMetrics:
    """
    Counters for one endpoint, accumulated over the client's lifetime.
    """

    calls: int = 0
    cache_hits: int = 0
    retries: int = 0
    errors: int = 0
    total_duration_seconds: float = 0.0
    min_duration_seconds: float | None = None
    max_duration_seconds: float = 0.0
    last_cache_hit: bool = False

    def record(self, *, duration_seconds: float, cache_hit: bool, retries: int = 0, failed: bool = False) -> None:
        self.calls += 1
        self.retries += retries
        self.last_cache_hit = cache_hit
        if cache_hit:
            self.cache_hits += 1
            return
        if failed:
            self.errors += 1
        self.total_duration_seconds += duration_seconds
        if self.min_duration_seconds is None or duration_seconds < self.min_duration_seconds:
            self.min_duration_seconds = duration_seconds
        self.max_duration_seconds = max(self.max_duration_seconds, duration_seconds)

    @property
    def average_duration_seconds(self) -> float:
        live_calls = self.calls - self.cache_hits
        if live_calls <= 0:
            return 0.0
        return self.total_duration_seconds / live_calls

    def as_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "cache_hits": self.cache_hits,
            "retries": self.retries,
            "errors": self.errors,
            "total_duration_seconds": round(self.total_duration_seconds, 4),
            "average_duration_seconds": round(self.average_duration_seconds, 4),
            "min_duration_seconds": (
                round(self.min_duration_seconds, 4) if self.min_duration_seconds is not None else None
            ),
            "max_duration_seconds": round(self.max_duration_seconds, 4),
            "last_cache_hit": self.last_cache_hit,
        }


@dataclass
class _AttemptOutcome:
    response: requests.Response
    retry_count: int
    duration_seconds: float


class BaseApiClient:
    """
    Executes JSON requests against one upstream base URL.

    Only transport failures (timeouts, connection errors) are retried. Any
    response that arrives, whatever its status, is final.
    """

    def __init__(
        self,
        *,
        base_url: str,
        http_settings: ExternalHTTPSettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout_seconds = http_settings.timeout_seconds
        self._max_attempts = max(1, http_settings.max_attempts)
        self._backoff_initial_seconds = http_settings.backoff_initial_seconds
        self._backoff_multiplier = http_settings.backoff_multiplier
        self._backoff_max_seconds = http_settings.backoff_max_seconds
        self._user_agent = http_settings.user_agent
        self._sleep = sleep
        self._clock = clock
        self._metrics: dict[str, EndpointMetrics] = {}

    @property
    def metrics(self) -> dict[str, dict[str, Any]]:
        return {endpoint: metrics.as_dict() for endpoint, metrics in sorted(self._metrics.items())}

    def backoff_seconds(self, attempt: int) -> float:
        """
        Delay to wait after failed attempt number ``attempt`` (1-based).
        """

        delay = self._backoff_initial_seconds * (self._backoff_multiplier ** (attempt - 1))
        return min(delay, self._backoff_max_seconds)

    def _endpoint_metrics(self, endpoint: str) -> EndpointMetrics:
        return self._metrics.setdefault(endpoint, EndpointMetrics())

    def _send_json(
        self,
        *,
        endpoint: str,
        method: str,
        body: dict[str, Any] | None,
        headers: dict[str, str] | None = None,
        metric_key: str | None = None,
    ) -> ApiResponse:
        """
        Send one logical request and decode its JSON body.

        ``metric_key`` groups parameterised endpoints under one counter.
        """

        metrics = self._endpoint_metrics(metric_key or endpoint)
        started = self._clock()
        try:
            outcome = self._send_with_retries(endpoint=endpoint, method=method, body=body, headers=headers)
        except ApiError as exc:
            metrics.record(
                duration_seconds=self._clock() - started,
                cache_hit=False,
                retries=max(0, exc.attempts - 1),
                failed=True,
            )
            raise

        response = outcome.response
        if not 200 <= response.status_code < 300:
            metrics.record(
                duration_seconds=outcome.duration_seconds,
                cache_hit=False,
                retries=outcome.retry_count,
                failed=True,
            )
            logger.error(
                "Upstream request rejected endpoint=%s status=%s body=%s",
                endpoint,
                response.status_code,
                response.text[:500],
            )
            raise ApiError(
                ApiErrorKind.APPLICATION,
                endpoint,
                _extract_error_message(response),
                status_code=response.status_code,
                attempts=outcome.retry_count + 1,
            )

        try:
            data = response.json()
        except ValueError as exc:
            metrics.record(
                duration_seconds=outcome.duration_seconds,
                cache_hit=False,
                retries=outcome.retry_count,
                failed=True,
            )
            raise ApiError(
                ApiErrorKind.APPLICATION,
                endpoint,
                "response was not valid JSON.",
                status_code=response.status_code,
                attempts=outcome.retry_count + 1,
            ) from exc

        metrics.record(
            duration_seconds=outcome.duration_seconds,
            cache_hit=False,
            retries=outcome.retry_count,
        )
        return ApiResponse(
            endpoint=endpoint,
            status_code=response.status_code,
            data=data,
            retry_count=outcome.retry_count,
            duration_seconds=outcome.duration_seconds,
        )

    def _send_with_retries(
        self,
        *,
        endpoint: str,
        method: str,
        body: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> _AttemptOutcome:
        url = f"{self._base_url}{endpoint}"
        request_headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
        }
        if headers:
            request_headers.update(headers)

        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            started = self._clock()
            try:
                response = self._session.request(
                    method=method,
                    url=url,
                    json=body,
                    headers=request_headers,
                    timeout=self._timeout_seconds,
                )
                return _AttemptOutcome(
                    response=response,
                    retry_count=attempt - 1,
                    duration_seconds=self._clock() - started,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = exc

            if attempt >= self._max_attempts:
                break

            backoff_seconds = self.backoff_seconds(attempt)
            logger.warning(
                "Upstream request retry endpoint=%s attempt=%s/%s wait_seconds=%.2f error=%s",
                endpoint,
                attempt,
                self._max_attempts,
                backoff_seconds,
                last_error,
            )
            self._sleep(backoff_seconds)

        logger.error(
            "Upstream request exhausted retries endpoint=%s attempts=%s error=%s",
            endpoint,
            self._max_attempts,
            last_error,
        )
        raise ApiError(
            ApiErrorKind.TRANSPORT,
            endpoint,
            f"request failed after {self._max_attempts} attempts: {last_error}",
            attempts=self._max_attempts,
        ) from last_error


def _extract_error_message(response: requests.Response) -> str:
    """
    Pull a readable message out of an error response, whatever shape it has.
    """

    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: Any = None
    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message") or payload.get("errors")
    if isinstance(message, list):
        message = ", ".join(str(item) for item in message)
    if not message:
        message = f"request failed with status {response.status_code}"
    return str(message)

"""Transport governor: rate-limit admission plus retry/backoff.

Every outbound call of the pipeline goes through :meth:`TransportGovernor.execute`.
The governor knows nothing about payloads; it only classifies the raw
:class:`httpx.Response` (or transport failure) into the error taxonomy of
:mod:`mediasync.upload.errors` and retries what is transient.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from mediasync.models import UploadConfig
from mediasync.upload.circuit_breaker import RollingWindowCircuitBreaker
from mediasync.upload.errors import (
    RateLimitError,
    TransientTransportError,
    TransportTimeoutError,
    ValidationError,
)
from mediasync.upload.rate_limiter import AdaptiveRateLimiter, RateLimiterConfig

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[httpx.Response]]
RateLimitPredicate = Callable[[httpx.Response], bool]


def default_rate_limit_predicate(response: httpx.Response) -> bool:
    """Detect a throttling signal.

    Matches an HTTP 429, or a GraphQL envelope whose ``errors`` carry the
    ``THROTTLED`` extension code (GraphQL throttles arrive with status 200).
    """
    if response.status_code == 429:
        return True
    if response.status_code != 200:
        return False
    if "json" not in response.headers.get("content-type", ""):
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    if not isinstance(payload, dict):
        return False
    for error in payload.get("errors") or []:
        extensions = error.get("extensions") if isinstance(error, dict) else None
        if isinstance(extensions, dict) and extensions.get("code") == "THROTTLED":
            return True
    return False


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class TransportGovernor:
    """Shared admission-control and retry point for outbound calls.

    Usage::

        cb = RollingWindowCircuitBreaker()
        rl = AdaptiveRateLimiter(RateLimiterConfig(requests_per_second=2), cb)
        governor = TransportGovernor(rl, cb, max_attempts=3)
        response = await governor.execute(lambda: http.post(url, json=body))

    Args:
        rate_limiter: Shared limiter; its ceiling is global to all callers.
        circuit_breaker: Receives success / throttle / error observations.
        max_attempts: Total attempts per call, including the first.
        backoff_base: Delay before the second attempt, doubled after that.
        backoff_max: Upper bound for a single backoff delay.
        jitter: Add up to ``backoff_base`` seconds of random delay.
        default_timeout: Timeout applied when a call passes none.
        rate_limit_predicate: Decides whether a response is a throttle.
    """

    def __init__(
        self,
        rate_limiter: AdaptiveRateLimiter,
        circuit_breaker: RollingWindowCircuitBreaker,
        *,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        jitter: bool = False,
        default_timeout: float | None = None,
        rate_limit_predicate: RateLimitPredicate = default_rate_limit_predicate,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._rate_limiter = rate_limiter
        self._circuit_breaker = circuit_breaker
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.default_timeout = default_timeout
        self._is_rate_limited = rate_limit_predicate

        self._wait = wait_exponential(multiplier=backoff_base, max=backoff_max)
        if jitter:
            self._wait = self._wait + wait_random(0, backoff_base)

    @classmethod
    def from_config(
        cls,
        config: UploadConfig,
        circuit_breaker: RollingWindowCircuitBreaker | None = None,
        rate_limit_predicate: RateLimitPredicate = default_rate_limit_predicate,
    ) -> TransportGovernor:
        """Build a governor (and its limiter) from an :class:`UploadConfig`."""
        breaker = circuit_breaker or RollingWindowCircuitBreaker()
        limiter = AdaptiveRateLimiter(
            RateLimiterConfig(
                requests_per_second=config.requests_per_second,
                enabled=config.enable_rate_limiting,
            ),
            breaker,
        )
        return cls(
            limiter,
            breaker,
            max_attempts=config.max_retries,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
            jitter=config.backoff_jitter,
            default_timeout=config.timeout_seconds,
            rate_limit_predicate=rate_limit_predicate,
        )

    @property
    def circuit_breaker(self) -> RollingWindowCircuitBreaker:
        return self._circuit_breaker

    def backoff_delay(self, attempt: int) -> float:
        """Deterministic delay slept after failed attempt number *attempt*."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    async def execute(
        self,
        operation: Operation,
        *,
        idempotent: bool = True,
        timeout: float | None = None,
        description: str = "request",
    ) -> httpx.Response:
        """Run *operation* under admission control and the retry policy.

        Args:
            operation: Zero-argument coroutine factory issuing one HTTP call.
                It is invoked again for each retry.
            idempotent: Whether the call may be repeated after a timeout.
                Throttles and 5xx responses are retried either way.
            timeout: Seconds before the call is abandoned; defaults to
                ``default_timeout``.
            description: Label used in log messages.

        Returns:
            The successful (2xx/3xx) response.

        Raises:
            TransientTransportError: Retry budget exhausted (or a timeout
                on a non-idempotent call).
            ValidationError: The remote side rejected the request.
        """
        effective_timeout = timeout if timeout is not None else self.default_timeout

        def _should_retry(exc: BaseException) -> bool:
            if not isinstance(exc, TransientTransportError):
                return False
            if isinstance(exc, TransportTimeoutError) and not idempotent:
                return False
            return True

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                exc,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._compute_wait,
            retry=retry_if_exception(_should_retry),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await self._attempt(operation, effective_timeout, description)

        raise AssertionError("unreachable")  # pragma: no cover

    def _compute_wait(self, retry_state: RetryCallState) -> float:
        delay = self._wait(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            delay = max(delay, min(exc.retry_after, self.backoff_max))
        return delay

    async def _attempt(
        self,
        operation: Operation,
        timeout: float | None,
        description: str,
    ) -> httpx.Response:
        await self._rate_limiter.acquire()

        try:
            if timeout is not None:
                response = await asyncio.wait_for(operation(), timeout)
            else:
                response = await operation()
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._circuit_breaker.record_error()
            raise TransportTimeoutError(
                f"{description} timed out after {timeout}s"
            ) from exc
        except httpx.TransportError as exc:
            self._circuit_breaker.record_error()
            raise TransientTransportError(f"{description} failed: {exc}") from exc

        self._rate_limiter.observe_headers(response.headers)

        if self._is_rate_limited(response):
            self._circuit_breaker.record_rate_limited()
            raise RateLimitError(
                f"{description} was rate limited (HTTP {response.status_code})",
                status_code=response.status_code,
                retry_after=_retry_after(response),
            )

        status = response.status_code
        if status >= 500:
            self._circuit_breaker.record_error()
            raise TransientTransportError(
                f"{description} got server error HTTP {status}", status_code=status
            )
        if status >= 400:
            self._circuit_breaker.record_error()
            raise ValidationError(
                f"{description} rejected with HTTP {status}",
                status_code=status,
                body=response.text,
            )

        self._circuit_breaker.record_success()
        return response

"""Outbound admission control for catalog API calls.

One :class:`AdaptiveRateLimiter` is shared by every caller of the transport
governor so the requests-per-second ceiling is global.  Callers over the
ceiling wait for the next free slot instead of being rejected.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from mediasync.upload.circuit_breaker import CircuitState, RollingWindowCircuitBreaker

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """Admission ceiling.

    Attributes:
        requests_per_second: Maximum sustained request rate.
        enabled: When ``False`` the limiter admits every call immediately.
        call_limit_high_water: Fraction of the REST call-limit bucket in use
            at which admission slows to half rate.
    """

    requests_per_second: float = 2.0
    enabled: bool = True
    call_limit_high_water: float = 0.8

    def __post_init__(self) -> None:
        if self.requests_per_second <= 0:
            raise ValueError(
                f"requests_per_second must be positive, got {self.requests_per_second!r}"
            )

    @property
    def min_request_interval(self) -> float:
        """Minimum seconds between consecutive admissions."""
        return 1.0 / self.requests_per_second


class AdaptiveRateLimiter:
    """Hands out evenly spaced request slots.

    The interval between slots stretches with the circuit breaker:

    * **CLOSED** -- base ``min_request_interval``.
    * **OPEN** -- 3x the base interval.
    * **HALF_OPEN** -- 1.5x the base interval.

    It doubles again while the last observed REST call-limit header shows
    the bucket at or above ``call_limit_high_water``.

    Slot reservation is the only shared state; it is updated under an
    :class:`asyncio.Lock` that is released before the caller sleeps.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        circuit_breaker: RollingWindowCircuitBreaker,
    ) -> None:
        self._config = config
        self._circuit_breaker = circuit_breaker
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self._observed_call_limit: tuple[int, int] | None = None

    def current_interval(self) -> float:
        interval = self._config.min_request_interval
        state = self._circuit_breaker.state
        if state == CircuitState.OPEN:
            interval *= 3.0
        elif state == CircuitState.HALF_OPEN:
            interval *= 1.5
        if self._bucket_nearly_full():
            interval *= 2.0
        return interval

    def _bucket_nearly_full(self) -> bool:
        if self._observed_call_limit is None:
            return False
        used, bucket = self._observed_call_limit
        return bucket > 0 and used / bucket >= self._config.call_limit_high_water

    async def acquire(self) -> float:
        """Wait for an admission slot.

        Returns:
            Seconds spent waiting.
        """
        if not self._config.enabled:
            return 0.0

        async with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.current_interval()

        delay = slot - now
        if delay > 0:
            logger.debug(
                "Rate limiter: waiting %.2fs (state=%s)",
                delay,
                self._circuit_breaker.state.value,
            )
            await asyncio.sleep(delay)
        return delay

    def observe_headers(self, headers: dict[str, str] | None) -> None:
        """Record the REST call-limit header.

        The header has the form ``"used/bucket"``, e.g. ``"32/40"``.  A
        nearly full bucket stretches later admissions.
        """
        if not headers:
            return
        raw = headers.get("x-shopify-shop-api-call-limit")
        if raw is None:
            return
        try:
            used, bucket = (int(part) for part in raw.split("/", 1))
        except ValueError:
            logger.debug("Unparseable call-limit header: %r", raw)
            return
        self._observed_call_limit = (used, bucket)
        logger.debug("Observed call limit %d/%d", used, bucket)

    @property
    def observed_call_limit(self) -> tuple[int, int] | None:
        """Last observed ``(used, bucket)`` pair, or ``None``."""
        return self._observed_call_limit

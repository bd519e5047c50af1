"""Rolling-window tracker for remote rate-limit signals.

Watches the share of throttled responses over the most recent calls and
moves through CLOSED -> OPEN -> HALF_OPEN.  The rate limiter reads the
state to stretch its admission interval, and the batch coordinator reads
it to narrow per-chunk parallelism while the catalog is pushing back.
"""

from __future__ import annotations

import collections
import logging
import time
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RollingWindowCircuitBreaker:
    """Trips when throttling becomes frequent.

    The breaker opens when more than *error_threshold* of the last
    *window_size* calls were throttled, or after *consecutive_threshold*
    throttled calls in a row.  After *cooldown_seconds* it becomes
    HALF_OPEN; the next success closes it, the next throttle reopens it.
    """

    def __init__(
        self,
        window_size: int = 50,
        error_threshold: float = 0.2,
        consecutive_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        recovery_increment: int = 5,
    ) -> None:
        self._window: collections.deque[bool] = collections.deque(maxlen=window_size)
        self._error_threshold = error_threshold
        self._consecutive_threshold = consecutive_threshold
        self._cooldown_seconds = cooldown_seconds
        self._recovery_increment = recovery_increment

        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._consecutive_throttles = 0
        self._success_since_recovery = 0

    def record_success(self) -> None:
        """Record a call that was not throttled."""
        self._window.append(True)
        self._consecutive_throttles = 0
        self._success_since_recovery += 1

        if self.state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker HALF_OPEN -> CLOSED after a successful trial call")
            self._state = CircuitState.CLOSED
            self._window.clear()
            self._success_since_recovery = 0

    def record_rate_limited(self) -> None:
        """Record a throttled call."""
        self._window.append(False)
        self._consecutive_throttles += 1

        if self._state == CircuitState.HALF_OPEN or self._should_trip():
            self._trip()

    def record_error(self) -> None:
        """Record a failure that was not a rate-limit signal."""
        self._consecutive_throttles = 0

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN -> HALF_OPEN once the cooldown ends."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = time.monotonic() - self._opened_at
            if elapsed >= self._cooldown_seconds:
                logger.info(
                    "Circuit breaker OPEN -> HALF_OPEN after %.1fs cooldown", elapsed
                )
                self._state = CircuitState.HALF_OPEN
                self._success_since_recovery = 0
        return self._state

    @property
    def error_rate(self) -> float:
        """Share of throttled calls in the current window."""
        if not self._window:
            return 0.0
        return sum(1 for ok in self._window if not ok) / len(self._window)

    def get_recommended_concurrency(self, max_concurrency: int) -> int:
        """Parallelism to use for the next chunk.

        Full while CLOSED, halved (minimum 1) while OPEN, and ramping back
        by one every *recovery_increment* successes while HALF_OPEN.
        """
        current = self.state
        if current == CircuitState.CLOSED:
            return max_concurrency

        base = max(1, max_concurrency // 2)
        if current == CircuitState.OPEN:
            return base

        bonus = self._success_since_recovery // self._recovery_increment
        return min(base + bonus, max_concurrency)

    def _should_trip(self) -> bool:
        return (
            self.error_rate > self._error_threshold
            or self._consecutive_throttles >= self._consecutive_threshold
        )

    def _trip(self) -> None:
        prev = self._state
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._success_since_recovery = 0
        logger.warning(
            "Circuit breaker %s -> OPEN (throttle_rate=%.2f, consecutive=%d)",
            prev.value,
            self.error_rate,
            self._consecutive_throttles,
        )

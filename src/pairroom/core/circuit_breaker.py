"""Circuit breaker guarding the polling fallback."""

from __future__ import annotations

import time
from collections.abc import Callable


class CircuitBreaker:
    """Consecutive-failure breaker (closed → open → half-open → closed).

    * **Closed**: polls run normally.
    * **Open**: after *failure_threshold* consecutive failures polls are
      skipped and the connection is considered lost.
    * **Half-open**: once *recovery_timeout* seconds have passed one probe
      poll is allowed; its outcome closes or re-opens the breaker.

    State changes happen without an ``await`` between check and set, so a
    single event loop needs no extra locking.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._failure_count = 0
        self._opened_at: float | None = None
        self._half_open_probe_sent = False

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_closed(self) -> bool:
        return self._opened_at is None

    @property
    def is_open(self) -> bool:
        """True while the breaker is tripped and not yet probing."""
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self._recovery_timeout

    @property
    def is_half_open(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at >= self._recovery_timeout

    def allow_request(self) -> bool:
        """Return True if a poll should be attempted now."""
        if self.is_closed:
            return True
        if self.is_half_open and not self._half_open_probe_sent:
            self._half_open_probe_sent = True
            return True
        return False

    def record_success(self) -> bool:
        """Record a successful poll. Returns True if the breaker was tripped."""
        was_open = self._opened_at is not None
        self.reset()
        return was_open

    def record_failure(self) -> bool:
        """Record a failed poll. Returns True if this failure trips the breaker."""
        self._failure_count += 1
        if self._opened_at is not None:
            # Failed probe: start a new recovery period.
            self._opened_at = self._clock()
            self._half_open_probe_sent = False
            return False
        if self._failure_count >= self._failure_threshold:
            self._opened_at = self._clock()
            self._half_open_probe_sent = False
            return True
        return False

    def reset(self) -> None:
        """Manually close the breaker."""
        self._failure_count = 0
        self._opened_at = None
        self._half_open_probe_sent = False

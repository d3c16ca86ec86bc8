"""Circuit breaker for face analyzer calls.

States:
  CLOSED     - normal operation, calls pass through.
  OPEN       - too many consecutive failures, calls rejected fast.
  HALF_OPEN  - recovery trial: allow one call through to test health.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Optional, Tuple, Type, TypeVar

from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised when a call is rejected because the circuit is OPEN."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. "
            f"Retry after {retry_after:.1f}s."
        )


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Args:
        name:              Label used in errors and logs (e.g. 'analyzer').
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout:  Seconds to wait in OPEN state before probing.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._effective_state()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def check(self) -> None:
        """Raise CircuitOpenError unless a call may go through now.

        After the recovery timeout the breaker lets exactly one trial call
        through; other callers are rejected until the trial reports back.
        """
        with self._lock:
            st = self._effective_state()
            if st == CircuitState.OPEN or (st == CircuitState.HALF_OPEN and self._trial_in_flight):
                elapsed = time.monotonic() - (self._last_failure_time or 0)
                raise CircuitOpenError(self.name, max(0.0, self.recovery_timeout - elapsed))
            if st == CircuitState.HALF_OPEN:
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit '{self.name}' closed after successful trial call")
            self._failure_count = 0
            self._trial_in_flight = False
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            was_trial = self._trial_in_flight
            self._trial_in_flight = False
            if self._failure_count >= self.failure_threshold or was_trial:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit '{self.name}' opened after "
                        f"{self._failure_count} consecutive failure(s)"
                    )
                self._state = CircuitState.OPEN

    def call(
        self,
        fn: Callable[..., T],
        *args,
        ignore: Tuple[Type[BaseException], ...] = (),
        **kwargs,
    ) -> T:
        """
        Run ``fn(*args, **kwargs)`` through the breaker.

        Exceptions listed in *ignore* propagate without counting as a
        failure (e.g. a caller's bad input is not an outage).
        """
        self.check()
        try:
            result = fn(*args, **kwargs)
        except ignore:
            self.record_success()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False

    def _effective_state(self) -> CircuitState:
        """Current state, moving OPEN → HALF_OPEN once the timeout elapsed."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = time.monotonic() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

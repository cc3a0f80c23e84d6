"""Consecutive-failure circuit breaker.

Guards a single long-lived operation, such as one event stream, against a
peer that keeps producing garbage. Unlike a time-based breaker there is no
recovery window: once open, the guarded operation is aborted.

State Machine:
    CLOSED → consecutive failures reach threshold → OPEN
    CLOSED → success → CLOSED (counter reset)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class State(IntEnum):
    """Circuit breaker states."""
    CLOSED, OPEN = 0, 1  # Normal → Aborted


@dataclass(slots=True)
class CircuitBreaker:
    """Counts consecutive failures and trips at a threshold.

    Args:
        failure_threshold: Consecutive failures before opening (default: 10)

    Example:
        >>> breaker = CircuitBreaker(failure_threshold=3)
        >>> for event in events:
        ...     if parsed := parse(event):
        ...         breaker.record_success()
        ...     elif breaker.record_failure():
        ...         break  # tripped
    """

    failure_threshold: int = 10
    _failures: int = 0
    _state: State = State.CLOSED

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")

    def record_success(self) -> None:
        """Reset the consecutive failure count."""
        if self._state == State.CLOSED:
            self._failures = 0

    def record_failure(self) -> bool:
        """Count a failure. Returns True once the breaker is open."""
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._state = State.OPEN
        return self._state == State.OPEN

    # ─────────────────────────────────────────────────────────────────
    # Observability Properties
    # ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> State:
        return self._state

    @property
    def failures(self) -> int:
        """Current consecutive failure count."""
        return self._failures

    @property
    def is_open(self) -> bool:
        return self._state == State.OPEN

"""Per-tool circuit breaker.

State machine::

    CLOSED    --[failure_count >= failure_threshold]-->  OPEN
    OPEN      --[recovery_timeout elapsed, next call]--> HALF_OPEN
    HALF_OPEN --[success_count >= success_threshold]-->  CLOSED
    HALF_OPEN --[any failure]-->                         OPEN

One breaker exists per registered tool and is shared by every concurrent
turn that calls the tool.  All reads and writes of the state happen inside
``self._lock`` and never across an ``await``, so exactly one caller performs
the OPEN → HALF_OPEN transition.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from chat_agent.config import (
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
    CIRCUIT_SUCCESS_THRESHOLD,
)
from chat_agent.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    trip_count: int = 0


class CircuitBreaker:
    """Fail fast for a tool that keeps failing."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout: float = CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
        success_threshold: int = CIRCUIT_SUCCESS_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        ignore: tuple[type[Exception], ...] = (),
    ) -> None:
        self.name = name
        self.ignore = ignore
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()

    # ── Introspection ────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state.state

    def snapshot(self) -> CircuitBreakerState:
        """Return a copy of the current state."""
        with self._lock:
            return replace(self._state)

    # ── Gate and accounting ──────────────────────────────────────────

    def before_call(self) -> None:
        """Reject the call if the circuit is open and still cooling down.

        Raises ``CircuitOpenError`` without touching the underlying tool.
        The first call after ``recovery_timeout`` moves the breaker to
        HALF_OPEN and is let through.
        """
        with self._lock:
            if self._state.state is not CircuitState.OPEN:
                return
            elapsed = self._clock() - (self._state.last_failure_time or 0.0)
            if elapsed < self.recovery_timeout:
                raise CircuitOpenError(self.name, self.recovery_timeout - elapsed)
            self._state.state = CircuitState.HALF_OPEN
            self._state.success_count = 0
        logger.info("Circuit %s: OPEN → HALF_OPEN after %.1fs", self.name, elapsed)

    def record_success(self) -> None:
        with self._lock:
            if self._state.state is CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count < self.success_threshold:
                    return
                self._state.state = CircuitState.CLOSED
                self._state.failure_count = 0
                self._state.success_count = 0
                closed = True
            else:
                self._state.failure_count = 0
                closed = False
        if closed:
            logger.info("Circuit %s: HALF_OPEN → CLOSED", self.name)

    def record_failure(self) -> None:
        with self._lock:
            self._state.last_failure_time = self._clock()
            previous = self._state.state
            if previous is CircuitState.HALF_OPEN:
                self._state.state = CircuitState.OPEN
                self._state.success_count = 0
                self._state.trip_count += 1
            elif previous is CircuitState.CLOSED:
                self._state.failure_count += 1
                if self._state.failure_count < self.failure_threshold:
                    return
                self._state.state = CircuitState.OPEN
                self._state.trip_count += 1
            else:
                return
            failures = self._state.failure_count
        logger.warning(
            "Circuit %s: %s → OPEN (failures=%d)", self.name, previous.name, failures,
        )

    def reset(self) -> None:
        """Force the breaker back to CLOSED with all counters cleared."""
        with self._lock:
            self._state = CircuitBreakerState()

    # ── Decorator ────────────────────────────────────────────────────

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run ``func`` behind the breaker.

        Any ``Exception`` counts as a failure and is re-raised, except those
        listed in ``ignore`` (bad input, not an unhealthy tool), which pass
        through uncounted.  Cancellation is neither counted nor caught.
        """
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except self.ignore:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

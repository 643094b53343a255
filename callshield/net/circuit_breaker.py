"""
Three-state circuit breaker for the remote reputation service.

States:
    CLOSED    normal operation; outcomes tracked in a sliding window
    OPEN      calls fail immediately with `CircuitOpenError`
    HALF_OPEN a single probe call is let through

The breaker opens once the window holds `window_size` outcomes and the failure
fraction exceeds `failure_threshold`. OPEN becomes HALF_OPEN lazily, on the
first call attempted `reopen_after_seconds` after opening.

State transitions are serialized by one `asyncio.Lock`; the guarded operation
runs outside the lock.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of invoking the operation while the circuit is open."""

    def __init__(self) -> None:
        super().__init__("Circuit breaker is OPEN; remote calls suppressed")


class CircuitBreaker:
    def __init__(
        self,
        *,
        window_size: int = 10,
        failure_threshold: float = 0.5,
        reopen_after_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "reputation",
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be > 0")
        self._window_size = window_size
        self._failure_threshold = failure_threshold
        self._reopen_after = reopen_after_seconds
        self._clock = clock
        self._name = name

        self._lock = asyncio.Lock()
        self._outcomes: deque[bool] = deque(maxlen=window_size)
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def outcomes(self) -> list[bool]:
        """Snapshot of the outcome window (True = success)."""

        return list(self._outcomes)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` through the breaker.

        Raises:
            CircuitOpenError: when OPEN, or when a HALF_OPEN probe is already running.
        """

        async with self._lock:
            admitted = self._admit()
        if not admitted:
            raise CircuitOpenError()

        try:
            result = await operation()
        except asyncio.CancelledError:
            # Abandoned by the caller's deadline; not evidence about the remote.
            async with self._lock:
                self._probe_in_flight = False
            raise
        except Exception:
            async with self._lock:
                self._record(success=False)
            raise

        async with self._lock:
            self._record(success=True)
        return result

    def _admit(self) -> bool:
        if self._state is CircuitState.OPEN:
            if self._clock() - self._opened_at < self._reopen_after:
                return False
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
        return True

    def _record(self, *, success: bool) -> None:
        self._outcomes.append(success)

        if self._state is CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            if success:
                self._outcomes.clear()
                self._transition(CircuitState.CLOSED)
            else:
                self._open()
            return

        if self._state is CircuitState.CLOSED and len(self._outcomes) >= self._window_size:
            failures = sum(1 for ok in self._outcomes if not ok)
            if failures / len(self._outcomes) > self._failure_threshold:
                self._open()

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is not self._state:
            logger.info("circuit %s: %s -> %s", self._name, self._state.value, new_state.value)
        self._state = new_state

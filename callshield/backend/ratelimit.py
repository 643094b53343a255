"""
In-process sliding-window rate limiter.

Counts are per process; several backend instances each enforce their own
window. That is enough to blunt scripted abuse.

Keys whose hits have all aged out of the longest window in use are dropped
by a sweep that runs at most once per that window.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from callshield.backend.errors import RateLimitError

HOUR_SECONDS = 3600.0


class SlidingWindowRateLimiter:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._max_window = 0.0
        self._last_sweep = clock()

    def __len__(self) -> int:
        """Number of keys currently tracked."""

        with self._lock:
            return len(self._hits)

    def allow(self, key: str, limit: int, window_seconds: float = HOUR_SECONDS) -> bool:
        """Record a hit for `key` and return False if it exceeds `limit` in the window."""

        now = self._clock()
        cutoff = now - window_seconds
        with self._lock:
            self._max_window = max(self._max_window, window_seconds)
            if now - self._last_sweep >= self._max_window:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True

    def check(self, key: str, limit: int, window_seconds: float = HOUR_SECONDS) -> None:
        if not self.allow(key, limit, window_seconds):
            raise RateLimitError()

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = self._clock()

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.
        cutoff = now - self._max_window
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]
        self._last_sweep = now

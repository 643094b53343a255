"""
Behavioral signals derived from the local per-caller event log.

No network is involved; everything comes from `caller_events`.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable

from callshield.storage.device import CallerEventRepository

FREQUENCY_WINDOW_SECONDS = 60 * 60
FREQUENCY_THRESHOLD = 3

BURST_WINDOW_SECONDS = 15 * 60
BURST_THRESHOLD = 5

SHORT_RING_WINDOW_SECONDS = 24 * 60 * 60
SHORT_RING_MIN_COUNT = 2

SHORT_RING_MAX_SECONDS = 8.0


@dataclass(frozen=True, slots=True)
class BehavioralSignals:
    frequency_anomaly: bool
    burst_pattern: bool
    short_ring: bool

    @property
    def has_any_signal(self) -> bool:
        return self.frequency_anomaly or self.burst_pattern or self.short_ring

    @property
    def category(self) -> str:
        if self.burst_pattern:
            return "burst_pattern"
        if self.frequency_anomaly:
            return "frequency_anomaly"
        if self.short_ring:
            return "short_ring"
        return "behavioral"

    @property
    def confidence_score(self) -> float:
        return 0.5 if self.burst_pattern else 0.3


NO_SIGNALS = BehavioralSignals(frequency_anomaly=False, burst_pattern=False, short_ring=False)


class BehavioralAnalyzer:
    def __init__(
        self, events: CallerEventRepository, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._events = events
        self._clock = clock

    def analyze(self, number_hash: str) -> BehavioralSignals:
        now = self._clock()
        hourly = self._events.count_since(
            number_hash, now - FREQUENCY_WINDOW_SECONDS, event_type="incoming_call"
        )
        burst = self._events.count_since(
            number_hash, now - BURST_WINDOW_SECONDS, event_type="incoming_call"
        )
        short_rings = self._events.count_since(
            number_hash, now - SHORT_RING_WINDOW_SECONDS, event_type="short_ring"
        )
        return BehavioralSignals(
            frequency_anomaly=hourly >= FREQUENCY_THRESHOLD,
            burst_pattern=burst >= BURST_THRESHOLD,
            short_ring=short_rings >= SHORT_RING_MIN_COUNT,
        )

    async def analyze_async(self, number_hash: str) -> BehavioralSignals:
        return await asyncio.to_thread(self.analyze, number_hash)


class RingTimeRegistry:
    """
    Tracks when the active call started ringing.

    `on_ring_start` is called when a call arrives; `on_call_ended` when the line
    goes idle. A ring shorter than `SHORT_RING_MAX_SECONDS` is recorded as a
    `short_ring` event for the caller.
    """

    def __init__(
        self, events: CallerEventRepository, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._events = events
        self._clock = clock
        self._lock = threading.Lock()
        self._active: tuple[str, float] | None = None

    def on_ring_start(self, number_hash: str) -> None:
        with self._lock:
            self._active = (number_hash, self._clock())

    def on_call_ended(self) -> tuple[str, bool] | None:
        with self._lock:
            ring, self._active = self._active, None
        if ring is None:
            return None
        number_hash, started = ring
        now = self._clock()
        is_short = now - started < SHORT_RING_MAX_SECONDS
        if is_short:
            self._events.record(number_hash, "short_ring", occurred_at=now)
        return number_hash, is_short

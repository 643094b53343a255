from __future__ import annotations

from pathlib import Path

from callshield.screening.behavioral import BehavioralAnalyzer, RingTimeRegistry
from callshield.storage.device import CallerEventRepository, DeviceDatabase

H = "c" * 64
NOW = 1_700_000_000.0


def _events(tmp_path: Path) -> CallerEventRepository:
    return CallerEventRepository(DeviceDatabase(tmp_path / "device.sqlite3"))


def test_no_history_no_signal(tmp_path: Path) -> None:
    analyzer = BehavioralAnalyzer(_events(tmp_path), clock=lambda: NOW)
    signals = analyzer.analyze(H)
    assert not signals.has_any_signal


def test_frequency_anomaly_after_three_calls_in_an_hour(tmp_path: Path) -> None:
    events = _events(tmp_path)
    for minutes in (10, 30, 50):
        events.record(H, "incoming_call", occurred_at=NOW - minutes * 60)
    signals = BehavioralAnalyzer(events, clock=lambda: NOW).analyze(H)
    assert signals.frequency_anomaly
    assert not signals.burst_pattern
    assert signals.category == "frequency_anomaly"
    assert signals.confidence_score == 0.3


def test_burst_pattern_after_five_calls_in_fifteen_minutes(tmp_path: Path) -> None:
    events = _events(tmp_path)
    for minutes in range(5):
        events.record(H, "incoming_call", occurred_at=NOW - minutes * 60)
    signals = BehavioralAnalyzer(events, clock=lambda: NOW).analyze(H)
    assert signals.burst_pattern
    assert signals.category == "burst_pattern"
    assert signals.confidence_score == 0.5


def test_old_calls_do_not_count(tmp_path: Path) -> None:
    events = _events(tmp_path)
    for hours in (2, 3, 4, 5):
        events.record(H, "incoming_call", occurred_at=NOW - hours * 3600)
    assert not BehavioralAnalyzer(events, clock=lambda: NOW).analyze(H).has_any_signal


def test_ring_registry_records_short_rings(tmp_path: Path) -> None:
    events = _events(tmp_path)
    now = [NOW]
    registry = RingTimeRegistry(events, clock=lambda: now[0])

    registry.on_ring_start(H)
    now[0] += 3
    assert registry.on_call_ended() == (H, True)

    registry.on_ring_start(H)
    now[0] += 20
    assert registry.on_call_ended() == (H, False)

    assert registry.on_call_ended() is None
    assert events.count_since(H, 0, event_type="short_ring") == 1

    registry.on_ring_start(H)
    now[0] += 1
    registry.on_call_ended()
    signals = BehavioralAnalyzer(events, clock=lambda: now[0]).analyze(H)
    assert signals.short_ring
    assert signals.category == "short_ring"

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from callshield.reputation.score import compute_confidence

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_full_reporters_recent_report_is_one() -> None:
    assert compute_confidence(10, 0, NOW, now=NOW) == 1.0


def test_no_reporters_or_no_timestamp_is_zero() -> None:
    assert compute_confidence(0, 0, NOW, now=NOW) == 0.0
    assert compute_confidence(5, 0, None, now=NOW) == 0.0


def test_recency_decays_to_zero_after_90_days() -> None:
    assert compute_confidence(5, 0, NOW - timedelta(days=90), now=NOW) == 0.0
    half = compute_confidence(10, 0, NOW - timedelta(days=45), now=NOW)
    assert abs(half - 0.5) < 1e-9


def test_damping_kicks_in_at_five_negative_signals() -> None:
    base = compute_confidence(5, 0, NOW, now=NOW)
    assert compute_confidence(5, 4, NOW, now=NOW) == base
    damped = compute_confidence(5, 6, NOW, now=NOW)
    assert damped < base
    assert abs(damped - base * (1 - 6 / 20)) < 1e-9


def test_score_never_exceeds_bounds() -> None:
    assert compute_confidence(50, 0, NOW, now=NOW) == 1.0
    assert compute_confidence(5, 40, NOW, now=NOW) == 0.0

"""
Confidence scoring.

The score is a transparent function of three inputs so that the ingestion
path and every re-derivation path (corrections, reviews) agree exactly:

    base_score    = min(unique_reporters / 10, 1.0)
    recency_decay = max(0, 1 - days_since_last_report / 90)
    raw_score     = base_score * recency_decay

When `negative_signals >= 5` the raw score is damped by
`max(0, 1 - negative_signals / 20)`.
"""

from __future__ import annotations

from datetime import datetime, timezone

FULL_SCORE_REPORTERS = 10
DECAY_DAYS = 90.0
DAMPING_MIN_SIGNALS = 5
DAMPING_SPAN = 20.0

# Thresholds shared by the device pipeline and the backend.
CONFIDENCE_BLOCK_THRESHOLD = 0.8
LIKELY_SPAM_THRESHOLD = 0.6
CONFIDENCE_FLAG_THRESHOLD = 0.4
MIN_REPORTERS_TO_ACT = 3

_SECONDS_PER_DAY = 86400.0


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def compute_confidence(
    unique_reporters: int,
    negative_signals: int,
    last_reported_at: datetime | None,
    *,
    now: datetime | None = None,
) -> float:
    """
    Compute the [0, 1] confidence score for a number.

    Args:
        unique_reporters: Distinct devices that have reported the number.
        negative_signals: "Not spam" corrections received.
        last_reported_at: Timestamp of the most recent report (timezone-aware).
        now: Reference time; defaults to the current UTC time.
    """

    if unique_reporters <= 0 or last_reported_at is None:
        return 0.0

    if now is None:
        now = datetime.now(tz=timezone.utc)

    base_score = min(unique_reporters / FULL_SCORE_REPORTERS, 1.0)
    days_since = (now - last_reported_at).total_seconds() / _SECONDS_PER_DAY
    recency_decay = max(0.0, 1.0 - days_since / DECAY_DAYS)
    raw_score = base_score * recency_decay

    if negative_signals >= DAMPING_MIN_SIGNALS:
        damping_factor = max(0.0, 1.0 - negative_signals / DAMPING_SPAN)
        raw_score *= damping_factor

    return _clamp(raw_score, 0.0, 1.0)

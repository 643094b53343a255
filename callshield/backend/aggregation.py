"""
Reputation aggregation: lookups, spam reports and "not spam" corrections.

Each mutating operation validates and rate-limits first, then runs as one
`BEGIN IMMEDIATE` transaction:

- reporter deduplication via `INSERT OR IGNORE` on (number, device),
- per-category vote counters incremented with an upsert,
- the dominant category only flips when the leader is ahead by >= 3 votes,
- >= 5 reports in the last hour quarantines the number for 48 hours; while a
  quarantine is unreviewed and unexpired the stored score is capped at 0.75.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable

from callshield.backend.errors import BadRequestError, NotFoundError
from callshield.backend.ratelimit import SlidingWindowRateLimiter
from callshield.backend.store import BackendStore
from callshield.backend.validation import (
    require_fields,
    require_hex64,
    require_text,
    to_datetime,
)
from callshield.logging_config import short_hash
from callshield.reputation.score import compute_confidence

logger = logging.getLogger(__name__)

VALID_CATEGORIES: tuple[str, ...] = (
    "telemarketing",
    "loan_scam",
    "investment_scam",
    "impersonation",
    "phishing",
    "job_scam",
    "other",
)

REPORTS_PER_HOUR = 20
CORRECTIONS_PER_HOUR = 10
LOOKUPS_PER_HOUR = 60

CATEGORY_LEAD_TO_FLIP = 3

QUARANTINE_WINDOW_SECONDS = 60 * 60
QUARANTINE_REPORT_THRESHOLD = 5
QUARANTINE_DURATION_SECONDS = 48 * 60 * 60
QUARANTINE_SCORE_CAP = 0.75


@dataclass(frozen=True, slots=True)
class ReportOutcome:
    confidence_score: float
    unique_reporters: int
    quarantined: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "confidence_score": self.confidence_score,
            "unique_reporters": self.unique_reporters,
            "quarantined": self.quarantined,
        }


def resolve_category(
    previous: str | None, votes: list[tuple[str, int]]
) -> str | None:
    """
    Pick the category to store given the vote tally (sorted by votes desc).

    The leader replaces `previous` only with a lead of at least 3 over the
    runner-up. A number without a recorded category takes the leader directly.
    """

    if not votes:
        return previous
    top_category, top_votes = votes[0]
    runner_up = votes[1][1] if len(votes) > 1 else 0
    if previous is None:
        return top_category
    if top_votes - runner_up >= CATEGORY_LEAD_TO_FLIP:
        return top_category
    return previous


def _quarantine_active(conn: sqlite3.Connection, number_hash: str, now: float) -> bool:
    row = conn.execute(
        "SELECT 1 FROM quarantine WHERE number_hash = ? AND reviewed = 0 AND expires_at > ?",
        (number_hash, now),
    ).fetchone()
    return row is not None


def _score_for(row: sqlite3.Row, now: float) -> float:
    last = row["last_reported_at"]
    return compute_confidence(
        int(row["unique_reporters"]),
        int(row["negative_signals"]),
        to_datetime(last) if last is not None else None,
        now=to_datetime(now),
    )


class ReputationAggregationService:
    def __init__(
        self,
        store: BackendStore,
        *,
        limiter: SlidingWindowRateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._clock = clock
        self._limiter = limiter or SlidingWindowRateLimiter(clock=clock)

    def get_reputation(self, number_hash: str | None, device_token_hash: str | None) -> dict[str, Any]:
        require_fields({"hash": number_hash, "device_token": device_token_hash})
        number_hash = require_hex64(number_hash)
        device_token_hash = require_hex64(device_token_hash)
        self._limiter.check(f"reputation:{device_token_hash}", LOOKUPS_PER_HOUR)

        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT confidence_score, category, report_count, unique_reporters "
                "FROM reputation WHERE number_hash = ?",
                (number_hash,),
            ).fetchone()
        if row is None:
            return {"confidence_score": 0, "category": None, "report_count": 0, "unique_reporters": 0}
        return {
            "confidence_score": float(row["confidence_score"]),
            "category": row["category"],
            "report_count": int(row["report_count"]),
            "unique_reporters": int(row["unique_reporters"]),
        }

    def submit_report(
        self, number_hash: str | None, device_token_hash: str | None, category: str | None
    ) -> ReportOutcome:
        require_fields(
            {"number_hash": number_hash, "device_token_hash": device_token_hash, "category": category}
        )
        number_hash = require_hex64(number_hash)
        device_token_hash = require_hex64(device_token_hash)
        category = require_text(category, field="category")
        if category not in VALID_CATEGORIES:
            raise BadRequestError(
                f"Invalid category. Must be one of: {', '.join(VALID_CATEGORIES)}"
            )
        self._limiter.check(f"report:{device_token_hash}", REPORTS_PER_HOUR)

        now = self._clock()
        with self._store.transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO reporter_deduplication(number_hash, device_token_hash) "
                "VALUES (?, ?)",
                (number_hash, device_token_hash),
            )
            is_new_reporter = cur.rowcount == 1

            conn.execute(
                "INSERT INTO report_events(number_hash, device_token_hash, category, reported_at) "
                "VALUES (?, ?, ?, ?)",
                (number_hash, device_token_hash, category, now),
            )
            conn.execute(
                """
                INSERT INTO number_categories(number_hash, category, votes) VALUES (?, ?, 1)
                ON CONFLICT(number_hash, category) DO UPDATE SET votes = votes + 1
                """,
                (number_hash, category),
            )
            conn.execute(
                """
                INSERT INTO reputation(number_hash, report_count, unique_reporters, last_reported_at)
                VALUES (?, 1, ?, ?)
                ON CONFLICT(number_hash) DO UPDATE SET
                    report_count = report_count + 1,
                    unique_reporters = unique_reporters + excluded.unique_reporters,
                    last_reported_at = excluded.last_reported_at
                """,
                (number_hash, 1 if is_new_reporter else 0, now),
            )

            row = conn.execute(
                "SELECT unique_reporters, negative_signals, last_reported_at, category "
                "FROM reputation WHERE number_hash = ?",
                (number_hash,),
            ).fetchone()
            votes = [
                (str(r["category"]), int(r["votes"]))
                for r in conn.execute(
                    "SELECT category, votes FROM number_categories WHERE number_hash = ? "
                    "ORDER BY votes DESC, category",
                    (number_hash,),
                )
            ]
            new_category = resolve_category(row["category"], votes)

            (window_count,) = conn.execute(
                "SELECT COUNT(*) FROM report_events WHERE number_hash = ? AND reported_at >= ?",
                (number_hash, now - QUARANTINE_WINDOW_SECONDS),
            ).fetchone()

            quarantined = window_count >= QUARANTINE_REPORT_THRESHOLD
            if quarantined:
                conn.execute(
                    """
                    INSERT INTO quarantine(
                        number_hash, trigger_reason, report_count_window,
                        quarantined_at, expires_at, reviewed
                    ) VALUES (?, 'velocity', ?, ?, ?, 0)
                    ON CONFLICT(number_hash) DO UPDATE SET
                        trigger_reason = excluded.trigger_reason,
                        report_count_window = excluded.report_count_window,
                        quarantined_at = excluded.quarantined_at,
                        expires_at = excluded.expires_at,
                        reviewed = 0
                    """,
                    (number_hash, int(window_count), now, now + QUARANTINE_DURATION_SECONDS),
                )

            score = _score_for(row, now)
            if quarantined or _quarantine_active(conn, number_hash, now):
                score = min(score, QUARANTINE_SCORE_CAP)

            conn.execute(
                "UPDATE reputation SET confidence_score = ?, category = ?, last_computed_at = ? "
                "WHERE number_hash = ?",
                (score, new_category, now, number_hash),
            )

        if quarantined:
            logger.warning(
                "quarantined %s: %d reports in the last hour",
                short_hash(number_hash),
                window_count,
            )
        return ReportOutcome(
            confidence_score=score,
            unique_reporters=int(row["unique_reporters"]),
            quarantined=quarantined,
        )

    def submit_correction(self, number_hash: str | None, device_token_hash: str | None) -> float:
        require_fields({"number_hash": number_hash, "device_token_hash": device_token_hash})
        number_hash = require_hex64(number_hash)
        device_token_hash = require_hex64(device_token_hash)
        self._limiter.check(f"correct:{device_token_hash}", CORRECTIONS_PER_HOUR)

        now = self._clock()
        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE reputation SET negative_signals = negative_signals + 1 WHERE number_hash = ?",
                (number_hash,),
            )
            if cur.rowcount == 0:
                return 0.0

            row = conn.execute(
                "SELECT unique_reporters, negative_signals, last_reported_at "
                "FROM reputation WHERE number_hash = ?",
                (number_hash,),
            ).fetchone()
            score = _score_for(row, now)
            if _quarantine_active(conn, number_hash, now):
                score = min(score, QUARANTINE_SCORE_CAP)

            conn.execute(
                "UPDATE reputation SET confidence_score = ?, last_computed_at = ? WHERE number_hash = ?",
                (score, now, number_hash),
            )
            conn.execute(
                "INSERT INTO correction_events(number_hash, device_token_hash, corrected_at) "
                "VALUES (?, ?, ?)",
                (number_hash, device_token_hash, now),
            )
        return score

    def review_quarantine(self, number_hash: str) -> float:
        """Mark a quarantine reviewed and store the uncapped score."""

        require_hex64(number_hash)
        now = self._clock()
        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE quarantine SET reviewed = 1 WHERE number_hash = ? AND reviewed = 0",
                (number_hash,),
            )
            if cur.rowcount == 0:
                raise NotFoundError("No pending quarantine for this number")
            row = conn.execute(
                "SELECT unique_reporters, negative_signals, last_reported_at "
                "FROM reputation WHERE number_hash = ?",
                (number_hash,),
            ).fetchone()
            if row is None:
                return 0.0
            score = _score_for(row, now)
            conn.execute(
                "UPDATE reputation SET confidence_score = ?, last_computed_at = ? WHERE number_hash = ?",
                (score, now, number_hash),
            )
        logger.info("quarantine reviewed for %s; score=%.3f", short_hash(number_hash), score)
        return score

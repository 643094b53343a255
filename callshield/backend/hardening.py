"""
Abuse hardening pass (scheduled or admin-triggered).

Detectors:
    spike        >= 10 reports in the last hour at >= 5 reports per reporting device
    low_trust    every number reported by a device that touched >= 30 numbers in 24h
    oscillation  a number whose report/correction stream changed direction >= 6 times in 24h

A number is never flagged twice for the same reason while an unresolved flag
exists. After flagging, every number with an unresolved flag has its score
halved; the pass compounds when re-run until the flags are resolved.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from callshield.backend.store import BackendStore
from callshield.backend.validation import require_hex64
from callshield.logging_config import short_hash

logger = logging.getLogger(__name__)

SPIKE_WINDOW_SECONDS = 60 * 60
SPIKE_RATIO = 5
SPIKE_MIN_REPORTS = 10

LOW_TRUST_WINDOW_SECONDS = 24 * 60 * 60
LOW_TRUST_DISTINCT_NUMBERS = 30

OSCILLATION_WINDOW_SECONDS = 24 * 60 * 60
OSCILLATION_FLIPS = 6

DAMPEN_FACTOR = 0.5


@dataclass(frozen=True, slots=True)
class HardeningSummary:
    flagged: int
    dampened: int

    def to_dict(self) -> dict[str, int]:
        return {"flagged": self.flagged, "dampened": self.dampened}


def count_direction_changes(signs: Iterable[int]) -> int:
    changes = 0
    previous: int | None = None
    for sign in signs:
        if previous is not None and sign != previous:
            changes += 1
        previous = sign
    return changes


def _flag(conn: sqlite3.Connection, number_hash: str, reason: str, now: float) -> bool:
    cur = conn.execute(
        "INSERT OR IGNORE INTO reputation_flags(number_hash, reason, flagged_at, resolved) "
        "VALUES (?, ?, ?, 0)",
        (number_hash, reason, now),
    )
    return cur.rowcount == 1


class AbuseHardeningService:
    def __init__(self, store: BackendStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def run(self) -> HardeningSummary:
        now = self._clock()
        flagged = 0
        with self._store.transaction() as conn:
            for number_hash in self._spike_candidates(conn, now):
                flagged += _flag(conn, number_hash, "spike", now)
            for number_hash in self._low_trust_candidates(conn, now):
                flagged += _flag(conn, number_hash, "low_trust", now)
            for number_hash in self._oscillation_candidates(conn, now):
                flagged += _flag(conn, number_hash, "oscillation", now)

            cur = conn.execute(
                """
                UPDATE reputation
                SET confidence_score = confidence_score * ?, last_computed_at = ?
                WHERE confidence_score > 0 AND number_hash IN (
                    SELECT number_hash FROM reputation_flags WHERE resolved = 0
                )
                """,
                (DAMPEN_FACTOR, now),
            )
            dampened = int(cur.rowcount or 0)

        summary = HardeningSummary(flagged=flagged, dampened=dampened)
        logger.info("hardening pass: flagged=%d dampened=%d", flagged, dampened)
        return summary

    def resolve_flags(self, number_hash: str) -> int:
        """Resolve every open flag for a number; returns how many were resolved."""

        require_hex64(number_hash)
        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE reputation_flags SET resolved = 1 WHERE number_hash = ? AND resolved = 0",
                (number_hash,),
            )
        resolved = int(cur.rowcount or 0)
        if resolved:
            logger.info("resolved %d flag(s) for %s", resolved, short_hash(number_hash))
        return resolved

    def open_flags(self, number_hash: str) -> list[str]:
        with self._store.transaction() as conn:
            rows = conn.execute(
                "SELECT reason FROM reputation_flags WHERE number_hash = ? AND resolved = 0 "
                "ORDER BY reason",
                (number_hash,),
            ).fetchall()
        return [str(r["reason"]) for r in rows]

    @staticmethod
    def _spike_candidates(conn: sqlite3.Connection, now: float) -> list[str]:
        rows = conn.execute(
            """
            SELECT number_hash, COUNT(*) AS total, COUNT(DISTINCT device_token_hash) AS devices
            FROM report_events WHERE reported_at >= ?
            GROUP BY number_hash
            """,
            (now - SPIKE_WINDOW_SECONDS,),
        ).fetchall()
        out: list[str] = []
        for r in rows:
            total = int(r["total"])
            ratio = total / max(int(r["devices"]), 1)
            if ratio >= SPIKE_RATIO and total >= SPIKE_MIN_REPORTS:
                out.append(str(r["number_hash"]))
        return out

    @staticmethod
    def _low_trust_candidates(conn: sqlite3.Connection, now: float) -> list[str]:
        since = now - LOW_TRUST_WINDOW_SECONDS
        rows = conn.execute(
            """
            SELECT DISTINCT number_hash FROM report_events
            WHERE reported_at >= ? AND device_token_hash IN (
                SELECT device_token_hash FROM report_events
                WHERE reported_at >= ?
                GROUP BY device_token_hash
                HAVING COUNT(DISTINCT number_hash) >= ?
            )
            ORDER BY number_hash
            """,
            (since, since, LOW_TRUST_DISTINCT_NUMBERS),
        ).fetchall()
        return [str(r["number_hash"]) for r in rows]

    @staticmethod
    def _oscillation_candidates(conn: sqlite3.Connection, now: float) -> list[str]:
        since = now - OSCILLATION_WINDOW_SECONDS
        rows = conn.execute(
            """
            SELECT number_hash, at, sign FROM (
                SELECT number_hash, reported_at AS at, 1 AS sign
                FROM report_events WHERE reported_at >= ?
                UNION ALL
                SELECT number_hash, corrected_at AS at, -1 AS sign
                FROM correction_events WHERE corrected_at >= ?
            )
            ORDER BY number_hash, at
            """,
            (since, since),
        ).fetchall()

        streams: dict[str, list[int]] = {}
        for r in rows:
            streams.setdefault(str(r["number_hash"]), []).append(int(r["sign"]))
        return [
            number_hash
            for number_hash, signs in streams.items()
            if count_direction_changes(signs) >= OSCILLATION_FLIPS
        ]

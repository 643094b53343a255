"""
On-device SQLite storage.

One database file holds the user's lists, prefix rules, the seed spam dataset,
the behavioral event log and the call history. Every repository opens a short
connection per operation; multi-statement updates run in a single transaction
so readers only ever see committed state.

No table ever stores a raw phone number.
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator, Literal

PrefixAction = Literal["block", "silence", "allow"]
EventType = Literal["incoming_call", "short_ring"]
Outcome = Literal["allowed", "silenced", "rejected", "flagged"]

PREFIX_ACTIONS: tuple[str, ...] = ("block", "silence", "allow")
EVENT_TTL_SECONDS = 24 * 60 * 60
EVENTS_PER_HASH_CAP = 100
HISTORY_CAP = 1000
SEED_BATCH_SIZE = 1000

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS whitelist (
        number_hash TEXT PRIMARY KEY,
        display_label TEXT NOT NULL,
        added_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS blocklist (
        number_hash TEXT PRIMARY KEY,
        display_label TEXT NOT NULL,
        added_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS prefix_rules (
        prefix TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        label TEXT NOT NULL DEFAULT '',
        added_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS seed_db (
        number_hash TEXT PRIMARY KEY,
        category TEXT NOT NULL,
        confidence_score REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS seed_db_meta (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        sha256 TEXT NOT NULL,
        updated_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS caller_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        number_hash TEXT NOT NULL,
        event_type TEXT NOT NULL,
        occurred_at REAL NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_caller_events_hash ON caller_events(number_hash, occurred_at);",
    """
    CREATE TABLE IF NOT EXISTS call_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        number_hash TEXT NOT NULL,
        display_label TEXT NOT NULL,
        outcome TEXT NOT NULL,
        confidence_score REAL NOT NULL,
        category TEXT,
        decision_source TEXT NOT NULL,
        screened_at REAL NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_call_history_hash ON call_history(number_hash);",
)


class DeviceDatabase:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.session() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """A connection with one transaction that commits on success."""

        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()


@dataclass(frozen=True, slots=True)
class ListEntry:
    number_hash: str
    display_label: str
    added_at: float


class NumberListRepository:
    """Whitelist or blocklist keyed by number hash."""

    def __init__(self, db: DeviceDatabase, table: Literal["whitelist", "blocklist"]) -> None:
        if table not in ("whitelist", "blocklist"):
            raise ValueError(f"Unknown list table: {table}")
        self._db = db
        self._table = table

    def contains(self, number_hash: str) -> bool:
        with self._db.session() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {self._table} WHERE number_hash = ?", (number_hash,)
            ).fetchone()
        return row is not None

    def add(self, number_hash: str, display_label: str) -> None:
        with self._db.session() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {self._table}(number_hash, display_label, added_at) "
                "VALUES (?, ?, ?)",
                (number_hash, display_label, time.time()),
            )

    def remove(self, number_hash: str) -> bool:
        with self._db.session() as conn:
            cur = conn.execute(f"DELETE FROM {self._table} WHERE number_hash = ?", (number_hash,))
        return bool(cur.rowcount)

    def list_all(self) -> list[ListEntry]:
        with self._db.session() as conn:
            rows = conn.execute(
                f"SELECT number_hash, display_label, added_at FROM {self._table} "
                "ORDER BY added_at DESC"
            ).fetchall()
        return [ListEntry(str(h), str(label), float(ts)) for h, label, ts in rows]


@dataclass(frozen=True, slots=True)
class PrefixRule:
    prefix: str
    action: PrefixAction
    label: str
    added_at: float


class PrefixRuleRepository:
    def __init__(self, db: DeviceDatabase) -> None:
        self._db = db

    def add(self, prefix: str, action: PrefixAction, label: str = "") -> None:
        if action not in PREFIX_ACTIONS:
            raise ValueError(f"action must be one of {', '.join(PREFIX_ACTIONS)}")
        if not prefix.startswith("+") or not prefix[1:].isdigit():
            raise ValueError("prefix must be an E.164 prefix such as +91140")
        with self._db.session() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO prefix_rules(prefix, action, label, added_at) "
                "VALUES (?, ?, ?, ?)",
                (prefix, action, label, time.time()),
            )

    def remove(self, prefix: str) -> bool:
        with self._db.session() as conn:
            cur = conn.execute("DELETE FROM prefix_rules WHERE prefix = ?", (prefix,))
        return bool(cur.rowcount)

    def list_all(self) -> list[PrefixRule]:
        """Rules sorted longest prefix first."""

        with self._db.session() as conn:
            rows = conn.execute(
                "SELECT prefix, action, label, added_at FROM prefix_rules "
                "ORDER BY LENGTH(prefix) DESC, prefix DESC"
            ).fetchall()
        return [PrefixRule(str(p), a, str(label), float(ts)) for p, a, label, ts in rows]

    def find_match(self, e164: str) -> PrefixRule | None:
        """Longest matching prefix wins."""

        for rule in self.list_all():
            if e164.startswith(rule.prefix):
                return rule
        return None


@dataclass(frozen=True, slots=True)
class SeedDbEntry:
    number_hash: str
    category: str
    confidence_score: float


@dataclass(frozen=True, slots=True)
class SeedDbMeta:
    version: int
    sha256: str
    updated_at: float


class SeedDbRepository:
    def __init__(self, db: DeviceDatabase) -> None:
        self._db = db

    def lookup(self, number_hash: str) -> SeedDbEntry | None:
        with self._db.session() as conn:
            row = conn.execute(
                "SELECT number_hash, category, confidence_score FROM seed_db WHERE number_hash = ?",
                (number_hash,),
            ).fetchone()
        if row is None:
            return None
        return SeedDbEntry(str(row[0]), str(row[1]), float(row[2]))

    def get_meta(self) -> SeedDbMeta | None:
        with self._db.session() as conn:
            row = conn.execute(
                "SELECT version, sha256, updated_at FROM seed_db_meta WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return SeedDbMeta(int(row[0]), str(row[1]), float(row[2]))

    def count(self) -> int:
        with self._db.session() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM seed_db").fetchone()
        return int(n)

    def replace_all(self, rows: Iterable[SeedDbEntry], *, version: int, sha256: str) -> int:
        """
        Swap the whole dataset and its version record in one transaction.

        If `rows` raises mid-iteration, the previous dataset stays in place.
        """

        inserted = 0
        it = iter(rows)
        with self._db.session() as conn:
            conn.execute("DELETE FROM seed_db")
            while True:
                batch = list(islice(it, SEED_BATCH_SIZE))
                if not batch:
                    break
                conn.executemany(
                    "INSERT OR REPLACE INTO seed_db(number_hash, category, confidence_score) "
                    "VALUES (?, ?, ?)",
                    [(e.number_hash, e.category, e.confidence_score) for e in batch],
                )
                inserted += len(batch)
            conn.execute(
                "INSERT OR REPLACE INTO seed_db_meta(id, version, sha256, updated_at) "
                "VALUES (1, ?, ?, ?)",
                (version, sha256, time.time()),
            )
        return inserted


class CallerEventRepository:
    """Append-only behavioral event log (24h TTL, 100 events per hash)."""

    def __init__(self, db: DeviceDatabase) -> None:
        self._db = db

    def record(self, number_hash: str, event_type: EventType, *, occurred_at: float) -> None:
        with self._db.session() as conn:
            conn.execute(
                "INSERT INTO caller_events(number_hash, event_type, occurred_at) VALUES (?, ?, ?)",
                (number_hash, event_type, occurred_at),
            )
            conn.execute(
                """
                DELETE FROM caller_events WHERE id IN (
                    SELECT id FROM caller_events
                    WHERE number_hash = ?
                    ORDER BY occurred_at DESC, id DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (number_hash, EVENTS_PER_HASH_CAP),
            )

    def count_since(
        self, number_hash: str, since: float, *, event_type: EventType | None = None
    ) -> int:
        sql = "SELECT COUNT(*) FROM caller_events WHERE number_hash = ? AND occurred_at >= ?"
        params: tuple[object, ...] = (number_hash, since)
        if event_type is not None:
            sql += " AND event_type = ?"
            params = (*params, event_type)
        with self._db.session() as conn:
            (n,) = conn.execute(sql, params).fetchone()
        return int(n)

    def purge_older_than(self, cutoff: float) -> int:
        with self._db.session() as conn:
            cur = conn.execute("DELETE FROM caller_events WHERE occurred_at < ?", (cutoff,))
        return int(cur.rowcount or 0)

    def purge_expired(self, *, now: float) -> int:
        return self.purge_older_than(now - EVENT_TTL_SECONDS)


@dataclass(frozen=True, slots=True)
class CallHistoryRecord:
    number_hash: str
    display_label: str
    outcome: Outcome
    confidence_score: float
    category: str | None
    decision_source: str
    screened_at: float

    def to_dict(self) -> dict[str, object]:
        return {
            "number_hash": self.number_hash,
            "display_label": self.display_label,
            "outcome": self.outcome,
            "confidence_score": self.confidence_score,
            "category": self.category,
            "decision_source": self.decision_source,
            "screened_at": self.screened_at,
        }


@dataclass(frozen=True, slots=True)
class CallStats:
    total_screened: int
    total_blocked: int


class CallHistoryRepository:
    """Append-only screening history capped to the most recent 1000 records."""

    def __init__(self, db: DeviceDatabase) -> None:
        self._db = db

    def record(self, rec: CallHistoryRecord) -> None:
        with self._db.session() as conn:
            conn.execute(
                """
                INSERT INTO call_history(
                    number_hash, display_label, outcome, confidence_score,
                    category, decision_source, screened_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rec.number_hash,
                    rec.display_label,
                    rec.outcome,
                    rec.confidence_score,
                    rec.category,
                    rec.decision_source,
                    rec.screened_at,
                ),
            )
            conn.execute(
                """
                DELETE FROM call_history WHERE id IN (
                    SELECT id FROM call_history
                    ORDER BY screened_at DESC, id DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (HISTORY_CAP,),
            )

    def recent(self, limit: int = 50) -> list[CallHistoryRecord]:
        with self._db.session() as conn:
            rows = conn.execute(
                """
                SELECT number_hash, display_label, outcome, confidence_score,
                       category, decision_source, screened_at
                FROM call_history ORDER BY screened_at DESC, id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            CallHistoryRecord(
                number_hash=str(r[0]),
                display_label=str(r[1]),
                outcome=r[2],
                confidence_score=float(r[3]),
                category=r[4],
                decision_source=str(r[5]),
                screened_at=float(r[6]),
            )
            for r in rows
        ]

    def count_rejections(self, number_hash: str, *, since: float = 0.0) -> int:
        with self._db.session() as conn:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM call_history "
                "WHERE number_hash = ? AND outcome = 'rejected' AND screened_at >= ?",
                (number_hash, since),
            ).fetchone()
        return int(n)

    def stats(self) -> CallStats:
        with self._db.session() as conn:
            (total,) = conn.execute("SELECT COUNT(*) FROM call_history").fetchone()
            (blocked,) = conn.execute(
                "SELECT COUNT(*) FROM call_history WHERE outcome IN ('rejected', 'silenced')"
            ).fetchone()
        return CallStats(total_screened=int(total), total_blocked=int(blocked))

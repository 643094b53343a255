"""
Backend SQLite store.

Every service operation runs inside `transaction()`, which opens a short
connection and takes the write lock up front (`BEGIN IMMEDIATE`). Counters are
incremented in SQL, so concurrent reports for the same number cannot lose
updates.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS reputation (
        number_hash TEXT PRIMARY KEY,
        report_count INTEGER NOT NULL DEFAULT 0,
        unique_reporters INTEGER NOT NULL DEFAULT 0,
        negative_signals INTEGER NOT NULL DEFAULT 0,
        confidence_score REAL NOT NULL DEFAULT 0,
        category TEXT,
        last_reported_at REAL,
        last_computed_at REAL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS report_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        number_hash TEXT NOT NULL,
        device_token_hash TEXT NOT NULL,
        category TEXT NOT NULL,
        reported_at REAL NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_report_events_number ON report_events(number_hash, reported_at);",
    "CREATE INDEX IF NOT EXISTS idx_report_events_time ON report_events(reported_at);",
    """
    CREATE TABLE IF NOT EXISTS correction_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        number_hash TEXT NOT NULL,
        device_token_hash TEXT NOT NULL,
        corrected_at REAL NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_correction_events_time ON correction_events(corrected_at);",
    """
    CREATE TABLE IF NOT EXISTS reporter_deduplication (
        number_hash TEXT NOT NULL,
        device_token_hash TEXT NOT NULL,
        PRIMARY KEY (number_hash, device_token_hash)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS number_categories (
        number_hash TEXT NOT NULL,
        category TEXT NOT NULL,
        votes INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (number_hash, category)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS quarantine (
        number_hash TEXT PRIMARY KEY,
        trigger_reason TEXT NOT NULL,
        report_count_window INTEGER NOT NULL,
        quarantined_at REAL NOT NULL,
        expires_at REAL NOT NULL,
        reviewed INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS reputation_flags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        number_hash TEXT NOT NULL,
        reason TEXT NOT NULL,
        flagged_at REAL NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0
    );
    """,
    # At most one unresolved flag per (number, reason).
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_flags_open
    ON reputation_flags(number_hash, reason) WHERE resolved = 0;
    """,
    """
    CREATE TABLE IF NOT EXISTS seed_db_versions (
        version INTEGER PRIMARY KEY,
        sha256 TEXT NOT NULL,
        storage_path TEXT NOT NULL,
        is_current INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS family_pairing (
        token_hash TEXT PRIMARY KEY,
        expires_at REAL NOT NULL,
        paired_at REAL,
        guardian_device_hash TEXT NOT NULL,
        plan_type TEXT NOT NULL,
        subscription_expires_at REAL,
        subscription_active INTEGER NOT NULL DEFAULT 1
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_family_guardian ON family_pairing(guardian_device_hash);",
    """
    CREATE TABLE IF NOT EXISTS family_sync_rules (
        token_hash TEXT NOT NULL,
        rule_type TEXT NOT NULL,
        rule_payload TEXT NOT NULL,
        updated_at REAL NOT NULL,
        PRIMARY KEY (token_hash, rule_type)
    );
    """,
)


class BackendStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def _init_db(self) -> None:
        with self.transaction() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

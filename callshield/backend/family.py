"""
Family sync: a guardian device shares rules with paired dependents.

Only token hashes reach the backend. The guardian registers a short-lived
pairing token, pushes rules under it, and the dependent pulls them. Access is
gated on the guardian's subscription: an inactive or expired subscription
answers 402, and an expiry deactivates every pairing of that guardian.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Any, Callable

from callshield.backend.errors import (
    BadRequestError,
    CallShieldError,
    ConflictError,
    NotFoundError,
    PaymentRequiredError,
)
from callshield.backend.ratelimit import SlidingWindowRateLimiter
from callshield.backend.store import BackendStore
from callshield.backend.validation import (
    iso,
    parse_timestamp,
    require_fields,
    require_hex64,
    require_text,
)
from callshield.logging_config import short_hash

logger = logging.getLogger(__name__)

MAX_PAIRING_EXPIRY_SECONDS = 10 * 60
RULE_TYPES: tuple[str, ...] = ("prefix", "preference")

PAIRS_PER_HOUR = 5
PUSHES_PER_HOUR = 60
PULLS_PER_HOUR = 120
RENEWALS_PER_HOUR = 10
REVOCATIONS_PER_HOUR = 10


class FamilySyncService:
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

    def pair(
        self,
        *,
        token_hash: str | None,
        expires_at: str | None,
        guardian_device_hash: str | None,
        plan_type: str | None,
        subscription_expires_at: str | None = None,
    ) -> None:
        require_fields(
            {
                "token_hash": token_hash,
                "expires_at": expires_at,
                "guardian_device_hash": guardian_device_hash,
                "plan_type": plan_type,
            }
        )
        token_hash = require_hex64(token_hash, field="token_hash")
        guardian_device_hash = require_hex64(guardian_device_hash, field="guardian_device_hash")
        expires_at = require_text(expires_at, field="expires_at")
        plan_type = require_text(plan_type, field="plan_type")

        now = self._clock()
        expiry = parse_timestamp(expires_at, field="expires_at")
        if expiry - now > MAX_PAIRING_EXPIRY_SECONDS:
            raise BadRequestError("expires_at must be within 10 minutes from now")
        if expiry < now:
            raise BadRequestError("expires_at is in the past")

        sub_expiry: float | None = None
        if subscription_expires_at is not None:
            sub_expiry = parse_timestamp(subscription_expires_at, field="subscription_expires_at")
            if sub_expiry <= now:
                raise BadRequestError("subscription_expires_at must be a valid future timestamp")

        self._limiter.check(f"pair:{token_hash}", PAIRS_PER_HOUR)

        with self._store.transaction() as conn:
            existing = conn.execute(
                "SELECT paired_at FROM family_pairing WHERE token_hash = ?", (token_hash,)
            ).fetchone()
            if existing is not None and existing["paired_at"] is not None:
                raise ConflictError("Token already paired")
            # Re-registering an unpaired token refreshes it (guardian regenerated the QR code).
            conn.execute(
                """
                INSERT INTO family_pairing(
                    token_hash, expires_at, paired_at, guardian_device_hash,
                    plan_type, subscription_expires_at, subscription_active
                ) VALUES (?, ?, NULL, ?, ?, ?, 1)
                ON CONFLICT(token_hash) DO UPDATE SET
                    expires_at = excluded.expires_at,
                    paired_at = NULL,
                    guardian_device_hash = excluded.guardian_device_hash,
                    plan_type = excluded.plan_type,
                    subscription_expires_at = excluded.subscription_expires_at,
                    subscription_active = 1
                """,
                (token_hash, expiry, guardian_device_hash, plan_type, sub_expiry),
            )
        logger.info("registered pairing token %s", short_hash(token_hash))

    def push_rules(
        self, *, token_hash: str | None, rule_type: str | None, rule_payload: Any
    ) -> None:
        require_fields({"token_hash": token_hash, "rule_type": rule_type, "rule_payload": rule_payload})
        token_hash = require_hex64(token_hash, field="token_hash")
        rule_type = require_text(rule_type, field="rule_type")
        if rule_type not in RULE_TYPES:
            raise BadRequestError(f"rule_type must be one of: {', '.join(RULE_TYPES)}")
        self._limiter.check(f"sync_push:{token_hash}", PUSHES_PER_HOUR)

        now = self._clock()
        self._with_pairing(token_hash, now, mark_paired=False)
        with self._store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO family_sync_rules(token_hash, rule_type, rule_payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(token_hash, rule_type) DO UPDATE SET
                    rule_payload = excluded.rule_payload,
                    updated_at = excluded.updated_at
                """,
                (token_hash, rule_type, json.dumps(rule_payload), now),
            )

    def pull_rules(self, token_hash: str | None) -> list[dict[str, Any]]:
        require_fields({"token_hash": token_hash})
        token_hash = require_hex64(token_hash, field="token_hash")
        self._limiter.check(f"sync_pull:{token_hash}", PULLS_PER_HOUR)

        now = self._clock()
        self._with_pairing(token_hash, now, mark_paired=True)
        with self._store.transaction() as conn:
            rows = conn.execute(
                "SELECT rule_type, rule_payload, updated_at FROM family_sync_rules "
                "WHERE token_hash = ? ORDER BY rule_type",
                (token_hash,),
            ).fetchall()
        return [
            {
                "rule_type": str(r["rule_type"]),
                "rule_payload": json.loads(r["rule_payload"]),
                "updated_at": iso(float(r["updated_at"])),
            }
            for r in rows
        ]

    def renew(
        self,
        *,
        guardian_device_hash: str | None,
        plan_type: str | None,
        subscription_expires_at: str | None = None,
    ) -> int:
        require_fields({"guardian_device_hash": guardian_device_hash, "plan_type": plan_type})
        guardian_device_hash = require_hex64(guardian_device_hash, field="guardian_device_hash")
        plan_type = require_text(plan_type, field="plan_type")
        sub_expiry = (
            parse_timestamp(subscription_expires_at, field="subscription_expires_at")
            if subscription_expires_at is not None
            else None
        )
        self._limiter.check(f"renew:{guardian_device_hash}", RENEWALS_PER_HOUR)

        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE family_pairing SET subscription_active = 1, plan_type = ?, "
                "subscription_expires_at = ? WHERE guardian_device_hash = ?",
                (plan_type, sub_expiry, guardian_device_hash),
            )
        return int(cur.rowcount or 0)

    def revoke(self, *, guardian_device_hash: str | None) -> int:
        require_fields({"guardian_device_hash": guardian_device_hash})
        guardian_device_hash = require_hex64(guardian_device_hash, field="guardian_device_hash")
        self._limiter.check(f"revoke:{guardian_device_hash}", REVOCATIONS_PER_HOUR)

        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE family_pairing SET subscription_active = 0 "
                "WHERE guardian_device_hash = ? AND subscription_active = 1",
                (guardian_device_hash,),
            )
        revoked = int(cur.rowcount or 0)
        logger.info("revoked %d pairing(s) for guardian %s", revoked, short_hash(guardian_device_hash))
        return revoked

    def unpair(self, *, token_hash: str | None) -> None:
        """Delete a pairing and its rules. Unknown tokens succeed too."""

        require_fields({"token_hash": token_hash})
        token_hash = require_hex64(token_hash, field="token_hash")
        with self._store.transaction() as conn:
            conn.execute("DELETE FROM family_sync_rules WHERE token_hash = ?", (token_hash,))
            conn.execute("DELETE FROM family_pairing WHERE token_hash = ?", (token_hash,))

    def _with_pairing(self, token_hash: str, now: float, *, mark_paired: bool) -> None:
        """Check the pairing and its subscription, committing any state change before raising."""

        error: CallShieldError | None = None
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT paired_at, expires_at, subscription_active, subscription_expires_at, "
                "guardian_device_hash FROM family_pairing WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
            error = self._pairing_error(conn, row, now)
            if error is None and mark_paired and row["paired_at"] is None:
                conn.execute(
                    "UPDATE family_pairing SET paired_at = ? WHERE token_hash = ?",
                    (now, token_hash),
                )
        if error is not None:
            raise error

    @staticmethod
    def _pairing_error(
        conn: sqlite3.Connection, row: sqlite3.Row | None, now: float
    ) -> CallShieldError | None:
        if row is None:
            return NotFoundError("Token not found")
        if not row["subscription_active"]:
            return PaymentRequiredError(
                "Guardian subscription is inactive", reason="subscription_inactive"
            )
        sub_expiry = row["subscription_expires_at"]
        if sub_expiry is not None and float(sub_expiry) < now:
            conn.execute(
                "UPDATE family_pairing SET subscription_active = 0 WHERE guardian_device_hash = ?",
                (row["guardian_device_hash"],),
            )
            return PaymentRequiredError(
                "Guardian subscription has expired", reason="subscription_expired"
            )
        if row["paired_at"] is None and float(row["expires_at"]) < now:
            return NotFoundError("Pairing token expired")
        return None

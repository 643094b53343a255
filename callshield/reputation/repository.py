"""
Reputation lookup: local seed dataset first, then the remote service.

Lookups are best-effort. An open circuit, a timeout or any remote failure is
reported as NOT_FOUND so the screening pipeline never fails because of them.
"""

from __future__ import annotations

import asyncio
import logging

from callshield.logging_config import short_hash
from callshield.net.circuit_breaker import CircuitBreaker, CircuitOpenError
from callshield.reputation.adapter import (
    RemoteReputationAdapter,
    ReputationResult,
    ReputationSource,
)
from callshield.storage.device import SeedDbRepository

logger = logging.getLogger(__name__)


class ReputationRepository:
    def __init__(
        self,
        *,
        seed_db: SeedDbRepository,
        remote: RemoteReputationAdapter | None,
        circuit_breaker: CircuitBreaker,
        remote_timeout_seconds: float = 1.2,
    ) -> None:
        self._seed_db = seed_db
        self._remote = remote
        self._breaker = circuit_breaker
        self._remote_timeout = remote_timeout_seconds

    async def lookup(self, number_hash: str) -> ReputationResult:
        seed = await asyncio.to_thread(self._seed_db.lookup, number_hash)
        if seed is not None:
            return ReputationResult(
                confidence_score=seed.confidence_score,
                category=seed.category,
                report_count=0,
                unique_reporters=0,
                source=ReputationSource.SEED_DB,
            )

        if self._remote is None:
            return ReputationResult.not_found()

        remote = self._remote
        # The timeout sits inside the breaker so slow responses count as failures.
        try:
            return await self._breaker.call(
                lambda: asyncio.wait_for(remote.lookup(number_hash), timeout=self._remote_timeout)
            )
        except CircuitOpenError:
            logger.debug("remote lookup skipped (circuit open) for %s", short_hash(number_hash))
        except asyncio.TimeoutError:
            logger.info("remote lookup timed out for %s", short_hash(number_hash))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.info(
                "remote lookup failed for %s: %s: %s",
                short_hash(number_hash),
                type(exc).__name__,
                exc,
            )
        return ReputationResult.not_found()

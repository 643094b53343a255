from __future__ import annotations

import asyncio
from pathlib import Path

from callshield.net.circuit_breaker import CircuitBreaker, CircuitState
from callshield.reputation.adapter import (
    RemoteReputationAdapter,
    ReputationResult,
    ReputationSource,
)
from callshield.reputation.repository import ReputationRepository
from callshield.storage.device import DeviceDatabase, SeedDbEntry, SeedDbRepository

H = "e" * 64

REMOTE_HIT = ReputationResult(
    confidence_score=0.7,
    category="telemarketing",
    report_count=12,
    unique_reporters=6,
    source=ReputationSource.REMOTE,
)


class FlakyRemote(RemoteReputationAdapter):
    name = "flaky"

    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.calls = 0

    async def lookup(self, number_hash: str) -> ReputationResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("backend unreachable")
        return REMOTE_HIT


def _repo(
    tmp_path: Path, remote: RemoteReputationAdapter | None, **kwargs: float
) -> tuple[ReputationRepository, SeedDbRepository, CircuitBreaker]:
    seed_db = SeedDbRepository(DeviceDatabase(tmp_path / "device.sqlite3"))
    breaker = CircuitBreaker(window_size=2, failure_threshold=0.5)
    repo = ReputationRepository(
        seed_db=seed_db, remote=remote, circuit_breaker=breaker, **kwargs
    )
    return repo, seed_db, breaker


async def test_seed_hit_wins_over_remote(tmp_path: Path) -> None:
    remote = FlakyRemote()
    repo, seed_db, _ = _repo(tmp_path, remote)
    seed_db.replace_all([SeedDbEntry(H, "loan_scam", 0.95)], version=3, sha256="f" * 64)

    result = await repo.lookup(H)

    assert result.source is ReputationSource.SEED_DB
    assert result.category == "loan_scam"
    assert result.report_count == 0 and result.unique_reporters == 0
    assert remote.calls == 0


async def test_remote_result_passed_through(tmp_path: Path) -> None:
    repo, _, _ = _repo(tmp_path, FlakyRemote())
    assert await repo.lookup(H) == REMOTE_HIT


async def test_without_remote_adapter_is_not_found(tmp_path: Path) -> None:
    repo, _, _ = _repo(tmp_path, None)
    assert (await repo.lookup(H)).source is ReputationSource.NOT_FOUND


async def test_remote_failure_becomes_not_found(tmp_path: Path) -> None:
    repo, _, _ = _repo(tmp_path, FlakyRemote(fail=True))
    assert await repo.lookup(H) == ReputationResult.not_found()


async def test_slow_remote_times_out(tmp_path: Path) -> None:
    repo, _, breaker = _repo(tmp_path, FlakyRemote(delay=1.0), remote_timeout_seconds=0.01)
    assert (await repo.lookup(H)).source is ReputationSource.NOT_FOUND
    assert breaker.outcomes == [False]


async def test_open_circuit_skips_remote(tmp_path: Path) -> None:
    remote = FlakyRemote(fail=True)
    repo, _, breaker = _repo(tmp_path, remote)

    await repo.lookup(H)
    await repo.lookup(H)
    assert breaker.state is CircuitState.OPEN

    remote.fail = False
    assert (await repo.lookup(H)).source is ReputationSource.NOT_FOUND
    assert remote.calls == 2


def test_not_found_to_dict() -> None:
    assert ReputationResult.not_found().to_dict() == {
        "confidence_score": 0.0,
        "category": None,
        "report_count": 0,
        "unique_reporters": 0,
        "source": "NOT_FOUND",
    }

from __future__ import annotations

import asyncio

import pytest

from callshield.net.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _ok() -> str:
    return "ok"


async def _fail() -> str:
    raise RuntimeError("boom")


async def _run(breaker: CircuitBreaker, op) -> None:
    try:
        await breaker.call(op)
    except RuntimeError:
        pass


def _breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(window_size=10, failure_threshold=0.5, reopen_after_seconds=60, clock=clock)


async def test_opens_after_majority_failures_in_full_window() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    for _ in range(4):
        await _run(breaker, _ok)
    for _ in range(5):
        await _run(breaker, _fail)
    assert breaker.state is CircuitState.CLOSED

    await _run(breaker, _fail)
    assert breaker.state is CircuitState.OPEN


async def test_exactly_half_failures_stays_closed() -> None:
    breaker = _breaker(FakeClock())
    for _ in range(5):
        await _run(breaker, _ok)
        await _run(breaker, _fail)
    assert breaker.state is CircuitState.CLOSED


async def test_open_circuit_fails_fast_without_invoking_operation() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    for _ in range(10):
        await _run(breaker, _fail)
    assert breaker.state is CircuitState.OPEN

    calls = 0

    async def op() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    with pytest.raises(CircuitOpenError):
        await breaker.call(op)
    assert calls == 0


async def test_half_open_probe_success_closes_and_clears_window() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    for _ in range(10):
        await _run(breaker, _fail)

    clock.now += 60
    assert await breaker.call(_ok) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.outcomes == []


async def test_half_open_probe_failure_reopens() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    for _ in range(10):
        await _run(breaker, _fail)

    clock.now += 61
    await _run(breaker, _fail)
    assert breaker.state is CircuitState.OPEN

    # The open timestamp was reset by the failed probe.
    clock.now += 30
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)


async def test_only_one_probe_in_flight() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    for _ in range(10):
        await _run(breaker, _fail)
    clock.now += 60

    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "ok"

    probe = asyncio.create_task(breaker.call(slow))
    await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)

    release.set()
    assert await probe == "ok"
    assert breaker.state is CircuitState.CLOSED


async def test_cancelled_probe_releases_half_open_slot() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    for _ in range(10):
        await _run(breaker, _fail)
    clock.now += 60

    async def hang() -> str:
        await asyncio.Event().wait()
        return "never"

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(breaker.call(hang), timeout=0.01)

    assert await breaker.call(_ok) == "ok"
    assert breaker.state is CircuitState.CLOSED

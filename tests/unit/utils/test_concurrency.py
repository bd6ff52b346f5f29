"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio

import pytest

from stage_orchestrator.utils.concurrency import CancellationToken, WorkerPool, run_with_timeout


async def _value(value: int, delay: float = 0.0) -> int:
    await asyncio.sleep(delay)
    return value


async def test_run_with_timeout_returns_value() -> None:
    assert await run_with_timeout(_value(3), 1.0) == 3


async def test_run_with_timeout_raises_timeout_and_cancels_inner_task() -> None:
    cleaned_up = asyncio.Event()

    async def slow() -> None:
        try:
            await asyncio.sleep(10)
        finally:
            cleaned_up.set()

    with pytest.raises(TimeoutError):
        await run_with_timeout(slow(), 0.05)
    assert cleaned_up.is_set()


async def test_run_with_timeout_observes_cancellation_token() -> None:
    token = CancellationToken()

    async def slow() -> None:
        await asyncio.sleep(10)

    async def cancel_soon() -> None:
        await asyncio.sleep(0.02)
        token.cancel("operator abort")

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(slow(), 5.0, token)
    await canceller
    assert token.reason == "operator abort"


async def test_run_with_timeout_rejects_precancelled_token_without_leaking() -> None:
    token = CancellationToken()
    token.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_value(1), 1.0, token)
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(_value(1), 0)


def test_cancellation_token_keeps_first_reason() -> None:
    token = CancellationToken()
    assert not token.is_cancelled
    token.cancel("first")
    token.cancel("second")
    assert token.is_cancelled
    assert token.reason == "first"
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


async def test_worker_pool_bounds_concurrency() -> None:
    active = 0
    peak = 0

    async def work(value: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return value

    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)
    results = [item async for item in pool.run(work(index) for index in range(6))]

    assert sorted(results) == list(range(6))
    assert peak <= 2


async def test_worker_pool_propagates_first_error() -> None:
    async def boom() -> int:
        raise RuntimeError("worker failed")

    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)
    with pytest.raises(RuntimeError, match="worker failed"):
        async for _ in pool.run([boom(), _value(1, 0.5)]):
            pass


def test_worker_pool_rejects_non_positive_concurrency() -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        WorkerPool(max_concurrency=0)

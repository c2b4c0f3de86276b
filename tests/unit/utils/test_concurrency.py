"""Worker pool admission, cancellation, and timeout helpers."""

from __future__ import annotations

import asyncio

import pytest

from nixpkgs_history.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)


@pytest.mark.asyncio
async def test_worker_pool_never_exceeds_its_ceiling() -> None:
    pool: WorkerPool[int, int] = WorkerPool(max_concurrency=3)
    active = 0
    observed: list[int] = []

    async def worker(item: int) -> int:
        nonlocal active
        active += 1
        observed.append(active)
        await asyncio.sleep(0.001 * (item % 4))
        active -= 1
        return item * 2

    results = [result async for result in pool.run(range(20), worker)]

    assert sorted(results) == [item * 2 for item in range(20)]
    assert max(observed) <= 3
    assert pool.peak_in_flight == 3
    assert pool.in_flight == 0


@pytest.mark.asyncio
async def test_worker_pool_admits_next_item_as_soon_as_a_permit_frees() -> None:
    pool: WorkerPool[str, str] = WorkerPool(max_concurrency=2)
    slow_release = asyncio.Event()
    started: list[str] = []

    async def worker(item: str) -> str:
        started.append(item)
        if item == "slow":
            await slow_release.wait()
        return item

    async def consume() -> list[str]:
        return [result async for result in pool.run(["slow", "fast-1", "fast-2"], worker)]

    task = asyncio.create_task(consume())
    for _ in range(10):
        await asyncio.sleep(0)
    # The slow unit still holds its permit, yet both fast units have run.
    assert started == ["slow", "fast-1", "fast-2"]
    slow_release.set()
    assert await task == ["fast-1", "fast-2", "slow"]


@pytest.mark.asyncio
async def test_worker_pool_stops_admission_after_cancel_and_records_skipped() -> None:
    token = CancellationToken()
    pool: WorkerPool[int, int] = WorkerPool(max_concurrency=1, cancel_token=token)

    async def worker(item: int) -> int:
        if item == 1:
            token.cancel()
        return item

    results = [result async for result in pool.run([0, 1, 2, 3], worker)]

    assert results == [0, 1]
    assert pool.skipped == [2, 3]


@pytest.mark.asyncio
async def test_worker_pool_propagates_worker_exceptions() -> None:
    pool: WorkerPool[int, int] = WorkerPool(max_concurrency=2)

    async def worker(item: int) -> int:
        if item == 2:
            raise RuntimeError("boom")
        await asyncio.sleep(0)
        return item

    with pytest.raises(RuntimeError, match="boom"):
        async for _ in pool.run(range(5), worker):
            pass
    assert pool.in_flight == 0


def test_pool_and_semaphore_reject_non_positive_limits() -> None:
    with pytest.raises(ValueError):
        WorkerPool(max_concurrency=0)
    with pytest.raises(ValueError):
        BoundedSemaphore(0)


@pytest.mark.asyncio
async def test_bounded_semaphore_tracks_usage() -> None:
    semaphore = BoundedSemaphore(2)
    async with semaphore.permit():
        assert semaphore.snapshot() == {"limit": 2, "in_use": 1, "peak_in_use": 1, "available": 1}
    assert semaphore.in_use == 0
    with pytest.raises(RuntimeError):
        semaphore.release()


@pytest.mark.asyncio
async def test_run_with_timeout_returns_value_or_raises() -> None:
    assert await run_with_timeout(asyncio.sleep(0, result="done"), 1.0) == "done"
    with pytest.raises(TimeoutError):
        await run_with_timeout(asyncio.sleep(1.0), 0.01)


@pytest.mark.asyncio
async def test_run_with_timeout_honours_cancel_token() -> None:
    token = CancellationToken()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(asyncio.sleep(5.0), 10.0, token)
    await canceller

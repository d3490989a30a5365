# tests/unit/test_worker.py
"""
Unit tests for the reconciliation worker loop.

These tests drive `process_item` and `reconcile_worker` with stub sync
handlers to validate the retry policy: success forgets a key, failures are
requeued with backoff up to the retry cap, and a key is always released,
whatever the handler does.
"""

import asyncio
from typing import List

import pytest

from conftest import async_wait_until
from secret_mirror.exceptions import ClusterError
from secret_mirror.ratelimit import ExponentialBackoffRateLimiter
from secret_mirror.worker import (
    MAX_RETRIES,
    ItemOutcome,
    handle_error,
    process_item,
    process_next_work_item,
    reconcile_worker,
)
from secret_mirror.workqueue import WorkQueue


class RecordingLimiter(ExponentialBackoffRateLimiter):
    """An exponential limiter that remembers every delay it hands out."""

    def __init__(self) -> None:
        super().__init__(base_delay=0.0001, max_delay=0.002)
        self.delays: List[float] = []

    def when(self, key: str) -> float:
        delay: float = super().when(key)
        self.delays.append(delay)
        return delay


@pytest.mark.asyncio
async def test_success_forgets_and_releases_key(fast_queue: WorkQueue) -> None:
    """
    Tests that a successful sync resets the retry count and releases the key.

    Args:
        fast_queue (WorkQueue): A queue with millisecond backoff.
    """
    fast_queue.add_rate_limited("ns/a")
    assert await async_wait_until(lambda: len(fast_queue) == 1, timeout=1)
    key, _ = await fast_queue.get()

    async def handler(_: str) -> None:
        return None

    outcome: ItemOutcome = await process_item(fast_queue, key, handler)

    assert outcome is ItemOutcome.SUCCEEDED
    assert fast_queue.num_requeues("ns/a") == 0
    fast_queue.add("ns/a")
    assert len(fast_queue) == 1  # no longer held as processing


@pytest.mark.asyncio
async def test_failure_is_requeued_with_backoff(fast_queue: WorkQueue) -> None:
    """
    Tests that a failed sync is requeued and delivered again.

    Args:
        fast_queue (WorkQueue): A queue with millisecond backoff.
    """
    fast_queue.add("ns/a")
    key, _ = await fast_queue.get()

    async def handler(_: str) -> None:
        raise ClusterError("boom")

    outcome: ItemOutcome = await process_item(fast_queue, key, handler)

    assert outcome is ItemOutcome.REQUEUED
    assert fast_queue.num_requeues("ns/a") == 1
    assert await async_wait_until(lambda: len(fast_queue) == 1, timeout=1)


@pytest.mark.asyncio
async def test_handle_error_drops_after_max_retries(fast_queue: WorkQueue) -> None:
    """
    Tests that a key at the retry cap is forgotten instead of requeued.
    """
    for _ in range(3):
        fast_queue.add_rate_limited("ns/a")

    outcome: ItemOutcome = handle_error(fast_queue, "ns/a", ClusterError("x"), 3)

    assert outcome is ItemOutcome.DROPPED
    assert fast_queue.num_requeues("ns/a") == 0


@pytest.mark.asyncio
async def test_unexpected_exception_still_releases_key(fast_queue: WorkQueue) -> None:
    """
    Tests that a handler bug neither leaks the key nor escapes the worker.
    """
    fast_queue.add("ns/a")
    key, _ = await fast_queue.get()

    async def handler(_: str) -> None:
        raise KeyError("bug")

    outcome: ItemOutcome = await process_item(fast_queue, key, handler)

    assert outcome is ItemOutcome.REQUEUED
    assert "ns/a" not in fast_queue._processing
    assert await async_wait_until(lambda: len(fast_queue) == 1, timeout=1)


@pytest.mark.asyncio
async def test_cancelled_sync_releases_key() -> None:
    """
    Tests that cancelling a worker mid-sync still marks the key done.
    """
    queue: WorkQueue = WorkQueue()
    queue.add("ns/a")
    started: asyncio.Event = asyncio.Event()

    async def handler(_: str) -> None:
        started.set()
        await asyncio.sleep(10)

    task: asyncio.Task[bool] = asyncio.create_task(
        process_next_work_item(queue, handler)
    )
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    queue.add("ns/a")
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_always_failing_key_is_retried_max_retries_times() -> None:
    """
    Tests the bounded retry policy end to end.

    Arrange:
        - A worker whose handler always fails, with a recording limiter.
    Act:
        - Add one key and let the worker run until the key is dropped.
    Assert:
        - The handler ran once plus `MAX_RETRIES` times.
        - Backoff delays strictly increased until capped.
        - The key is forgotten and never delivered again.
    """
    limiter: RecordingLimiter = RecordingLimiter()
    queue: WorkQueue = WorkQueue(limiter)
    calls: List[str] = []

    async def handler(key: str) -> None:
        calls.append(key)
        raise ClusterError("permanent failure")

    worker: asyncio.Task[None] = asyncio.create_task(
        reconcile_worker(0, queue, handler)
    )
    queue.add("ns/a")

    assert await async_wait_until(lambda: len(calls) == MAX_RETRIES + 1, timeout=5)
    await asyncio.sleep(0.05)

    assert len(calls) == MAX_RETRIES + 1
    assert len(limiter.delays) == MAX_RETRIES
    capped: int = limiter.delays.index(0.002)
    assert all(a < b for a, b in zip(limiter.delays[:capped], limiter.delays[1:capped + 1]))
    assert set(limiter.delays[capped:]) == {0.002}
    assert queue.num_requeues("ns/a") == 0
    assert len(queue) == 0

    queue.shut_down()
    await asyncio.wait_for(worker, timeout=1)


@pytest.mark.asyncio
async def test_worker_exits_on_shutdown() -> None:
    queue: WorkQueue = WorkQueue()

    async def handler(_: str) -> None:
        return None

    worker: asyncio.Task[None] = asyncio.create_task(reconcile_worker(0, queue, handler))
    await asyncio.sleep(0.01)
    queue.shut_down()
    await asyncio.wait_for(worker, timeout=1)

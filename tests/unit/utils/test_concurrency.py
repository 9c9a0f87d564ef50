"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio

import pytest

from stagegate.utils.concurrency import BoundedSemaphore, CancellationToken, run_with_timeout


async def _slow(value: int = 1, delay: float = 0.01) -> int:
    await asyncio.sleep(delay)
    return value


@pytest.mark.asyncio
async def test_run_with_timeout_returns_result() -> None:
    assert await run_with_timeout(_slow(7), 1.0) == 7


@pytest.mark.asyncio
async def test_run_with_timeout_raises_timeout_and_cancels_work() -> None:
    finished = asyncio.Event()

    async def _hang() -> None:
        try:
            await asyncio.sleep(10)
        finally:
            finished.set()

    with pytest.raises(TimeoutError, match="timed out"):
        await run_with_timeout(_hang(), 0.02)
    assert finished.is_set()


@pytest.mark.asyncio
async def test_pre_cancelled_token_never_schedules_work() -> None:
    token = CancellationToken()
    token.cancel("shutdown")
    coroutine = _slow()

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(coroutine, 1.0, token)
    assert coroutine.cr_frame is None


@pytest.mark.asyncio
async def test_token_cancellation_interrupts_running_work() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.02, token.cancel, "operator")

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_slow(delay=5.0), 10.0, token)
    assert token.reason == "operator"


def test_token_keeps_first_reason() -> None:
    token = CancellationToken()
    assert not token.is_cancelled
    token.cancel("first")
    token.cancel("second")
    assert token.is_cancelled
    assert token.reason == "first"
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_invalid_timeout_closes_coroutine() -> None:
    coroutine = _slow()
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(coroutine, 0)
    assert coroutine.cr_frame is None


@pytest.mark.asyncio
async def test_bounded_semaphore_tracks_permits() -> None:
    semaphore = BoundedSemaphore(2)
    async with semaphore.permit():
        assert semaphore.in_use == 1
    assert semaphore.in_use == 0
    with pytest.raises(RuntimeError):
        semaphore.release()
    with pytest.raises(ValueError):
        BoundedSemaphore(0)

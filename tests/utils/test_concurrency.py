import asyncio

import pytest

from librarysync.utils.concurrency import FifoLimiter


@pytest.mark.asyncio
async def test_limiter_caps_concurrent_holders() -> None:
    limiter = FifoLimiter(2)
    active = 0
    peak = 0

    async def worker() -> None:
        nonlocal active, peak
        async with limiter.slot():
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(worker() for _ in range(6)))

    assert peak == 2
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_limiter_admits_waiters_in_arrival_order() -> None:
    limiter = FifoLimiter(1)
    order: list[str] = []
    await limiter.acquire()

    async def worker(name: str) -> None:
        async with limiter.slot():
            order.append(name)

    tasks = []
    for name in ("a", "b", "c"):
        tasks.append(asyncio.create_task(worker(name)))
        await asyncio.sleep(0)

    assert limiter.waiting == 3
    limiter.release()
    await asyncio.gather(*tasks)

    assert order == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_a_slot() -> None:
    limiter = FifoLimiter(1)
    await limiter.acquire()

    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    limiter.release()

    assert limiter.in_flight == 0
    assert limiter.waiting == 0
    await asyncio.wait_for(limiter.acquire(), timeout=1)
    limiter.release()


def test_release_without_acquire_raises() -> None:
    limiter = FifoLimiter(1)

    with pytest.raises(RuntimeError):
        limiter.release()


def test_limit_is_at_least_one() -> None:
    assert FifoLimiter(0).limit == 1

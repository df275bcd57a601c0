"""
Tests for the Redis-backed distributed lock.
"""

import asyncio

import pytest
from redis.exceptions import LockError

from billing_engine.modules.billing.domain.billing.distributed_lock import (
    DistributedLock,
    activation_lock_key,
    cancellation_lock_key,
)


def test_resource_keys():
    assert activation_lock_key("abc") == "subscription:activate:abc"
    assert cancellation_lock_key("u1") == "subscription:cancel:u1"


@pytest.mark.asyncio
async def test_acquire_and_release(redis):
    lock = DistributedLock(redis)

    assert await lock.acquire("subscription:activate:1", timeout_ms=100)
    assert lock.held
    assert lock.resource_key == "subscription:activate:1"
    assert await redis.exists("lock:subscription:activate:1")

    assert await lock.release()
    assert not lock.held
    assert not await redis.exists("lock:subscription:activate:1")


@pytest.mark.asyncio
async def test_second_holder_times_out(redis):
    first = DistributedLock(redis)
    second = DistributedLock(redis, retry_interval_seconds=0.01)

    assert await first.acquire("subscription:activate:1", timeout_ms=100)
    assert not await second.acquire("subscription:activate:1", timeout_ms=50)
    assert not second.held

    await first.release()
    assert await second.acquire("subscription:activate:1", timeout_ms=50)
    await second.release()


@pytest.mark.asyncio
async def test_different_resources_do_not_contend(redis):
    first = DistributedLock(redis)
    second = DistributedLock(redis)

    assert await first.acquire("subscription:activate:1", timeout_ms=50)
    assert await second.acquire("subscription:activate:2", timeout_ms=50)

    await first.release()
    await second.release()


@pytest.mark.asyncio
async def test_waiter_acquires_after_release(redis):
    holder = DistributedLock(redis)
    waiter = DistributedLock(redis, retry_interval_seconds=0.01)
    await holder.acquire("subscription:cancel:u1", timeout_ms=100)

    async def release_soon():
        await asyncio.sleep(0.05)
        await holder.release()

    releaser = asyncio.create_task(release_soon())
    assert await waiter.acquire("subscription:cancel:u1", timeout_ms=2000)
    await releaser
    await waiter.release()


@pytest.mark.asyncio
async def test_expired_lease_is_reacquirable_and_release_reports_it(redis):
    crashed = DistributedLock(redis, lease_seconds=0.1)
    await crashed.acquire("subscription:activate:1", timeout_ms=50)

    await asyncio.sleep(0.2)

    successor = DistributedLock(redis)
    assert await successor.acquire("subscription:activate:1", timeout_ms=50)
    # The lease was lost, and the successor's lock must survive this release
    assert not await crashed.release()
    assert await redis.exists("lock:subscription:activate:1")
    await successor.release()


@pytest.mark.asyncio
async def test_handle_holds_one_resource_at_a_time(redis):
    lock = DistributedLock(redis)
    await lock.acquire("subscription:activate:1", timeout_ms=50)

    with pytest.raises(LockError):
        await lock.acquire("subscription:activate:2", timeout_ms=50)
    await lock.release()


@pytest.mark.asyncio
async def test_release_without_acquire_is_noop(redis):
    assert not await DistributedLock(redis).release()


@pytest.mark.asyncio
async def test_hold_releases_on_exception(redis):
    lock = DistributedLock(redis)

    with pytest.raises(RuntimeError):
        async with lock.hold("subscription:activate:1", timeout_ms=50) as acquired:
            assert acquired
            raise RuntimeError("boom")

    assert not lock.held
    assert not await redis.exists("lock:subscription:activate:1")


@pytest.mark.asyncio
async def test_extend_keeps_lease_alive(redis):
    lock = DistributedLock(redis, lease_seconds=0.2)
    await lock.acquire("subscription:activate:1", timeout_ms=50)

    assert await lock.extend(5)
    await asyncio.sleep(0.3)
    assert await redis.exists("lock:subscription:activate:1")
    assert await lock.release()

"""
Lock manager: SET NX PX acquisition, token-checked release, release on
failure, and the strict / degraded store-outage policies.
"""

import asyncio

import pytest

from app.errors import LockBusy, LockUnavailable
from app.locks import LockManager


def test_second_acquire_is_busy_until_release(redis):
    locks = LockManager(redis)

    async def scenario():
        token = await locks.acquire("booking:B1:assign", 5000)
        with pytest.raises(LockBusy):
            await locks.acquire("booking:B1:assign", 5000)
        assert await locks.release("booking:B1:assign", token) is True
        return await locks.acquire("booking:B1:assign", 5000)

    assert asyncio.run(scenario())


def test_locks_are_scoped_per_key(redis):
    locks = LockManager(redis)

    async def scenario():
        await locks.acquire("booking:B1:assign")
        return await locks.acquire("booking:B2:assign")

    assert asyncio.run(scenario())


def test_release_with_wrong_token_keeps_the_lock(redis):
    locks = LockManager(redis)

    async def scenario():
        token = await locks.acquire("booking:B1:assign")
        assert await locks.release("booking:B1:assign", "not-my-token") is False
        assert await redis.get("lock:booking:B1:assign") == token

    asyncio.run(scenario())


def test_lock_expires_after_ttl(redis):
    locks = LockManager(redis)

    async def scenario():
        stale = await locks.acquire("booking:B1:assign", ttl_ms=1)
        await asyncio.sleep(0.01)
        fresh = await locks.acquire("booking:B1:assign", ttl_ms=5000)
        # the crashed holder's late release must not drop the new holder's lock
        assert await locks.release("booking:B1:assign", stale) is False
        assert await redis.get("lock:booking:B1:assign") == fresh

    asyncio.run(scenario())


def test_hold_releases_when_the_critical_section_raises(redis):
    locks = LockManager(redis)

    async def scenario():
        with pytest.raises(RuntimeError):
            async with locks.hold("booking:B1:assign", 5000):
                raise RuntimeError("boom")
        async with locks.hold("booking:B1:assign", 5000) as token:
            assert token is not None

    asyncio.run(scenario())


def test_hold_fails_fast_when_busy(redis):
    locks = LockManager(redis)
    entered = []

    async def scenario():
        await locks.acquire("booking:B1:assign")
        with pytest.raises(LockBusy):
            async with locks.hold("booking:B1:assign"):
                entered.append(True)

    asyncio.run(scenario())
    assert entered == []


def test_strict_policy_fails_when_store_is_down(broken_redis):
    locks = LockManager(broken_redis, policy="strict")

    async def scenario():
        async with locks.hold("booking:B1:assign"):
            pytest.fail("entered critical section without a lock")

    with pytest.raises(LockUnavailable):
        asyncio.run(scenario())


def test_degraded_policy_proceeds_without_lock(broken_redis):
    locks = LockManager(broken_redis, policy="strict")

    async def scenario():
        async with locks.hold("booking:B1:assign", policy="degraded") as token:
            return token

    assert asyncio.run(scenario()) is None

"""Tests for in-process and distributed locks."""

import asyncio
from datetime import timedelta

import pytest

from rewardlink.services.locks import DistributedLock, KeyedLock, LockTimeout


class TestKeyedLock:
    """Tests for KeyedLock."""

    async def test_serializes_same_key(self):
        locks = KeyedLock()
        order: list[str] = []

        async def _worker(name: str) -> None:
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(_worker("a"), _worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        async with locks.hold("a"):
            async with locks.hold("b"):
                assert locks.locked("a") and locks.locked("b")

    async def test_releases_entries(self):
        locks = KeyedLock()
        async with locks.hold("k"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("k")


class TestDistributedLock:
    """Tests for DistributedLock over the key-value store."""

    async def test_hold_and_release(self, kv):
        lock = DistributedLock(kv)
        async with lock.hold("lock:c:u") as token:
            assert await kv.get("lock:c:u") == token
        assert await kv.get("lock:c:u") is None

    async def test_times_out_while_held(self, kv):
        lock = DistributedLock(kv, poll_interval=0.01)
        async with lock.hold("lock:c:u"):
            with pytest.raises(LockTimeout):
                async with lock.hold("lock:c:u", timeout=0.05):
                    pass

    async def test_expired_holder_does_not_release_new_owner(self, kv, clock):
        lock = DistributedLock(kv, ttl=timedelta(seconds=15))
        async with lock.hold("lock:c:u"):
            clock.advance(16)
            assert await kv.add("lock:c:u", "someone-else", timedelta(seconds=15))
        assert await kv.get("lock:c:u") == "someone-else"

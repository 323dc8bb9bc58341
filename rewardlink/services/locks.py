"""Serialization primitives for per-key critical sections.

``KeyedLock`` serializes coroutines inside one process. ``DistributedLock``
extends that across bot instances with a short-TTL key in the shared
key-value store. The entry pipeline takes both, in-process first, so
that local contenders queue on a cheap ``asyncio.Lock`` instead of
polling the store.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from uuid import uuid4

from rewardlink.db.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Could not acquire a distributed lock before the deadline."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Timed out acquiring lock '{key}'")


class KeyedLock:
    """Per-key ``asyncio.Lock`` registry with reference-counted cleanup."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class DistributedLock:
    """Short-TTL lock in the key-value store.

    The TTL bounds how long a crashed holder can block others. Release is
    owner-checked: a holder whose key already expired and was re-acquired
    by someone else does not delete the new owner's key.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        ttl: timedelta = timedelta(seconds=15),
        poll_interval: float = 0.05,
    ) -> None:
        self._kv = kv
        self._ttl = ttl
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[str]:
        """Acquire ``key``, polling until ``timeout`` seconds have passed.

        Raises:
            LockTimeout: If the lock is still held by someone else at the
                deadline.
        """
        token = uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not await self._kv.add(key, token, self._ttl):
            if deadline is not None and loop.time() >= deadline:
                raise LockTimeout(key)
            await asyncio.sleep(self._poll_interval)
        try:
            yield token
        finally:
            released = await self._kv.delete(key, expected_value=token)
            if not released:
                logger.warning("Lock %s expired before release", key)

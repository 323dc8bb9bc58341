"""Rate limiting primitives.

Two limiters live here:

* ``RateLimiter`` is the per-user fixed-window limiter of the entry
  pipeline. Its windows live in the shared key-value store so every bot
  instance sees the same counts.
* ``TokenBucket`` is an in-process bucket used by the chat gateway to
  stay under the platform's published limits.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from rewardlink.db.kv_store import KeyValueStore
from rewardlink.db.models import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate-limit check.

    Attributes:
        allowed: Whether another attempt may proceed.
        count: Attempts already counted in the current window.
        retry_after: Time until the window resets (zero when allowed).
    """

    allowed: bool
    count: int
    retry_after: timedelta = timedelta(0)


class RateLimiter:
    """Fixed-window attempt counter keyed by ``rl:{kind}:{user}:{connection}``.

    The window covers ``[start, start + window)``. An attempt made exactly
    at ``start + window`` opens a fresh window. Checking never counts;
    only :meth:`hit` does, so a rejected attempt does not extend the
    lockout.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window: timedelta = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._kv = kv
        self._max_attempts = max_attempts
        self._window = window
        self._clock = clock

    @staticmethod
    def key(kind: str, chat_user_id: str, connection_id: str) -> str:
        return f"rl:{kind}:{chat_user_id}:{connection_id}"

    async def _load(self, key: str, now: datetime) -> tuple[int, datetime | None]:
        raw = await self._kv.get(key)
        if raw is None:
            return 0, None
        data = json.loads(raw)
        start = from_iso(data.get("window_start"))
        if start is None or now >= start + self._window:
            return 0, None
        return int(data.get("count", 0)), start

    async def check(self, kind: str, chat_user_id: str, connection_id: str) -> RateLimitDecision:
        """Read-only check of the current window."""
        now = self._clock()
        count, start = await self._load(self.key(kind, chat_user_id, connection_id), now)
        if count < self._max_attempts:
            return RateLimitDecision(allowed=True, count=count)
        reset_at = (start or now) + self._window
        return RateLimitDecision(allowed=False, count=count, retry_after=reset_at - now)

    async def hit(self, kind: str, chat_user_id: str, connection_id: str) -> int:
        """Count one attempt. Returns the count within the current window.

        Callers must serialize hits for the same key; the entry pipeline
        does so with its per-(connection, user) lock.
        """
        now = self._clock()
        key = self.key(kind, chat_user_id, connection_id)
        count, start = await self._load(key, now)
        if start is None:
            start = now
        count += 1
        ttl = (start + self._window) - now
        await self._kv.set(
            key,
            json.dumps({"count": count, "window_start": to_iso(start)}),
            ttl,
        )
        logger.debug("Rate limit %s now %d/%d", key, count, self._max_attempts)
        return count


class TokenBucket:
    """Asyncio token bucket.

    Holds up to ``capacity`` tokens and refills ``capacity`` tokens every
    ``period`` seconds. ``acquire`` suspends until a token is available;
    waiters are served in arrival order.
    """

    def __init__(
        self,
        capacity: int,
        period: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity <= 0 or period <= 0:
            raise ValueError("capacity and period must be positive")
        self.capacity = capacity
        self.period = period
        self._rate = capacity / period
        self._tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self._rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await self._sleep((1 - self._tokens) / self._rate)

    def penalize(self, seconds: float) -> None:
        """Drain the bucket after the platform reported a 429."""
        self._refill()
        self._tokens = min(self._tokens, 0.0) - seconds * self._rate

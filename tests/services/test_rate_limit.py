"""Tests for the fixed-window RateLimiter and the TokenBucket."""

from datetime import timedelta

import pytest

from rewardlink.services.rate_limit import RateLimiter, TokenBucket


@pytest.fixture
def limiter(kv, clock) -> RateLimiter:
    return RateLimiter(kv, max_attempts=3, window=timedelta(minutes=5), clock=clock)


class TestRateLimiter:
    """Tests for RateLimiter."""

    async def test_check_does_not_count(self, limiter):
        for _ in range(5):
            decision = await limiter.check("entry", "user-1", "conn-1")
        assert decision.allowed
        assert decision.count == 0

    async def test_blocks_after_max_hits(self, limiter, clock):
        for _ in range(3):
            await limiter.hit("entry", "user-1", "conn-1")
        clock.advance(60)

        decision = await limiter.check("entry", "user-1", "conn-1")

        assert not decision.allowed
        assert decision.count == 3
        assert decision.retry_after == timedelta(minutes=4)

    async def test_window_end_is_exclusive(self, limiter, clock):
        for _ in range(3):
            await limiter.hit("entry", "user-1", "conn-1")
        clock.advance(300)

        assert (await limiter.check("entry", "user-1", "conn-1")).allowed
        assert await limiter.hit("entry", "user-1", "conn-1") == 1

    async def test_window_starts_at_first_hit(self, limiter, clock):
        await limiter.hit("entry", "user-1", "conn-1")
        clock.advance(200)
        await limiter.hit("entry", "user-1", "conn-1")
        await limiter.hit("entry", "user-1", "conn-1")
        clock.advance(100)

        assert (await limiter.check("entry", "user-1", "conn-1")).allowed

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.hit("entry", "user-1", "conn-1")

        assert (await limiter.check("entry", "user-2", "conn-1")).allowed
        assert (await limiter.check("entry", "user-1", "conn-2")).allowed

    def test_key_format(self):
        assert RateLimiter.key("entry", "u", "c") == "rl:entry:u:c"


class _ManualTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestTokenBucket:
    """Tests for TokenBucket."""

    async def test_burst_then_wait(self):
        time = _ManualTime()
        bucket = TokenBucket(capacity=5, period=5.0, clock=time, sleep=time.sleep)

        for _ in range(5):
            await bucket.acquire()
        assert time.sleeps == []

        await bucket.acquire()
        assert time.sleeps == [pytest.approx(1.0)]

    async def test_refills_over_time(self):
        time = _ManualTime()
        bucket = TokenBucket(capacity=2, period=1.0, clock=time, sleep=time.sleep)
        await bucket.acquire()
        await bucket.acquire()

        time.now += 1.0

        assert bucket.available == pytest.approx(2.0)

    async def test_penalize_drains(self):
        time = _ManualTime()
        bucket = TokenBucket(capacity=10, period=1.0, clock=time, sleep=time.sleep)

        bucket.penalize(0.5)

        assert bucket.available == pytest.approx(-5.0)

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            TokenBucket(capacity=0, period=1.0)

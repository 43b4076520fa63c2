"""滑动窗口限流器测试（假时钟，不真实等待）"""

import pytest

from price_service.layers.ratelimit import RateLimiter, get_rate_limiter


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock: FakeClock, limit: int = 10) -> RateLimiter:
    return RateLimiter(limit=limit, window_seconds=60.0, name="test", clock=clock, sleep=clock.sleep)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_within_limit_does_not_wait(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        for _ in range(10):
            await limiter.acquire()
        assert clock.sleeps == []
        assert limiter.usage()["current"] == 10

    @pytest.mark.asyncio
    async def test_blocks_until_oldest_expires(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        for _ in range(10):
            await limiter.acquire()
        await limiter.acquire()
        assert clock.sleeps == [60.0]
        assert limiter.usage()["current"] == 1

    @pytest.mark.asyncio
    async def test_weights(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        await limiter.acquire(6)
        clock.now = 30.0
        await limiter.acquire(6)
        assert clock.sleeps == [30.0]
        assert limiter.usage()["current"] == 6

    @pytest.mark.asyncio
    async def test_weight_above_limit_rejected(self):
        limiter = _limiter(FakeClock())
        with pytest.raises(ValueError):
            await limiter.acquire(11)

    def test_usage_reset_in(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        assert limiter.usage() == {"name": "test", "current": 0, "limit": 10, "reset_in": 0.0}

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            RateLimiter(limit=0)

    def test_registry_shares_instances(self):
        assert get_rate_limiter("shared-test", 5) is get_rate_limiter("shared-test", 5)

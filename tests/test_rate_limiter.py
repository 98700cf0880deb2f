import asyncio

import pytest

from token_aggregator.providers.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """Quota enforcement over a fixed window."""

    def test_acquire_within_quota_does_not_wait(self) -> None:
        clock = FakeClock()
        sleeps = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)

        limiter = RateLimiter("test", 3, 60.0, clock=clock, sleep=sleep)

        async def run() -> None:
            for _ in range(3):
                await limiter.acquire()

        asyncio.run(run())

        assert sleeps == []
        assert limiter.request_count == 3
        assert limiter.status().remaining == 0

    def test_call_over_quota_blocks_until_reset(self) -> None:
        """The max+1 call waits for the window to reset, then proceeds."""
        clock = FakeClock()
        sleeps = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)
            clock.now += delay

        limiter = RateLimiter("test", 2, 60.0, clock=clock, sleep=sleep)

        async def run() -> None:
            await limiter.acquire()
            clock.now += 10
            await limiter.acquire()
            await limiter.acquire()

        asyncio.run(run())

        assert sleeps == [pytest.approx(50.0)]
        assert limiter.request_count == 1
        assert limiter.reset_time == pytest.approx(1060.0 + 60.0)

    def test_window_expiry_resets_count(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter("test", 1, 60.0, clock=clock, sleep=asyncio.sleep)

        async def run() -> None:
            await limiter.acquire()
            clock.now += 61
            await limiter.acquire()

        asyncio.run(run())

        assert limiter.request_count == 1
        assert limiter.reset_time == pytest.approx(1061.0 + 60.0)

    def test_status_reports_full_quota_after_window(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter("test", 5, 60.0, clock=clock)

        asyncio.run(limiter.acquire())
        assert limiter.status().remaining == 4
        assert limiter.status().total == 5

        clock.now += 60
        assert limiter.status().remaining == 5

    def test_concurrent_callers_never_exceed_quota(self) -> None:
        clock = FakeClock()
        sleeps = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)
            clock.now += delay

        limiter = RateLimiter("test", 3, 60.0, clock=clock, sleep=sleep)

        async def run() -> None:
            await asyncio.gather(*(limiter.acquire() for _ in range(7)))

        asyncio.run(run())

        # 7 calls over a quota of 3: two window resets
        assert len(sleeps) == 2
        assert limiter.request_count == 1

    def test_rejects_invalid_quota(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter("test", 0)

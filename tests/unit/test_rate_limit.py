"""Unit tests for the token bucket rate limiter."""

import asyncio

import pytest

from tenant_migration_worker.utils.rate_limit import (
    RATE_LIMITS,
    RateLimitBucket,
    RateLimitConfig,
    RateLimiter,
    ServiceClass,
)


class FakeClock:
    """Millisecond clock advanced by the fake sleep."""

    def __init__(self, now: float = 0.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000.0


class TestRateLimitBucket:
    """Test cases for a single bucket."""

    def test_refill_caps_at_capacity(self):
        """Test that refill never exceeds capacity."""
        bucket = RateLimitBucket(tokens=5.0, capacity=10, refill_rate_per_ms=1.0, last_refill_at=0.0)

        bucket.refill(1000.0)

        assert bucket.tokens == 10.0
        assert bucket.last_refill_at == 1000.0

    def test_refill_ignores_clock_going_backwards(self):
        """Test that a stale clock reading adds no tokens."""
        bucket = RateLimitBucket(tokens=0.0, capacity=10, refill_rate_per_ms=0.01, last_refill_at=500.0)

        bucket.refill(100.0)

        assert bucket.tokens == 0.0
        assert bucket.last_refill_at == 500.0

    def test_wait_for_one_token(self):
        """Test the wait computation for an empty bucket."""
        # 1 request per second: one token every 1000 ms
        bucket = RateLimitBucket(tokens=0.0, capacity=1, refill_rate_per_ms=0.001, last_refill_at=0.0)

        assert bucket.wait_ms() == 1000

        bucket.tokens = 0.5
        assert bucket.wait_ms() == 500

    def test_try_consume(self):
        """Test consuming tokens until empty."""
        bucket = RateLimitBucket(tokens=2.0, capacity=2, refill_rate_per_ms=0.001, last_refill_at=0.0)

        assert bucket.try_consume() is True
        assert bucket.try_consume() is True
        assert bucket.try_consume() is False
        assert bucket.tokens == 0.0


@pytest.mark.asyncio
class TestRateLimiter:
    """Test cases for RateLimiter."""

    def test_default_limits(self):
        """Test the published quotas per service class."""
        assert RATE_LIMITS[ServiceClass.GENERAL] == RateLimitConfig(10000, 600000)
        assert RATE_LIMITS[ServiceClass.MAIL] == RateLimitConfig(10000, 600000)
        assert RATE_LIMITS[ServiceClass.FILES] == RateLimitConfig(12000, 600000)
        assert RATE_LIMITS[ServiceClass.TEAMS] == RateLimitConfig(30, 1000)
        assert RATE_LIMITS[ServiceClass.TEAMS_MESSAGES] == RateLimitConfig(1, 1000)

    async def test_acquire_consumes_token(self):
        """Test that acquire takes one token from a full bucket."""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)

        await limiter.acquire("tenant-1", ServiceClass.TEAMS)

        assert limiter.get_remaining("tenant-1", ServiceClass.TEAMS) == 29.0
        assert clock.sleeps == []

    async def test_acquire_waits_for_refill(self):
        """Test that an empty bucket waits instead of failing."""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)

        await limiter.acquire("tenant-1", ServiceClass.TEAMS_MESSAGES)
        await limiter.acquire("tenant-1", ServiceClass.TEAMS_MESSAGES)

        assert clock.sleeps == [1.0]
        assert clock.now == 1000.0

    async def test_wait_time_for_partial_refill(self):
        """Test that the wait covers only the missing fraction of a token."""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)

        await limiter.acquire("tenant-1", ServiceClass.TEAMS_MESSAGES)
        clock.now = 400.0
        await limiter.acquire("tenant-1", ServiceClass.TEAMS_MESSAGES)

        assert clock.sleeps[0] == pytest.approx(0.6, abs=0.002)
        assert sum(clock.sleeps) == pytest.approx(0.6, abs=0.002)

    async def test_tokens_stay_within_bounds(self):
        """Test that tokens never go negative or exceed capacity."""
        clock = FakeClock()
        limiter = RateLimiter(
            limits={ServiceClass.TEAMS: RateLimitConfig(capacity=3, window_ms=300)},
            clock=clock,
            sleep=clock.sleep,
        )

        for _ in range(10):
            await limiter.acquire("tenant-1", ServiceClass.TEAMS)
            remaining = limiter.get_remaining("tenant-1", ServiceClass.TEAMS)
            assert 0.0 <= remaining <= 3.0

        clock.now += 60000
        assert limiter.get_remaining("tenant-1", ServiceClass.TEAMS) == 3.0

    async def test_keys_are_independent(self):
        """Test that tenants and service classes have separate buckets."""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)

        await limiter.acquire("tenant-1", ServiceClass.TEAMS_MESSAGES)

        assert limiter.get_remaining("tenant-1", ServiceClass.TEAMS_MESSAGES) == 0.0
        assert limiter.get_remaining("tenant-2", ServiceClass.TEAMS_MESSAGES) == 1.0
        assert limiter.get_remaining("tenant-1", ServiceClass.TEAMS) == 30.0

    async def test_get_remaining_does_not_consume(self):
        """Test that get_remaining never mutates bucket state."""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)
        await limiter.acquire("tenant-1", ServiceClass.TEAMS)

        first = limiter.get_remaining("tenant-1", ServiceClass.TEAMS)
        second = limiter.get_remaining("tenant-1", ServiceClass.TEAMS)

        assert first == second == 29.0

    async def test_reset_removes_tenant_buckets(self):
        """Test that reset drops only the given tenant's buckets."""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)
        await limiter.acquire("tenant-1", ServiceClass.MAIL)
        await limiter.acquire("tenant-1", ServiceClass.FILES)
        await limiter.acquire("tenant-2", ServiceClass.MAIL)

        assert limiter.reset("tenant-1") == 2

        assert limiter.get_remaining("tenant-1", ServiceClass.MAIL) == 10000.0
        assert limiter.get_remaining("tenant-2", ServiceClass.MAIL) == 9999.0
        assert limiter.reset("unknown") == 0

    async def test_concurrent_acquirers_are_serialized(self):
        """Test that concurrent acquirers never over-consume a bucket."""
        clock = FakeClock()
        limiter = RateLimiter(
            limits={ServiceClass.TEAMS: RateLimitConfig(capacity=5, window_ms=1000)},
            clock=clock,
            sleep=clock.sleep,
        )

        await asyncio.gather(*(limiter.acquire("tenant-1", ServiceClass.TEAMS) for _ in range(5)))

        assert limiter.get_remaining("tenant-1", ServiceClass.TEAMS) == 0.0
        assert clock.sleeps == []

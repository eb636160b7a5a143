"""Rate limiting utilities for the cloud API surface.

Provides a per-tenant, per-service token bucket limiter. Every outbound API
call acquires one token from the bucket of its (tenant, service class) pair;
callers without a token wait for the continuous refill instead of failing.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog

logger = structlog.get_logger()


class ServiceClass(str, Enum):
    """Independently quota'd subsets of the API."""

    GENERAL = "general"
    MAIL = "mail"
    FILES = "files"  # drives and sites share one quota
    TEAMS = "teams"
    TEAMS_MESSAGES = "teams_messages"


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota for one service class: `capacity` requests per `window_ms`."""

    capacity: int
    window_ms: int

    @property
    def refill_rate_per_ms(self) -> float:
        return self.capacity / self.window_ms


RATE_LIMITS: Dict[ServiceClass, RateLimitConfig] = {
    ServiceClass.GENERAL: RateLimitConfig(capacity=10000, window_ms=600000),
    ServiceClass.MAIL: RateLimitConfig(capacity=10000, window_ms=600000),
    ServiceClass.FILES: RateLimitConfig(capacity=12000, window_ms=600000),
    ServiceClass.TEAMS: RateLimitConfig(capacity=30, window_ms=1000),
    ServiceClass.TEAMS_MESSAGES: RateLimitConfig(capacity=1, window_ms=1000),
}


@dataclass
class RateLimitBucket:
    """Token bucket state for one (tenant, service class) key.

    Attributes:
        tokens: Currently available tokens, always within [0, capacity]
        capacity: Maximum number of tokens
        refill_rate_per_ms: Tokens added per elapsed millisecond
        last_refill_at: Clock reading (ms) of the last refill
    """

    tokens: float
    capacity: int
    refill_rate_per_ms: float
    last_refill_at: float

    def refill(self, now_ms: float) -> None:
        """Add the tokens accrued since the last refill, capped at capacity."""
        elapsed = max(0.0, now_ms - self.last_refill_at)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate_per_ms)
        self.last_refill_at = max(self.last_refill_at, now_ms)

    def projected(self, now_ms: float) -> float:
        """Return the token count a refill at `now_ms` would produce."""
        elapsed = max(0.0, now_ms - self.last_refill_at)
        return min(float(self.capacity), self.tokens + elapsed * self.refill_rate_per_ms)

    def try_consume(self) -> bool:
        """Consume one token if available."""
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def wait_ms(self) -> int:
        """Milliseconds until one full token is available."""
        return max(1, math.ceil((1 - self.tokens) / self.refill_rate_per_ms))


BucketKey = Tuple[str, ServiceClass]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimiter:
    """Token bucket rate limiter keyed by tenant and service class.

    Buckets are created lazily on first acquisition and removed only through
    `reset()`, so the map is bounded by the distinct tenant x service keys in
    use. Each bucket has its own lock; refill and consume for one key happen
    atomically with respect to other acquirers of that key.
    """

    def __init__(
        self,
        limits: Optional[Dict[ServiceClass, RateLimitConfig]] = None,
        clock: Callable[[], float] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the rate limiter.

        Args:
            limits: Quotas per service class (defaults to RATE_LIMITS)
            clock: Millisecond clock
            sleep: Coroutine used to wait, receives seconds
        """
        self.limits = dict(RATE_LIMITS)
        if limits:
            self.limits.update(limits)
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[BucketKey, RateLimitBucket] = {}
        self._locks: Dict[BucketKey, asyncio.Lock] = {}

    def _config(self, service_class: ServiceClass) -> RateLimitConfig:
        return self.limits.get(service_class, self.limits[ServiceClass.GENERAL])

    def _bucket(self, key: BucketKey) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            config = self._config(key[1])
            bucket = RateLimitBucket(
                tokens=float(config.capacity),
                capacity=config.capacity,
                refill_rate_per_ms=config.refill_rate_per_ms,
                last_refill_at=self._clock(),
            )
            self._buckets[key] = bucket
        return bucket

    def _lock(self, key: BucketKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def acquire(
        self,
        tenant_id: str,
        service_class: ServiceClass = ServiceClass.GENERAL,
    ) -> None:
        """Wait until a token is available for the tenant/service, then consume it.

        Args:
            tenant_id: Internal tenant identifier
            service_class: API surface the call targets
        """
        key = (tenant_id, ServiceClass(service_class))
        while True:
            async with self._lock(key):
                bucket = self._bucket(key)
                bucket.refill(self._clock())
                if bucket.try_consume():
                    return
                wait_ms = bucket.wait_ms()

            logger.debug(
                "Rate limit wait",
                tenant_id=tenant_id,
                service_class=key[1].value,
                wait_ms=wait_ms,
            )
            await self._sleep(wait_ms / 1000.0)

    def get_remaining(
        self,
        tenant_id: str,
        service_class: ServiceClass = ServiceClass.GENERAL,
    ) -> float:
        """Return the tokens currently available without consuming any."""
        service_class = ServiceClass(service_class)
        bucket = self._buckets.get((tenant_id, service_class))
        if bucket is None:
            return float(self._config(service_class).capacity)
        return bucket.projected(self._clock())

    def reset(self, tenant_id: str) -> int:
        """Drop every bucket belonging to a tenant.

        Args:
            tenant_id: Tenant whose buckets are removed (e.g. on disconnect)

        Returns:
            Number of buckets removed
        """
        keys = [key for key in self._buckets if key[0] == tenant_id]
        for key in keys:
            del self._buckets[key]
            self._locks.pop(key, None)

        logger.info("Rate limiter reset", tenant_id=tenant_id, buckets_removed=len(keys))
        return len(keys)

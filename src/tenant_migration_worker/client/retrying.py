"""Retrying, rate-limited execution of API calls.

Every outbound call of a workload processor goes through
`RetryingClient.execute`, so processors only ever observe success or a
terminal failure.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from ..utils.errors import RateLimitError, RetriableError
from ..utils.rate_limit import RateLimiter, ServiceClass

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryingClient:
    """Apply rate limiting and retry policy around API calls.

    Policy:
    - A token is acquired from the rate limiter before every attempt
    - RateLimitError (429): sleep exactly `retry_after` seconds and retry;
      these retries are unbounded and do not use the retry budget
    - Other RetriableError (5xx): retry up to `max_retries` times, sleeping
      `base_delay * 2 ** attempt` seconds
    - Anything else propagates immediately
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize retrying client.

        Args:
            rate_limiter: Shared per-tenant rate limiter
            max_retries: Retry budget for transient (5xx) failures
            base_delay: Backoff base in seconds
            sleep: Coroutine used for backoff waits
        """
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def execute(
        self,
        tenant_id: str,
        service_class: ServiceClass,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run `fn` under the tenant's rate limit with retries.

        Args:
            tenant_id: Tenant whose quota the call consumes
            service_class: API surface the call targets
            fn: Zero-argument coroutine factory performing one attempt

        Returns:
            Result of the first successful attempt

        Raises:
            The terminal error, or the last transient error once the retry
            budget is exhausted
        """
        transient_failures = 0

        # `after` runs before both `wait` and `stop`
        def _after(retry_state: RetryCallState) -> None:
            nonlocal transient_failures
            if not isinstance(retry_state.outcome.exception(), RateLimitError):
                transient_failures += 1

        def _stop(retry_state: RetryCallState) -> bool:
            if isinstance(retry_state.outcome.exception(), RateLimitError):
                return False
            return transient_failures > self.max_retries

        def _wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception()
            if isinstance(error, RateLimitError):
                return float(error.retry_after)
            return self.base_delay * (2 ** max(0, transient_failures - 1))

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                "Retrying API call: tenant_id=%s, service_class=%s, error=%s, wait_seconds=%s, attempt=%s",
                tenant_id,
                ServiceClass(service_class).value,
                error,
                retry_state.next_action.sleep if retry_state.next_action else None,
                retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RetriableError),
            after=_after,
            stop=_stop,
            wait=_wait,
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                await self.rate_limiter.acquire(tenant_id, service_class)
                return await fn()

        # AsyncRetrying either returns from the block above or reraises
        raise RuntimeError("Unexpected retry loop exit")


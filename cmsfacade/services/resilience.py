"""
ResilienceController - timeout, classified retry and circuit breaking
for any async upstream operation.

Order of checks for execute():
1. Circuit breaker for the operation's upstream identity (OPEN rejects)
2. Retry loop, each attempt bounded by the policy's deadline
3. Outcome reported to the breaker once per call
"""

import asyncio
import inspect
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from cmsfacade.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from cmsfacade.services.errors import (
    CircuitOpenError,
    UpstreamTimeoutError,
    is_transient,
)
from cmsfacade.services.retry import RetryPolicy, run_with_retry

T = TypeVar("T")

ErrorObserver = Callable[[BaseException], Any]


class ResilienceController:
    """
    Wraps upstream calls with retry, timeout and per-upstream circuit breakers.

    Usage:
        controller = ResilienceController()
        rows = await controller.execute(
            "baserow:stations",
            lambda: adapter.fetch_all("stations", options),
            RetryPolicy(max_attempts=3),
        )
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        default_policy: RetryPolicy | None = None,
        circuit_breaker_enabled: bool = True,
        breaker_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._breakers = breakers or CircuitBreakerRegistry(breaker_config, clock=clock)
        self._default_policy = default_policy or RetryPolicy()
        self._circuit_breaker_enabled = circuit_breaker_enabled
        self._sleep = sleep
        self._rng = rng

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    async def execute(
        self,
        operation_id: str,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> T:
        """
        Run operation under the breaker for operation_id.

        Raises:
            CircuitOpenError: If the breaker is open (operation is not called)
            ServiceError: The classified error once retries are exhausted
        """
        policy = policy or self._default_policy

        async def attempt() -> T:
            return await self._with_timeout(operation_id, operation, policy)

        if not self._circuit_breaker_enabled:
            return await run_with_retry(
                attempt, policy, operation_id, sleep=self._sleep, rng=self._rng
            )

        cb = self._breakers.get(operation_id)
        ticket = cb.try_acquire()
        if ticket is None:
            raise CircuitOpenError(operation_id, cb.get_time_until_reset() or 0)

        try:
            result = await run_with_retry(
                attempt, policy, operation_id, sleep=self._sleep, rng=self._rng
            )
        except BaseException as e:
            if is_transient(e):
                cb.record_failure(ticket)
            else:
                cb.record_ignored(ticket)
            raise

        cb.record_success(ticket)
        return result

    async def with_fallback(
        self,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], T | Awaitable[T]],
        on_error: ErrorObserver | None = None,
        should_fallback: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """
        Return primary's result, or fallback's when primary fails.

        on_error always sees the primary failure, even when should_fallback
        declines and the error is re-raised. The fallback is not retried.
        """
        try:
            return await primary()
        except Exception as e:
            if on_error is not None:
                observed = on_error(e)
                if inspect.isawaitable(observed):
                    await observed

            if should_fallback is not None and not should_fallback(e):
                raise

            logger.warning(f"Using fallback due to error: {e}")
            result = fallback()
            if inspect.isawaitable(result):
                result = await result
            return result

    async def _with_timeout(
        self,
        operation_id: str,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
    ) -> T:
        if policy.timeout is None:
            return await operation()

        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(
                operation_id, policy.timeout, retryable=policy.retry_on_timeout
            ) from e

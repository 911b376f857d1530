"""
Classified retry with exponential backoff and jitter.

Delay before retry n (0-based) is min(max_delay, base_delay * 2**n),
then scaled by a random factor in [1 - jitter, 1 + jitter].
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from cmsfacade.services.errors import ServiceError, UpstreamTimeoutError

T = TypeVar("T")


def default_retryable(error: BaseException) -> bool:
    """Transient upstream errors are retryable, everything else is not."""
    return isinstance(error, ServiceError) and error.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one class of operation."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    jitter: float = 0.2  # +/- fraction of the computed delay
    timeout: float | None = 15.0  # per-attempt deadline, seconds
    retry_on_timeout: bool = True  # False for non-idempotent writes
    retryable: Callable[[BaseException], bool] = field(default=default_retryable)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 0 <= base_delay <= max_delay")

    def compute_delay(self, attempt: int) -> float:
        """Backoff before jitter for the given 0-based retry index."""
        return min(self.max_delay, self.base_delay * (2**attempt))

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(error, UpstreamTimeoutError) and not self.retry_on_timeout:
            return False
        return self.retryable(error)


class BackoffWait:
    """tenacity wait strategy implementing RetryPolicy backoff with jitter."""

    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None):
        self.policy = policy
        self._rng = rng or random.Random()

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.policy.compute_delay(retry_state.attempt_number - 1)

        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.policy.max_delay))

        if self.policy.jitter:
            delay *= self._rng.uniform(1 - self.policy.jitter, 1 + self.policy.jitter)
        return max(0.0, delay)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_id: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """
    Run operation, retrying classified-retryable failures.

    Non-retryable errors propagate after the first attempt. On exhaustion
    the last error propagates with its `attempts` attribute set.
    """

    def log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"[{operation_id}] attempt {retry_state.attempt_number}/{policy.max_attempts} "
            f"failed: {error}; retrying in {wait:.2f}s"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=BackoffWait(policy, rng),
        retry=retry_if_exception(policy.should_retry),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )

    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                return await operation()
    except ServiceError as e:
        e.attempts = attempts
        raise

    raise RuntimeError("unreachable: retry loop exited without result")

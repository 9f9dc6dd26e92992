"""
Retry Executor
==============

Bounded exponential-backoff retries for query loaders.

The n-th retry waits ``base_delay * backoff_multiplier ** (n - 1)``
seconds, optionally capped by ``max_delay``. Only errors accepted by the
policy's predicate are retried; everything else, and the last error once
attempts are exhausted, propagates to the caller unchanged.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dashsync.exceptions import is_transient_error
from dashsync.kernel.clock import AsyncioClock, Clock

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters for one class of operations."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float | None = None
    retry_predicate: Callable[[BaseException], bool] = is_transient_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("max_delay must not be negative")

    def delay_for(self, retry_number: int) -> float:
        """Wait before the given retry (1 for the first retry)."""
        delay = self.base_delay * self.backoff_multiplier ** (retry_number - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, exc: BaseException) -> bool:
        # Cancellation is never a retryable failure
        return isinstance(exc, Exception) and self.retry_predicate(exc)


@dataclass
class RetryStats:
    """Statistics for retry monitoring."""

    calls: int = 0
    attempts: int = 0
    retries: int = 0
    successes: int = 0
    failures: int = 0
    exhausted: int = 0


class RetryExecutor:
    """
    Runs async operations under a RetryPolicy.

    Backoff waits go through the injected clock, so tests can drive them
    with a virtual clock instead of real sleeps.
    """

    def __init__(self, policy: RetryPolicy | None = None, clock: Clock | None = None) -> None:
        self.policy = policy or RetryPolicy()
        self._clock = clock or AsyncioClock()
        self._stats = RetryStats()

    def _retrying(self, policy: RetryPolicy) -> AsyncRetrying:
        wait_kwargs: dict[str, Any] = {
            "multiplier": policy.base_delay,
            "exp_base": policy.backoff_multiplier,
        }
        if policy.max_delay is not None:
            wait_kwargs["max"] = policy.max_delay

        return AsyncRetrying(
            sleep=self._clock.sleep,
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(**wait_kwargs),
            retry=retry_if_exception(policy.should_retry),
            before_sleep=functools.partial(self._before_sleep, policy),
            reraise=True,
        )

    def _before_sleep(self, policy: RetryPolicy, retry_state: RetryCallState) -> None:
        self._stats.retries += 1
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        wait = policy.delay_for(retry_state.attempt_number)
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=policy.max_attempts,
            wait_seconds=wait,
            error=str(error),
            error_type=type(error).__name__,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails permanently, or runs out
        of attempts.

        Args:
            operation: Zero-argument coroutine function, called once per attempt
            policy: Overrides the executor's policy for this call

        Raises:
            The operation's last error, unchanged
        """
        policy = policy or self.policy
        self._stats.calls += 1
        attempts = 0
        try:
            async for attempt in self._retrying(policy):
                with attempt:
                    attempts += 1
                    self._stats.attempts += 1
                    result = await operation()
        except Exception as e:
            self._stats.failures += 1
            if attempts >= policy.max_attempts and policy.should_retry(e):
                self._stats.exhausted += 1
                logger.error(
                    "retry_exhausted",
                    attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            raise

        self._stats.successes += 1
        if attempts > 1:
            logger.info("retry_succeeded", attempts=attempts)
        return result

    def wrap(
        self,
        operation: Callable[P, Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> Callable[P, Awaitable[T]]:
        """Return a retrying version of ``operation``, e.g. as a cache loader."""

        @functools.wraps(operation)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await self.execute(lambda: operation(*args, **kwargs), policy)

        return wrapper

    def get_stats(self) -> RetryStats:
        """Get retry statistics."""
        return self._stats


def retrying(
    policy: RetryPolicy | None = None,
    clock: Clock | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Decorator form of RetryExecutor.

    Usage:
        @retrying(RetryPolicy(max_attempts=5))
        async def load_bookings() -> list[dict]:
            ...
    """
    executor = RetryExecutor(policy, clock)
    return executor.wrap

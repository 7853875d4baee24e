"""Bounded exponential backoff for transient upstream failures."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from pawmotion.services.exceptions import TransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule: `max_attempts` tries, delays base * factor^(n-1) capped at max_delay."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay_seconds,
        )


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: SleepFunc = asyncio.sleep,
    **log_context,
) -> T:
    """Run `func`, retrying TransientError up to the policy's attempt limit.

    Permanent errors propagate immediately. When attempts are exhausted the
    last transient error is re-raised for the caller to convert.

    Args:
        func: Zero-argument coroutine function performing one attempt
        policy: Retry schedule
        sleep: Awaitable sleep (injected in tests)
        **log_context: Extra fields attached to retry log events

    Returns:
        Result of the first successful attempt
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except TransientError as e:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "retry.exhausted",
                    attempts=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                    **log_context,
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "retry.scheduled",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            await sleep(delay)

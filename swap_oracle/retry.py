"""Bounded exponential backoff for calls to flaky dependencies."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Delay doubles from ``base_delay`` up to ``max_delay``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    @classmethod
    def from_config(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **log_context,
) -> T:
    """
    Run ``operation`` until it succeeds or the attempts run out.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. The last retryable exception is re-raised once
    the budget is spent.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    "Retries exhausted",
                    operation=description,
                    attempts=attempt,
                    error=str(e),
                    **log_context,
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying after failure",
                operation=description,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e),
                **log_context,
            )
            await sleep(delay)

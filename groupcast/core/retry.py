"""Retry logic with exponential backoff for transient failures."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from groupcast.observability.logging import get_logger

T = TypeVar("T")
log = get_logger("retry")


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""

    pass


class TransientError(RetryableError):
    """Transient error that may succeed on retry."""

    pass


class RateLimitError(RetryableError):
    """Rate limit exceeded, should retry with backoff."""

    pass


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retries: int = 2,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    retryable_exceptions: tuple[Type[Exception], ...] = (RetryableError, asyncio.TimeoutError),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Retry an async function with exponential backoff.

    The first retry waits ``base_delay`` seconds and every further retry
    doubles it, capped at ``max_delay``.

    Args:
        func: Async function to retry
        *args: Positional arguments for func
        retries: Retries after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound for any single delay (seconds)
        retryable_exceptions: Exceptions that should trigger retry
        sleep: Awaitable used for the backoff delays
        **kwargs: Keyword arguments for func

    Returns:
        Function result

    Raises:
        The last exception raised by func once retries are exhausted, or
        the first non-retryable exception.
    """
    max_attempts = max(1, retries + 1)
    retry_config = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, min=0, max=max_delay),
        retry=retry_if_exception_type(retryable_exceptions),
        sleep=sleep,
        reraise=True,
    )

    name = getattr(func, "__name__", repr(func))
    attempt = 0
    async for attempt_state in retry_config:
        with attempt_state:
            attempt += 1
            try:
                result = await func(*args, **kwargs)
                if attempt > 1:
                    log.info("retry_succeeded", func=name, attempts=attempt)
                return result
            except Exception as e:
                log.warning(
                    "retry_failed_attempt",
                    func=name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

    # This should never be reached due to reraise=True
    raise RuntimeError("Retry logic failed unexpectedly")

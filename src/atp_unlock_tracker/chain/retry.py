"""Bounded retry with exponential backoff for async network operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    description: str | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` are spent.

    Waits ``base_delay * 2**attempt`` seconds between attempts. Exceptions
    outside ``retry_on`` propagate immediately.

    Args:
        operation: Zero-argument coroutine factory.
        max_attempts: Total attempts, including the first.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Exception types that trigger a retry.
        description: Label used in log lines and the final error.

    Raises:
        RetryError: After the final attempt fails, chained from its exception.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    label = description or getattr(operation, "__name__", "operation")
    last_exception: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await operation()
        except retry_on as e:
            last_exception = e
            if attempt == max_attempts - 1:
                break

            delay = base_delay * (2**attempt)
            logger.warning(
                "%s: attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                label,
                attempt + 1,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    logger.error("%s: all %d attempts failed: %s", label, max_attempts, last_exception)
    raise RetryError(
        f"All {max_attempts} attempts failed for {label}",
        last_exception=last_exception,
    ) from last_exception


def with_retry(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_attempts: Total attempts, including the first.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                base_delay=base_delay,
                retry_on=retry_on,
                description=func.__name__,
            )

        return wrapper

    return decorator

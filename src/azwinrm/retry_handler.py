"""Retry logic for transient Azure failures.

This module provides an async retry helper and decorator for provider calls
that may fail transiently (throttling, conflicts while another update is in
flight, network errors).

Design Philosophy:
- Ruthless simplicity: One helper, one decorator
- Configurable: Max attempts, delays, jitter can be tuned
- Observable: Clear logging of retry attempts
- Cancellation-safe: asyncio.CancelledError is never retried

Usage:
    @retry_async(max_attempts=3)
    async def azure_operation():
        await client.some_operation()

    # Without a decorator, when attempts come from configuration
    await call_with_retry(create_rule, max_attempts=config.security_rule_max_attempts)
"""

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    TimeoutError,
    ConnectionError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    initial_delay: float = 0.0,
    max_delay: float = 30.0,
    jitter: bool = False,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
    description: str | None = None,
    **kwargs: Any,
) -> T:
    """Await func(*args, **kwargs), retrying on retryable exceptions.

    Args:
        func: Coroutine function to call
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Delay before the second attempt in seconds; doubles
            after each failure. 0 retries immediately.
        max_delay: Maximum delay between attempts
        jitter: Add ±25% random jitter to delays
        retryable_exceptions: Exception types to retry
            (default: common Azure/network errors)
        description: Name used in log messages (default: func.__name__)

    Returns:
        Result of func

    Raises:
        The last exception once max_attempts is exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if retryable_exceptions is None:
        retryable_exceptions = DEFAULT_RETRYABLE_EXCEPTIONS

    name = description or getattr(func, "__name__", "operation")
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            result = await func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"{name} succeeded on attempt {attempt}/{max_attempts}")
            return result

        except retryable_exceptions as e:
            if attempt >= max_attempts:
                logger.debug(
                    f"{name} failed after {max_attempts} attempts: {safe_error_message(e)}"
                )
                raise

            actual_delay = delay
            if jitter and delay > 0:
                jitter_amount = delay * 0.25
                actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)
            actual_delay = min(actual_delay, max_delay)

            logger.debug(
                f"{name} failed on attempt {attempt}/{max_attempts}, "
                f"retrying in {actual_delay:.2f}s: {safe_error_message(e)}"
            )
            if actual_delay > 0:
                await asyncio.sleep(actual_delay)
            delay *= 2

    raise RuntimeError(f"{name} failed with unknown error")


def retry_async(
    max_attempts: int = 3,
    initial_delay: float = 0.0,
    max_delay: float = 30.0,
    jitter: bool = False,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of call_with_retry for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await call_with_retry(
                func,
                *args,
                max_attempts=max_attempts,
                initial_delay=initial_delay,
                max_delay=max_delay,
                jitter=jitter,
                retryable_exceptions=retryable_exceptions,
                **kwargs,
            )

        return wrapper

    return decorator


def is_not_found(error: BaseException) -> bool:
    """True when the provider reported the resource does not exist."""
    if isinstance(error, ResourceNotFoundError):
        return True
    return isinstance(error, HttpResponseError) and error.status_code == 404


def safe_error_message(exception: BaseException) -> str:
    """Create safe error message without leaking credentials.

    Truncates long provider messages and masks common credential patterns.
    """
    error_str = str(exception) or type(exception).__name__

    if len(error_str) > 300:
        error_str = error_str[:300] + "..."

    sensitive_patterns = [
        "secret=",
        "password=",
        "token=",
        "key=",
        "authorization:",
    ]

    for pattern in sensitive_patterns:
        if pattern in error_str.lower():
            index = error_str.lower().index(pattern)
            error_str = error_str[:index] + f"{pattern}***"

    return error_str


__all__ = [
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "call_with_retry",
    "is_not_found",
    "retry_async",
    "safe_error_message",
]

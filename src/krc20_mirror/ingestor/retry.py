"""Upstream error taxonomy and the retry policy applied to upstream calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (408, 429, 500, 502, 503, 504)


class UpstreamError(Exception):
    """Base exception for upstream API errors."""


class TransientError(UpstreamError):
    """Raised for retryable errors (timeouts, connection failures, 429/5xx)."""


class FatalError(UpstreamError):
    """Raised for non-retryable errors (other 4xx, malformed payloads)."""


class RetryError(TransientError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def is_retryable_status(status: int) -> bool:
    """Return True if an HTTP status should be treated as transient."""
    return status in RETRY_STATUS_CODES or 500 <= status < 600


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    fallback: Callable[[Exception], T] | None = None,
    retry_on: tuple[type[Exception], ...] = (TransientError,),
    description: str = "upstream call",
) -> T:
    """Run an async operation with linear backoff.

    Attempt ``n`` that fails with an exception in ``retry_on`` sleeps
    ``base_delay * n`` before the next attempt. Anything else propagates
    immediately.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        max_attempts: Total attempts, including the first.
        base_delay: Backoff base in seconds.
        fallback: Called with the last error once attempts are exhausted;
            its return value becomes the result.
        retry_on: Exception types considered retryable.
        description: Human-readable label used in log messages.

    Returns:
        The operation's result, or the fallback's value.

    Raises:
        RetryError: If attempts are exhausted and no fallback is given.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exception: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_exception = e
            if attempt == max_attempts:
                break

            delay = base_delay * attempt
            logger.warning(
                "%s: attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                description,
                attempt,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    if fallback is not None:
        logger.warning(
            "%s: all %d attempts failed, using fallback: %s",
            description,
            max_attempts,
            last_exception,
        )
        return fallback(last_exception)  # type: ignore[arg-type]

    raise RetryError(
        f"All {max_attempts} attempts failed for {description}",
        last_exception=last_exception,
    )

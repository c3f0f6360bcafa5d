"""Retry utilities with exponential backoff for upload requests."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import ParamSpec, TypeVar

from s3_uploads.exceptions import ServerError, StorageConnectionError, StorageError

__all__ = ("RETRYABLE_ERROR_CODES", "RetryConfig", "retry", "with_retry")

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

RETRYABLE_ERROR_CODES = frozenset({"SlowDown", "RequestTimeout", "InternalError", "ServiceUnavailable"})


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delays
        retryable_exceptions: Exception types that always trigger a retry
        retry_server_errors: Also retry 5xx responses and throttling codes
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (StorageConnectionError, TimeoutError, ConnectionError)
    )
    retry_server_errors: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number.

        Uses exponential backoff with optional jitter.

        Args:
            attempt: The attempt number (0-indexed)

        Returns:
            Delay in seconds before the next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base**attempt),
            self.max_delay,
        )

        if self.jitter:
            # Add up to 25% jitter
            delay = delay * (0.75 + random.random() * 0.5)  # noqa: S311

        return delay

    def is_retryable(self, error: BaseException) -> bool:
        """Whether a failed attempt should be retried.

        Args:
            error: Exception raised by the attempt

        Returns:
            True for connection problems and, if enabled, for server-side
            failures (status >= 500 or a throttling error code)
        """
        if isinstance(error, self.retryable_exceptions):
            return True
        if self.retry_server_errors and isinstance(error, ServerError):
            return error.status_code >= 500 or error.code in RETRYABLE_ERROR_CODES
        return False


async def with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    description: str = "request",
) -> T:
    """Execute an async function with retry logic.

    Args:
        func: Async callable to execute
        config: Retry configuration. If None, uses default RetryConfig.
        description: What is being retried, for log messages

    Returns:
        Result of the function call

    Raises:
        Exception: The last error once retries are exhausted, or the first
            non-retryable error

    Example::

        etag = await with_retry(lambda: transport.upload_part(...), RetryConfig(max_retries=5))
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not config.is_retryable(e):
                raise
            if attempt >= config.max_retries:
                logger.exception("All %d retries exhausted for %s", config.max_retries, description)
                raise

            delay = config.calculate_delay(attempt)
            logger.warning(
                "Retry attempt %d/%d for %s after %.2fs: %s",
                attempt + 1,
                config.max_retries,
                description,
                delay,
                str(e),
            )
            await asyncio.sleep(delay)

    # Should not reach here, but satisfy type checker
    raise StorageError("Unexpected retry failure")


def retry(
    config: RetryConfig | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic to async functions.

    Args:
        config: Retry configuration. If None, uses default RetryConfig.

    Returns:
        Decorator function

    Example::

        @retry(RetryConfig(max_retries=5))
        async def initiate(bucket: str, key: str) -> str:
            return await transport.create_multipart_upload(bucket, key)
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        func_name = getattr(func, "__name__", repr(func))

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await with_retry(lambda: func(*args, **kwargs), config, description=func_name)

        return wrapper

    return decorator

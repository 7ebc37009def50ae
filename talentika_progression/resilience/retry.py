"""Retry logic with exponential backoff and jitter

Implements retry logic that:
1. Only retries transient errors (version conflicts, timeouts, 5xx errors)
2. Uses exponential backoff with jitter so racing writers spread out
3. Gives up after max retries to avoid infinite loops
"""

import asyncio
import random
import logging
from typing import Awaitable, Callable, Any, Optional, TypeVar
import httpx

from talentika_progression.exceptions import OperationTimeoutError, ProgressionError

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Retry configuration
MAX_RETRIES = 3
BASE_DELAY = 0.05  # seconds
MAX_DELAY = 2.0  # seconds
JITTER = 0.1  # 10% random jitter


def is_retryable_error(exc: Exception) -> bool:
    """
    Determine if error is transient and should be retried.

    Retryable errors:
    - Engine errors flagged retryable (ConflictError, OperationTimeoutError)
    - Network timeouts
    - HTTP 429 (rate limit)
    - HTTP 500/502/503/504 (server errors)

    Non-retryable errors:
    - Business rule failures (insufficient balance, closed challenge, ...)
    - HTTP 400/401/403/404 (client errors)

    Args:
        exc: The exception to check

    Returns:
        True if error should be retried, False otherwise
    """
    if isinstance(exc, ProgressionError):
        return exc.retryable

    # HTTPX errors
    if isinstance(exc, httpx.HTTPStatusError):
        # Retry on rate limits and server errors
        status_code = exc.response.status_code
        return status_code in [429, 500, 502, 503, 504]

    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError)):
        return True

    if isinstance(exc, asyncio.TimeoutError):
        return True

    # Default: don't retry unknown errors
    return False


def calculate_backoff(attempt: int, base_delay: float = BASE_DELAY) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Formula: delay = min(base_delay * (2 ** attempt), MAX_DELAY) + jitter
    Jitter is random value between -10% and +10% of delay

    Args:
        attempt: The retry attempt number (0-indexed)
        base_delay: Delay for the first retry

    Returns:
        Delay in seconds
    """
    # Exponential backoff
    delay = min(base_delay * (2 ** attempt), MAX_DELAY)

    # Add jitter to prevent thundering herd
    jitter_amount = random.uniform(-JITTER * delay, JITTER * delay)
    final_delay = delay + jitter_amount

    return max(final_delay, 0.0)  # Ensure non-negative


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    should_retry: Callable[[Exception], bool] = is_retryable_error,
    on_retry: Optional[Callable[[Exception], None]] = None,
    **kwargs: Any
) -> T:
    """
    Retry async function with exponential backoff.

    Only retries errors accepted by `should_retry`. Gives up after
    max_retries attempts and re-raises the last error.

    Args:
        func: Async function to retry
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Delay before the first retry
        should_retry: Predicate deciding whether an error is transient
        on_retry: Optional hook called with the error before each retry
        *args, **kwargs: Arguments to pass to func

    Returns:
        Result from func

    Raises:
        Last exception if all retries exhausted or non-retryable error

    Example:
        result = await retry_with_backoff(commit_attempt, max_retries=3)
    """
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            # If this was the last attempt, give up
            if attempt == max_retries:
                if should_retry(e):
                    logger.warning(
                        f"[RETRY] All {max_retries} retries exhausted for {func.__name__}"
                    )
                raise

            if not should_retry(e):
                raise

            if on_retry is not None:
                on_retry(e)

            backoff = calculate_backoff(attempt, base_delay)
            logger.info(
                f"[RETRY] Attempt {attempt + 1}/{max_retries} for {func.__name__} "
                f"after {backoff:.3f}s (error: {type(e).__name__})"
            )

            # Wait before retrying
            await asyncio.sleep(backoff)

    raise RuntimeError("Retry logic failed unexpectedly")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
    user_id: Optional[str] = None
) -> T:
    """
    Await with a deadline.

    A timeout becomes OperationTimeoutError; the outcome of the call is
    unknown and must never be reported as success.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(
            message=f"{operation} did not complete within {timeout}s",
            timeout_seconds=timeout,
            user_id=user_id,
            operation=operation,
            cause=e
        )

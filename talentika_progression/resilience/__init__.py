"""Resilience patterns for store and collaborator calls

Retry with backoff for transient failures (version conflicts, timeouts)
and bounded waits for every external call.
"""

from talentika_progression.resilience.retry import (
    calculate_backoff,
    is_retryable_error,
    retry_with_backoff,
    with_timeout,
)

__all__ = [
    "calculate_backoff",
    "is_retryable_error",
    "retry_with_backoff",
    "with_timeout",
]

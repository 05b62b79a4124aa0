"""
Reliability module: retry with backoff for idempotent store reads.
"""

from coedit.reliability.retry import (
    RetryPolicy,
    RetryStats,
    calculate_backoff,
    retry_with_backoff,
)

__all__ = [
    "RetryPolicy",
    "RetryStats",
    "calculate_backoff",
    "retry_with_backoff",
]

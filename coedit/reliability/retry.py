"""
Retry Policy: Exponential Backoff with Jitter

Implements the retry strategy for idempotent store reads:
- Exponential backoff: 100ms x 2^n
- Full jitter: random(0, backoff) to prevent thundering herd
- Only errors flagged `retryable` are retried; everything else returns at once

Conditional updates are never passed through here: a CAS whose reply was
lost may already have been applied.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from coedit.core import constants as C
from coedit.core.errors import StoreError
from coedit.core.types import Err, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    exponential_base: float = 2.0
    jitter: bool = True  # Full jitter
    # Per-attempt bound; None leaves bounding to the caller.
    attempt_timeout_s: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def default(cls) -> RetryPolicy:
        """Default retry policy."""
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt (for non-idempotent operations)."""
        return cls(max_attempts=1)

    @classmethod
    def immediate(cls, max_attempts: int = C.RETRY_MAX_ATTEMPTS) -> RetryPolicy:
        """No sleeping between attempts (tests)."""
        return cls(max_attempts=max_attempts, base_delay_ms=0, max_delay_ms=0)


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[str] = None


async def retry_with_backoff(
    func: Callable[[], Awaitable[Result[T, StoreError]]],
    policy: Optional[RetryPolicy] = None,
    operation: str = "store_read",
    stats: Optional[RetryStats] = None,
) -> Result[T, StoreError]:
    """
    Execute a Result-returning async function with retry and backoff.

    Args:
        func: Async function returning Ok/Err
        policy: Retry configuration (default if None)
        operation: Name used in logs and timeout errors
        stats: Optional accumulator for attempt statistics

    Returns:
        The first Ok, the first non-retryable Err, or the last Err after
        exhausting attempts
    """
    if policy is None:
        policy = RetryPolicy.default()
    if stats is None:
        stats = RetryStats()

    result: Result[T, StoreError] = Err(StoreError.transient(operation))
    for attempt in range(policy.max_attempts):
        stats.total_attempts += 1

        if policy.attempt_timeout_s is not None:
            try:
                result = await asyncio.wait_for(func(), timeout=policy.attempt_timeout_s)
            except asyncio.TimeoutError:
                result = Err(StoreError.transient(
                    operation,
                    cause=TimeoutError(f"attempt exceeded {policy.attempt_timeout_s}s"),
                ))
        else:
            result = await func()

        if result.is_ok():
            return result

        error = result.error
        stats.last_error = str(error)
        if not error.retryable:
            return result

        if attempt + 1 < policy.max_attempts:
            delay = calculate_backoff(
                attempt=attempt,
                base_delay_ms=policy.base_delay_ms,
                max_delay_ms=policy.max_delay_ms,
                exponential_base=policy.exponential_base,
                jitter=policy.jitter,
            )
            stats.total_delay_ms += delay
            logger.debug(
                "Retrying after transient error",
                extra={
                    "operation": operation,
                    "attempt": attempt + 2,
                    "delay_ms": round(delay, 1),
                    "error_id": error.error_id,
                },
            )
            await asyncio.sleep(delay / 1000)

    logger.warning(
        "Retries exhausted",
        extra={
            "operation": operation,
            "attempts": stats.total_attempts,
            "last_error": stats.last_error,
        },
    )
    return result


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    """
    Calculate backoff delay with optional jitter.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))

    if jitter:
        delay = random.uniform(0, delay)

    return delay

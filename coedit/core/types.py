"""
Core Type Definitions for the Multi-User Concurrency Engine

Implements Result/Either monads for zero-exception control flow on the
storage boundary, plus the small value types shared by every subsystem.

Design Principles:
- Expected failures (version mismatch, missing record) are values, not raises
- Identity of a shared record is always the pair (table, record_id)
- Timestamps carry nanosecond precision for presence expiry math
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    ClassVar,
    Generic,
    Literal,
    TypeVar,
    Union,
)

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type

# Row-shaped business record as handed over by the storage collaborator.
Record = dict[str, Any]
RecordId = Union[str, int]


# =============================================================================
# RESULT MONAD: ZERO-EXCEPTION CONTROL FLOW
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries the typed error for exhaustive handling at the call site.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        """No-op on error variant - propagates error unchanged."""
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    High-precision wall-clock timestamp.

    Stores nanoseconds since Unix epoch. Used for session start/ping
    times and change event ordering diagnostics.
    """

    nanos: int

    NANOS_PER_SECOND: ClassVar[int] = 1_000_000_000
    NANOS_PER_MILLI: ClassVar[int] = 1_000_000

    @classmethod
    def now(cls) -> Timestamp:
        """Capture current time with nanosecond precision."""
        return cls(nanos=time.time_ns())

    @classmethod
    def from_seconds(cls, seconds: float) -> Timestamp:
        """Convert floating-point seconds to Timestamp."""
        return cls(nanos=int(seconds * cls.NANOS_PER_SECOND))

    @property
    def seconds(self) -> float:
        return self.nanos / self.NANOS_PER_SECOND

    @property
    def millis(self) -> int:
        return self.nanos // self.NANOS_PER_MILLI

    def elapsed_seconds(self, now: Timestamp | None = None) -> float:
        """Seconds elapsed between this timestamp and `now`."""
        reference = now or Timestamp.now()
        return (reference.nanos - self.nanos) / self.NANOS_PER_SECOND

    def plus_seconds(self, seconds: float) -> Timestamp:
        result = self.nanos + int(seconds * self.NANOS_PER_SECOND)
        if result < 0:
            raise OverflowError("Timestamp underflow")
        return Timestamp(nanos=result)

    def to_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=timezone.utc)

    def isoformat(self) -> str:
        """ISO-8601 UTC representation (used for updated_at columns)."""
        return self.to_datetime().isoformat()

    def __sub__(self, other: Timestamp) -> int:
        """Subtract timestamps, returning difference in nanos."""
        return self.nanos - other.nanos

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


# =============================================================================
# RECORD IDENTITY
# =============================================================================
@dataclass(frozen=True, slots=True)
class RecordKey:
    """
    Identity of a shared business record.

    Sessions, subscriptions and audit entries are all keyed by it.
    """

    table: str
    record_id: str

    @classmethod
    def of(cls, table: str, record_id: RecordId) -> RecordKey:
        """Normalize integer and string ids to one key space."""
        return cls(table=table, record_id=str(record_id))

    def __str__(self) -> str:
        return f"{self.table}:{self.record_id}"


# =============================================================================
# EDIT ACTIONS AND SAVE STRATEGIES
# =============================================================================
class EditAction(Enum):
    """What a user is doing with a record they hold a session on."""

    VIEWING = "viewing"
    EDITING = "editing"

    @classmethod
    def parse(cls, value: EditAction | str) -> EditAction:
        if isinstance(value, EditAction):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Unknown edit action: {value!r}") from None


class SaveStrategy(Enum):
    """
    Conflict resolution strategy applied when a save hits a version mismatch.

    FAIL  - surface the conflict to the caller (default)
    FORCE - overwrite from the current server version (user-directed only)
    MERGE - auto-combine when no field collides
    """

    FAIL = "fail"
    FORCE = "force"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: SaveStrategy | str | None) -> SaveStrategy:
        if value is None:
            return cls.FAIL
        if isinstance(value, SaveStrategy):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Unknown save strategy: {value!r}") from None

"""
Error Hierarchy for the Multi-User Concurrency Engine

Design Principles:
- Expected conflicts are values (ConflictReport), never exceptions
- Store adapters return Err(...) carrying one of these errors
- Every error carries a code, a correlation id and structured context

Taxonomy:
    VersionMismatchError  - CAS predicate false; becomes a ConflictReport
    RecordNotFoundError   - record deleted concurrently; caller must reload
    TransientStoreError   - network/database failure; retry after backoff
    StoreTimeoutError     - bounded wait exceeded; distinct from a conflict
    SessionStoreError     - presence degraded; never blocks the save path

Usage:
    result = await store.get("orders", 42)
    match result:
        case Ok(record):
            render(record)
        case Err(RecordNotFoundError()):
            reload_list()
        case Err(TransientStoreError() as e):
            schedule_retry(e)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from coedit.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Version store errors
    - 2xxx: Session/presence errors
    - 3xxx: Notification errors
    - 4xxx: Conflict resolution errors
    - 9xxx: Internal/configuration errors
    """

    # Version store errors (1xxx)
    STORE_RECORD_NOT_FOUND = 1001
    STORE_VERSION_MISMATCH = 1002
    STORE_TRANSIENT_FAILURE = 1003
    STORE_TIMEOUT = 1004
    STORE_CONNECTION_FAILED = 1005
    STORE_INVALID_REQUEST = 1006

    # Session errors (2xxx)
    SESSION_INVALID_IDENTITY = 2001
    SESSION_CAPACITY_EXCEEDED = 2002
    SESSION_STORE_UNAVAILABLE = 2003

    # Notification errors (3xxx)
    NOTIFY_CHANNEL_UNAVAILABLE = 3001
    NOTIFY_MALFORMED_MESSAGE = 3002

    # Resolution errors (4xxx)
    RESOLUTION_INVALID_CHOICE = 4001
    RESOLUTION_INVALID_RECORD = 4002

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class CoeditError(Exception):
    """
    Base class for all engine errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp and cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Whether the same request may succeed after a backoff."""
        return False

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize error to dictionary for logging/API responses.

        Excludes the cause chain to avoid leaking driver internals.
        """
        return {
            "error_id": self.error_id,
            "type": type(self).__name__,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# VERSION STORE ERRORS
# =============================================================================
@dataclass
class StoreError(CoeditError):
    """
    Errors reported by VersionStore adapters.

    Factories return the concrete subclass so callers can match on type.
    """

    @classmethod
    def not_found(cls, table: str, record_id: Any) -> RecordNotFoundError:
        """Record does not exist (or was deleted concurrently)."""
        return RecordNotFoundError(
            code=ErrorCode.STORE_RECORD_NOT_FOUND,
            message=f"Record '{record_id}' not found in '{table}'",
            context={"table": table, "record_id": str(record_id)},
        )

    @classmethod
    def version_mismatch(
        cls,
        table: str,
        record_id: Any,
        expected_version: int,
        current_version: Optional[int] = None,
    ) -> VersionMismatchError:
        """Conditional update predicate was false."""
        return VersionMismatchError(
            code=ErrorCode.STORE_VERSION_MISMATCH,
            message=(
                f"Version mismatch on {table}:{record_id}: "
                f"expected v{expected_version}, found v{current_version}"
            ),
            context={
                "table": table,
                "record_id": str(record_id),
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )

    @classmethod
    def transient(
        cls,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> TransientStoreError:
        """Network or database failure; safe to retry after backoff."""
        return TransientStoreError(
            code=ErrorCode.STORE_TRANSIENT_FAILURE,
            message=f"Transient store failure during '{operation}': {cause}",
            cause=cause,
            context={"operation": operation},
        )

    @classmethod
    def connection_failed(
        cls,
        host: str,
        port: int,
        cause: Optional[Exception] = None,
    ) -> TransientStoreError:
        """Database connection could not be established."""
        return TransientStoreError(
            code=ErrorCode.STORE_CONNECTION_FAILED,
            message=f"Failed to connect to store at {host}:{port}",
            cause=cause,
            context={"host": host, "port": port},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        timeout_ms: int,
    ) -> StoreTimeoutError:
        """Bounded wait exceeded."""
        return StoreTimeoutError(
            code=ErrorCode.STORE_TIMEOUT,
            message=f"Operation '{operation}' timed out after {timeout_ms}ms",
            context={"operation": operation, "timeout_ms": timeout_ms},
        )

    @classmethod
    def invalid_request(
        cls,
        reason: str,
        cause: Optional[Exception] = None,
    ) -> InvalidStoreRequestError:
        """Request rejected by the store (unknown table, bad column, ...)."""
        return InvalidStoreRequestError(
            code=ErrorCode.STORE_INVALID_REQUEST,
            message=f"Invalid store request: {reason}",
            cause=cause,
            context={"reason": reason},
        )


@dataclass
class RecordNotFoundError(StoreError):
    """Non-recoverable for the current save; the caller must reload."""


@dataclass
class VersionMismatchError(StoreError):
    """Expected outcome of a lost CAS race."""

    @property
    def current_version(self) -> Optional[int]:
        return self.context.get("current_version")


@dataclass
class TransientStoreError(StoreError):
    """Eligible for bounded retry with backoff."""

    @property
    def retryable(self) -> bool:
        return True


@dataclass
class StoreTimeoutError(StoreError):
    """Retrying is the caller's explicit choice, never automatic."""


@dataclass
class InvalidStoreRequestError(StoreError):
    """Permanent failure caused by the request itself."""


# =============================================================================
# SESSION ERRORS
# =============================================================================
@dataclass
class SessionStoreError(CoeditError):
    """
    Presence tracking failure.

    Non-fatal: presence degrades to "unknown" and the save path proceeds.
    """

    @classmethod
    def invalid_identity(cls, field_name: str, value: Any) -> SessionStoreError:
        return cls(
            code=ErrorCode.SESSION_INVALID_IDENTITY,
            message=f"Invalid session {field_name}: {value!r}",
            context={"field": field_name, "value": str(value)[:100]},
        )

    @classmethod
    def capacity_exceeded(
        cls,
        key: str,
        current: int,
        limit: int,
    ) -> SessionStoreError:
        return cls(
            code=ErrorCode.SESSION_CAPACITY_EXCEEDED,
            message=f"Session capacity exceeded for {key}: {current}/{limit}",
            context={"key": key, "current": current, "limit": limit},
        )

    @classmethod
    def unavailable(
        cls,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> SessionStoreError:
        return cls(
            code=ErrorCode.SESSION_STORE_UNAVAILABLE,
            message=f"Session tracking unavailable during '{operation}'",
            cause=cause,
            context={"operation": operation},
        )


# =============================================================================
# NOTIFICATION ERRORS
# =============================================================================
@dataclass
class NotificationError(CoeditError):
    """Push channel failures. Delivery is best-effort, so these are logged."""

    @classmethod
    def channel_unavailable(
        cls,
        channel: str,
        cause: Optional[Exception] = None,
    ) -> NotificationError:
        return cls(
            code=ErrorCode.NOTIFY_CHANNEL_UNAVAILABLE,
            message=f"Push channel '{channel}' unavailable",
            cause=cause,
            context={"channel": channel},
        )

    @classmethod
    def malformed_message(cls, reason: str, raw: Any) -> NotificationError:
        return cls(
            code=ErrorCode.NOTIFY_MALFORMED_MESSAGE,
            message=f"Malformed change message: {reason}",
            context={"reason": reason, "raw": str(raw)[:200]},
        )


# =============================================================================
# RESOLUTION ERRORS
# =============================================================================
@dataclass
class ResolutionError(CoeditError):
    """Caller supplied an unusable conflict resolution."""

    @classmethod
    def invalid_choice(cls, choice: Any) -> ResolutionError:
        return cls(
            code=ErrorCode.RESOLUTION_INVALID_CHOICE,
            message=f"Unknown conflict resolution choice: {choice!r}",
            context={"choice": str(choice)[:100]},
        )

    @classmethod
    def invalid_record(cls, reason: str) -> ResolutionError:
        return cls(
            code=ErrorCode.RESOLUTION_INVALID_RECORD,
            message=f"Invalid resolution record: {reason}",
            context={"reason": reason},
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
@dataclass
class ConfigurationError(CoeditError):
    """Raised at startup when configuration cannot be honoured."""

    @classmethod
    def invalid(cls, reason: str) -> ConfigurationError:
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"Configuration error: {reason}",
            context={"reason": reason},
        )

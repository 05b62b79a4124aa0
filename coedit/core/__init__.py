"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the engine:
- Result/Either monads for zero-exception control flow
- Exhaustive error hierarchy with pattern matching support
- Configuration management with validation
"""

from coedit.core.types import (
    Result,
    Ok,
    Err,
    Record,
    RecordId,
    RecordKey,
    Timestamp,
    EditAction,
    SaveStrategy,
)
from coedit.core.errors import (
    ErrorCode,
    CoeditError,
    StoreError,
    RecordNotFoundError,
    VersionMismatchError,
    TransientStoreError,
    StoreTimeoutError,
    InvalidStoreRequestError,
    SessionStoreError,
    NotificationError,
    ResolutionError,
    ConfigurationError,
)
from coedit.core.config import CoeditConfig

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Record",
    "RecordId",
    "RecordKey",
    "Timestamp",
    "EditAction",
    "SaveStrategy",
    "ErrorCode",
    "CoeditError",
    "StoreError",
    "RecordNotFoundError",
    "VersionMismatchError",
    "TransientStoreError",
    "StoreTimeoutError",
    "InvalidStoreRequestError",
    "SessionStoreError",
    "NotificationError",
    "ResolutionError",
    "ConfigurationError",
    "CoeditConfig",
]

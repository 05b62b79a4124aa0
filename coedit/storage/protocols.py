"""
Version Store Protocol: the persistence contract of the concurrency engine

Provides structural subtyping protocols (PEP 544) for pluggable backends:
- VersionStore: read + atomic compare-and-swap on an integer version
- ManagedStore: optional connect/close lifecycle for networked adapters

Design Principles:
    - Zero-exception control flow via Result[T, E] monad
    - The store, not the caller, increments `version` on every write
    - A conditional update is a single atomic compare-and-swap; there is no
      read-modify-write window on the store side

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

from coedit.core.errors import StoreError
from coedit.core.types import Record, RecordId, Result


# =============================================================================
# VERSION STORE PROTOCOL (OCC)
# =============================================================================
@runtime_checkable
class VersionStore(Protocol):
    """
    Protocol for versioned business records (Optimistic Concurrency Control).

    Each record carries an integer `version` that increments on update.
    Compare-and-swap semantics prevent lost updates.

    Example:
        class MyStore:
            async def get(self, table, record_id) -> Result[Record, StoreError]:
                ...
            async def conditional_update(self, table, record_id, patch,
                                         expected_version):
                ...
    """

    @abstractmethod
    async def get(
        self,
        table: str,
        record_id: RecordId,
    ) -> Result[Record, StoreError]:
        """
        Retrieve the current snapshot of a record.

        Returns:
            Ok(record): Record found, includes `version`
            Err(RecordNotFoundError): No such record
            Err(TransientStoreError): Backend unavailable
        """
        ...

    @abstractmethod
    async def conditional_update(
        self,
        table: str,
        record_id: RecordId,
        patch: dict[str, Any],
        expected_version: int,
    ) -> Result[Record, StoreError]:
        """
        Apply `patch` only if the stored version equals `expected_version`.

        Args:
            table: Table / collection name
            record_id: Record identifier
            patch: Fields to overwrite (never includes `version`)
            expected_version: Version from the caller's last read

        Returns:
            Ok(record): Update applied; record.version == expected_version + 1
            Err(VersionMismatchError): Concurrent modification detected
            Err(RecordNotFoundError): Record deleted concurrently
            Err(TransientStoreError): Backend unavailable
        """
        ...


# =============================================================================
# LIFECYCLE PROTOCOL
# =============================================================================
@runtime_checkable
class ManagedStore(Protocol):
    """Adapters holding network resources expose connect/close."""

    @abstractmethod
    async def connect(self) -> Result[None, StoreError]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

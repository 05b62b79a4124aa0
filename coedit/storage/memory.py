"""
In-Memory Version Store: Development and Testing Implementation

Provides a protocol-complete in-memory VersionStore:
- Atomic compare-and-swap under an asyncio.Lock
- Snapshots are copied on the way in and out (no aliasing with callers)
- Fault injection hooks for exercising error paths in tests

Design Principles:
    - Full protocol compliance for seamless production swap
    - Realistic latency simulation for timeout testing

Performance Characteristics:
    - get / conditional_update / insert / delete: O(1) average case

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import asyncio
import copy
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from coedit.core import constants as C
from coedit.core.errors import StoreError
from coedit.core.types import Err, Ok, Record, RecordId, RecordKey, Result


# Invoked before a conditional update takes the lock; lets tests interleave
# a competing writer at the exact point a real network round-trip would.
BeforeUpdateHook = Callable[[str, RecordId, int], Awaitable[None]]


class InMemoryVersionStore:
    """
    In-memory VersionStore with strong consistency.

    Thread Safety:
        All operations are protected by asyncio.Lock for
        concurrent access safety within async context.

    Example:
        store = InMemoryVersionStore()
        await store.insert("orders", {"id": 1, "name": "Widget"})

        result = await store.conditional_update("orders", 1, {"name": "X"}, 1)
        assert result.unwrap()["version"] == 2
    """

    __slots__ = (
        "_data",
        "_lock",
        "_latency_s",
        "_faults",
        "_before_update",
        "_update_calls",
    )

    def __init__(self, latency_s: float = 0.0) -> None:
        """
        Initialize in-memory store.

        Args:
            latency_s: Simulated per-call latency in seconds
        """
        self._data: Dict[RecordKey, Record] = {}
        self._lock = asyncio.Lock()
        self._latency_s = latency_s
        self._faults: Dict[str, Deque[StoreError]] = {}
        self._before_update: Optional[BeforeUpdateHook] = None
        self._update_calls = 0

    async def _simulate_network_latency(self) -> None:
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)

    def _take_fault(self, operation: str) -> Optional[StoreError]:
        queue = self._faults.get(operation)
        if queue:
            return queue.popleft()
        return None

    # -------------------------------------------------------------------------
    # VersionStore Implementation
    # -------------------------------------------------------------------------

    async def get(
        self,
        table: str,
        record_id: RecordId,
    ) -> Result[Record, StoreError]:
        """
        Retrieve a copy of the current record.

        Complexity: O(1) average case (hash lookup)
        """
        await self._simulate_network_latency()
        fault = self._take_fault("get")
        if fault is not None:
            return Err(fault)

        async with self._lock:
            record = self._data.get(RecordKey.of(table, record_id))
            if record is None:
                return Err(StoreError.not_found(table, record_id))
            return Ok(copy.deepcopy(record))

    async def conditional_update(
        self,
        table: str,
        record_id: RecordId,
        patch: dict[str, Any],
        expected_version: int,
    ) -> Result[Record, StoreError]:
        """
        Update only if version matches (CAS operation).

        Returns the new snapshot on success.
        """
        self._update_calls += 1
        if self._before_update is not None:
            await self._before_update(table, record_id, expected_version)
        await self._simulate_network_latency()
        fault = self._take_fault("conditional_update")
        if fault is not None:
            return Err(fault)

        key = RecordKey.of(table, record_id)
        async with self._lock:
            record = self._data.get(key)

            if record is None:
                return Err(StoreError.not_found(table, record_id))

            current = int(record.get(C.VERSION_FIELD, 0))
            if current != expected_version:
                return Err(StoreError.version_mismatch(
                    table, record_id, expected_version, current,
                ))

            updated = dict(record)
            for name, value in patch.items():
                if name in (C.VERSION_FIELD, C.ID_FIELD):
                    continue
                updated[name] = copy.deepcopy(value)
            updated[C.VERSION_FIELD] = current + 1
            self._data[key] = updated

            return Ok(copy.deepcopy(updated))

    # -------------------------------------------------------------------------
    # Administrative operations
    # -------------------------------------------------------------------------

    async def insert(self, table: str, record: Record) -> Result[Record, StoreError]:
        """
        Insert a new record. Version starts at 1 unless given.

        Returns Err(InvalidStoreRequestError) when `id` is missing or taken.
        """
        if C.ID_FIELD not in record:
            return Err(StoreError.invalid_request("record has no 'id' field"))

        key = RecordKey.of(table, record[C.ID_FIELD])
        async with self._lock:
            if key in self._data:
                return Err(StoreError.invalid_request(f"duplicate key {key}"))
            stored = copy.deepcopy(record)
            stored.setdefault(C.VERSION_FIELD, 1)
            self._data[key] = stored
            return Ok(copy.deepcopy(stored))

    async def delete(self, table: str, record_id: RecordId) -> Result[None, StoreError]:
        """Remove a record; deleting a missing record is an error."""
        async with self._lock:
            key = RecordKey.of(table, record_id)
            if key not in self._data:
                return Err(StoreError.not_found(table, record_id))
            del self._data[key]
            return Ok(None)

    async def count(self) -> int:
        """Get total record count."""
        async with self._lock:
            return len(self._data)

    async def clear(self) -> None:
        """Clear all data (for testing)."""
        async with self._lock:
            self._data.clear()
            self._faults.clear()

    # -------------------------------------------------------------------------
    # Fault injection (tests)
    # -------------------------------------------------------------------------

    def inject_fault(self, operation: str, error: StoreError, times: int = 1) -> None:
        """
        Make the next `times` calls of `operation` fail with `error`.

        Args:
            operation: "get" or "conditional_update"
        """
        if operation not in ("get", "conditional_update"):
            raise ValueError(f"Unknown operation: {operation}")
        queue = self._faults.setdefault(operation, deque())
        for _ in range(times):
            queue.append(error)

    def set_before_update(self, hook: Optional[BeforeUpdateHook]) -> None:
        self._before_update = hook

    def set_latency(self, latency_s: float) -> None:
        self._latency_s = latency_s

    @property
    def update_calls(self) -> int:
        """Number of conditional_update invocations (including failed ones)."""
        return self._update_calls

    def snapshot(self) -> Dict[Tuple[str, str], Record]:
        """Synchronous copy of all data keyed by (table, id)."""
        return {
            (key.table, key.record_id): copy.deepcopy(record)
            for key, record in self._data.items()
        }

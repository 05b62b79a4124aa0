"""
In-process audit trail of committed saves.

Bounded per record: the oldest entries fall off once
`max_entries_per_record` is reached. Newest first on read.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from coedit.core import constants as C
from coedit.core.types import RecordId, RecordKey, SaveStrategy, Timestamp


@dataclass(frozen=True, slots=True)
class AuditEntry:
    table: str
    record_id: str
    version: int
    user_id: str
    strategy: SaveStrategy
    changed_fields: frozenset[str] = frozenset()
    resolution: Optional[str] = None
    timestamp: Timestamp = field(default_factory=Timestamp.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "record_id": self.record_id,
            "version": self.version,
            "user_id": self.user_id,
            "strategy": self.strategy.value,
            "changed_fields": sorted(self.changed_fields),
            "resolution": self.resolution,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditTrail:
    """Thread-safe bounded history keyed by record."""

    __slots__ = ("_entries", "_lock", "_max_per_record")

    def __init__(self, max_entries_per_record: int = C.AUDIT_MAX_ENTRIES_PER_RECORD) -> None:
        if max_entries_per_record < 1:
            raise ValueError("max_entries_per_record must be >= 1")
        self._entries: dict[RecordKey, deque[AuditEntry]] = {}
        self._lock = threading.Lock()
        self._max_per_record = max_entries_per_record

    def record(
        self,
        table: str,
        record_id: RecordId,
        version: int,
        user_id: str,
        strategy: SaveStrategy,
        changed_fields: Iterable[str] = (),
        resolution: Optional[str] = None,
    ) -> AuditEntry:
        key = RecordKey.of(table, record_id)
        entry = AuditEntry(
            table=key.table,
            record_id=key.record_id,
            version=version,
            user_id=user_id,
            strategy=strategy,
            changed_fields=frozenset(changed_fields),
            resolution=resolution,
        )
        with self._lock:
            history = self._entries.get(key)
            if history is None:
                history = deque(maxlen=self._max_per_record)
                self._entries[key] = history
            history.append(entry)
        return entry

    def history(
        self,
        table: str,
        record_id: RecordId,
        limit: int = C.AUDIT_DEFAULT_LIMIT,
    ) -> list[AuditEntry]:
        key = RecordKey.of(table, record_id)
        with self._lock:
            entries = list(self._entries.get(key, ()))
        entries.reverse()
        return entries[:max(limit, 0)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._entries.values())

"""
Conflict Detection: field-level diff between local and server snapshots

Two modes:
- Two-way (no base): every field present in either snapshot is compared
- Three-way (base given): a field conflicts only when BOTH sides changed it
  relative to the base and the new values differ

Normalization:
    None, a missing key, "" and NaN are the same "empty" value, so a form
    that submits "" for an untouched NULL column does not raise a conflict.

Usage:
    detector = ConflictDetector(derived_fields={"quantity_available"})
    report = detector.detect(
        table="orders", record_id=42, expected_version=5,
        server=current, local=draft, base=original,
    )
    if report.has_conflict:
        show(report.conflicting_fields)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from coedit.core import constants as C
from coedit.core.types import Record, RecordId, Timestamp


class _Empty:
    """Single normalized representation of 'no value'."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "<empty>"


EMPTY = _Empty()
_MISSING = object()


def normalize(value: Any) -> Any:
    """Map None, "" and NaN onto EMPTY; everything else passes through."""
    if value is None or value is _MISSING:
        return EMPTY
    if isinstance(value, str) and value == "":
        return EMPTY
    if isinstance(value, float) and math.isnan(value):
        return EMPTY
    return value


def values_equal(a: Any, b: Any) -> bool:
    """Equality after normalization."""
    na, nb = normalize(a), normalize(b)
    if na is EMPTY or nb is EMPTY:
        return na is nb
    try:
        return bool(na == nb)
    except (TypeError, ValueError):
        # Objects whose __eq__ is not boolean (arrays); compare by repr.
        return repr(na) == repr(nb)


# =============================================================================
# CONFLICT REPORT
# =============================================================================
class ConflictKind(Enum):
    """
    VERSION_ONLY    - version advanced but no compared field differs
    FIELD_COLLISION - at least one field differs (or both sides changed it)
    """

    VERSION_ONLY = "version_only"
    FIELD_COLLISION = "field_collision"


@dataclass(frozen=True)
class ConflictReport:
    """
    Description of a lost optimistic-locking race.

    Transient value; never persisted. `to_dict()` is the shape handed to UIs.
    """

    table: str
    record_id: RecordId
    expected_version: int
    current_version: int
    conflicting_fields: frozenset[str]
    server_snapshot: Record
    local_snapshot: Record
    base_snapshot: Optional[Record] = None
    last_modified_by: Optional[str] = None
    active_users: tuple[str, ...] = ()
    message: str = ""
    detected_at: Timestamp = field(default_factory=Timestamp.now)

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicting_fields)

    @property
    def kind(self) -> ConflictKind:
        if self.conflicting_fields:
            return ConflictKind.FIELD_COLLISION
        return ConflictKind.VERSION_ONLY

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "version_conflict",
            "kind": self.kind.value,
            "message": self.message,
            "table": self.table,
            "record_id": str(self.record_id),
            "expected_version": self.expected_version,
            "current_version": self.current_version,
            "conflicting_fields": sorted(self.conflicting_fields),
            "server_data": dict(self.server_snapshot),
            "local_data": dict(self.local_snapshot),
            "base_data": dict(self.base_snapshot) if self.base_snapshot is not None else None,
            "last_modified_by": self.last_modified_by,
            "active_users": list(self.active_users),
        }


# =============================================================================
# DETECTOR
# =============================================================================
class ConflictDetector:
    """
    Stateless field-level comparator.

    Ignored fields (never conflicting): system fields plus any configured
    read-only or derived fields.
    """

    __slots__ = ("_ignored",)

    def __init__(
        self,
        derived_fields: Iterable[str] = C.DEFAULT_DERIVED_FIELDS,
        ignored_fields: Optional[Iterable[str]] = None,
    ) -> None:
        base = C.SYSTEM_FIELDS if ignored_fields is None else frozenset(ignored_fields)
        self._ignored: frozenset[str] = frozenset(base) | frozenset(derived_fields)

    @property
    def ignored_fields(self) -> frozenset[str]:
        return self._ignored

    def _compared(self, *snapshots: Optional[Mapping[str, Any]]) -> set[str]:
        names: set[str] = set()
        for snapshot in snapshots:
            if snapshot:
                names.update(snapshot.keys())
        return names - self._ignored

    def conflicting_fields(
        self,
        server: Mapping[str, Any],
        local: Mapping[str, Any],
        base: Optional[Mapping[str, Any]] = None,
    ) -> frozenset[str]:
        """Two-way when base is None, three-way otherwise."""
        if base is None:
            return frozenset(
                name for name in self._compared(server, local)
                if not values_equal(server.get(name), local.get(name))
            )

        conflicts = set()
        for name in self._compared(server, local, base):
            if name not in local:
                continue
            base_value = base.get(name)
            local_changed = not values_equal(local[name], base_value)
            server_changed = not values_equal(server.get(name), base_value)
            if local_changed and server_changed and not values_equal(local[name], server.get(name)):
                conflicts.add(name)
        return frozenset(conflicts)

    def changed_fields(
        self,
        local: Mapping[str, Any],
        base: Mapping[str, Any],
    ) -> frozenset[str]:
        """Fields the local side changed relative to base."""
        return frozenset(
            name for name in set(local.keys()) - self._ignored
            if not values_equal(local[name], base.get(name))
        )

    def detect(
        self,
        table: str,
        record_id: RecordId,
        expected_version: int,
        server: Record,
        local: Record,
        base: Optional[Record] = None,
        active_users: Iterable[str] = (),
    ) -> ConflictReport:
        """Build a ConflictReport for a failed conditional update."""
        conflicts = self.conflicting_fields(server, local, base)
        modified_by = server.get(C.MODIFIED_BY_FIELD)
        return ConflictReport(
            table=table,
            record_id=record_id,
            expected_version=expected_version,
            current_version=int(server.get(C.VERSION_FIELD, expected_version)),
            conflicting_fields=conflicts,
            server_snapshot=dict(server),
            local_snapshot=dict(local),
            base_snapshot=dict(base) if base is not None else None,
            last_modified_by=modified_by,
            active_users=tuple(active_users),
            message=(
                f"This record was modified by {modified_by or 'another user'} "
                f"while you were editing"
            ),
        )

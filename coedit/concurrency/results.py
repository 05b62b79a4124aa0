"""
Outcome of safe_save / resolve_conflict.

Exactly one of `data`, `conflict`, `error` is set:
    SaveResult(success=True,  data=record)
    SaveResult(success=False, conflict=ConflictReport)
    SaveResult(success=False, error=StoreError)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from coedit.conflict.detector import ConflictReport
from coedit.core.errors import CoeditError
from coedit.core.types import Record


@dataclass(frozen=True)
class SaveResult:
    success: bool
    data: Optional[Record] = None
    conflict: Optional[ConflictReport] = None
    error: Optional[CoeditError] = None

    @classmethod
    def ok(cls, record: Record) -> SaveResult:
        return cls(success=True, data=record)

    @classmethod
    def conflicted(cls, report: ConflictReport) -> SaveResult:
        return cls(success=False, conflict=report)

    @classmethod
    def failed(cls, error: CoeditError) -> SaveResult:
        return cls(success=False, error=error)

    @property
    def is_conflict(self) -> bool:
        return self.conflict is not None

    @property
    def version(self) -> Optional[int]:
        if self.data is None:
            return None
        return self.data.get("version")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.conflict is not None:
            result["conflict"] = self.conflict.to_dict()
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result

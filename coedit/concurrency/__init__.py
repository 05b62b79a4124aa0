"""
Concurrency module: the optimistic-locking save path.

Provides:
- ConcurrencyManager: sessions, safe_save, resolve_conflict, subscriptions
- RecordEditor: per-record edit lifecycle on top of the manager
- SaveResult: success / conflict / error outcome
- AuditTrail: bounded in-process history of committed saves
"""

from coedit.concurrency.audit import AuditEntry, AuditTrail
from coedit.concurrency.editor import RecordEditor
from coedit.concurrency.manager import ConcurrencyManager
from coedit.concurrency.results import SaveResult

__all__ = [
    "AuditEntry",
    "AuditTrail",
    "RecordEditor",
    "ConcurrencyManager",
    "SaveResult",
]

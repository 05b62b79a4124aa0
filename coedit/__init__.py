"""
coedit: Multi-User Concurrency and Conflict-Resolution Engine

Protects shared mutable business records from silent data loss when
several users edit the same record at once:
- Optimistic save path: compare-and-swap on an integer version column
- Conflict detection: field-level two-way and three-way diff
- Presence: who is viewing or editing which record, with TTL expiry
- Change notification: ordered per-record publish/subscribe

Author: Planetary AI Systems
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Planetary AI Systems"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from coedit.core.types import (
    Result,
    Ok,
    Err,
    Record,
    RecordKey,
    Timestamp,
    EditAction,
    SaveStrategy,
)
from coedit.core.errors import (
    CoeditError,
    StoreError,
    RecordNotFoundError,
    VersionMismatchError,
    TransientStoreError,
    StoreTimeoutError,
    SessionStoreError,
    ResolutionError,
)
from coedit.core.config import CoeditConfig

from coedit.conflict import (
    ConflictDetector,
    ConflictReport,
    ResolutionChoice,
    KeepServer,
    CustomMerge,
)
from coedit.session import (
    SessionTracker,
    ActiveUser,
    EditState,
    EditStateMachine,
)
from coedit.notify import (
    ChangeNotifier,
    ChangeEvent,
    EventKind,
    EventType,
)
from coedit.storage import (
    VersionStore,
    InMemoryVersionStore,
    create_version_store,
)
from coedit.concurrency import (
    ConcurrencyManager,
    RecordEditor,
    SaveResult,
)

__all__ = [
    # Version
    "__version__",
    "__author__",
    # Result monad
    "Result",
    "Ok",
    "Err",
    # Value types
    "Record",
    "RecordKey",
    "Timestamp",
    "EditAction",
    "SaveStrategy",
    # Errors
    "CoeditError",
    "StoreError",
    "RecordNotFoundError",
    "VersionMismatchError",
    "TransientStoreError",
    "StoreTimeoutError",
    "SessionStoreError",
    "ResolutionError",
    # Config
    "CoeditConfig",
    # Conflict
    "ConflictDetector",
    "ConflictReport",
    "ResolutionChoice",
    "KeepServer",
    "CustomMerge",
    # Session
    "SessionTracker",
    "ActiveUser",
    "EditState",
    "EditStateMachine",
    # Notify
    "ChangeNotifier",
    "ChangeEvent",
    "EventKind",
    "EventType",
    # Storage
    "VersionStore",
    "InMemoryVersionStore",
    "create_version_store",
    # Concurrency
    "ConcurrencyManager",
    "RecordEditor",
    "SaveResult",
]

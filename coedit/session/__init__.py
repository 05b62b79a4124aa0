"""
Session module: presence tracking and the per-editor lifecycle.

Provides:
- SessionTracker: who views or edits which record, with TTL expiry
- EditStateMachine: IDLE → VIEWING → EDITING → SAVING → {SAVED, CONFLICTED}
"""

from coedit.session.tracker import (
    ActiveUser,
    Session,
    SessionTracker,
)
from coedit.session.state_machine import (
    EditState,
    EditStateMachine,
    EditTransition,
    EditTransitionEvent,
    EditTrigger,
)

__all__ = [
    # Tracker
    "ActiveUser",
    "Session",
    "SessionTracker",
    # State Machine
    "EditState",
    "EditStateMachine",
    "EditTransition",
    "EditTransitionEvent",
    "EditTrigger",
]

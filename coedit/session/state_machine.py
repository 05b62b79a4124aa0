"""
Edit State Machine: per-editor lifecycle of one record

States:
    IDLE       → Not looking at the record
    VIEWING    → Record loaded read-only
    EDITING    → Local draft being changed
    SAVING     → Conditional update in flight
    SAVED      → Last save landed
    CONFLICTED → Save lost the race; awaiting a resolution

Transitions:
    IDLE       → VIEWING    : VIEW
    IDLE       → EDITING    : EDIT
    VIEWING    → EDITING    : EDIT
    VIEWING    → IDLE       : END / EXPIRE
    EDITING    → SAVING     : SAVE
    EDITING    → IDLE       : END / EXPIRE
    SAVING     → SAVED      : SAVE_SUCCEEDED
    SAVING     → CONFLICTED : SAVE_CONFLICTED
    SAVING     → EDITING    : SAVE_FAILED
    CONFLICTED → SAVED      : RESOLVED
    CONFLICTED → IDLE       : RESOLVED_KEEP_SERVER
    SAVED      → EDITING    : EDIT
    SAVED      → IDLE       : FINISH
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Optional

from coedit.core.types import Err, Ok, RecordKey, Result, Timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# STATES AND TRIGGERS
# =============================================================================
class EditState(Enum):
    """Exactly one state is current at any time."""

    IDLE = auto()
    VIEWING = auto()
    EDITING = auto()
    SAVING = auto()
    SAVED = auto()
    CONFLICTED = auto()

    @property
    def holds_session(self) -> bool:
        """States in which the editor keeps a presence session open."""
        return self in (EditState.VIEWING, EditState.EDITING, EditState.SAVING,
                        EditState.CONFLICTED)

    @property
    def is_editing(self) -> bool:
        return self in (EditState.EDITING, EditState.SAVING, EditState.CONFLICTED)


class EditTrigger(str, Enum):
    VIEW = "VIEW"
    EDIT = "EDIT"
    END = "END"
    EXPIRE = "EXPIRE"
    SAVE = "SAVE"
    SAVE_SUCCEEDED = "SAVE_SUCCEEDED"
    SAVE_CONFLICTED = "SAVE_CONFLICTED"
    SAVE_FAILED = "SAVE_FAILED"
    RESOLVED = "RESOLVED"
    RESOLVED_KEEP_SERVER = "RESOLVED_KEEP_SERVER"
    FINISH = "FINISH"


@dataclass(frozen=True, slots=True)
class EditTransition:
    from_state: EditState
    to_state: EditState
    trigger: EditTrigger


VALID_TRANSITIONS: frozenset[EditTransition] = frozenset({
    EditTransition(EditState.IDLE, EditState.VIEWING, EditTrigger.VIEW),
    EditTransition(EditState.IDLE, EditState.EDITING, EditTrigger.EDIT),

    EditTransition(EditState.VIEWING, EditState.EDITING, EditTrigger.EDIT),
    EditTransition(EditState.VIEWING, EditState.IDLE, EditTrigger.END),
    EditTransition(EditState.VIEWING, EditState.IDLE, EditTrigger.EXPIRE),

    EditTransition(EditState.EDITING, EditState.SAVING, EditTrigger.SAVE),
    EditTransition(EditState.EDITING, EditState.IDLE, EditTrigger.END),
    EditTransition(EditState.EDITING, EditState.IDLE, EditTrigger.EXPIRE),

    EditTransition(EditState.SAVING, EditState.SAVED, EditTrigger.SAVE_SUCCEEDED),
    EditTransition(EditState.SAVING, EditState.CONFLICTED, EditTrigger.SAVE_CONFLICTED),
    EditTransition(EditState.SAVING, EditState.EDITING, EditTrigger.SAVE_FAILED),

    EditTransition(EditState.CONFLICTED, EditState.SAVED, EditTrigger.RESOLVED),
    EditTransition(EditState.CONFLICTED, EditState.IDLE, EditTrigger.RESOLVED_KEEP_SERVER),

    EditTransition(EditState.SAVED, EditState.EDITING, EditTrigger.EDIT),
    EditTransition(EditState.SAVED, EditState.IDLE, EditTrigger.FINISH),
})

_TRANSITION_INDEX: dict[tuple[EditState, EditTrigger], EditTransition] = {
    (t.from_state, t.trigger): t for t in VALID_TRANSITIONS
}


@dataclass(frozen=True, slots=True)
class EditTransitionEvent:
    """Emitted to listeners after every successful transition."""

    key: RecordKey
    user_id: str
    from_state: EditState
    to_state: EditState
    trigger: EditTrigger
    version: int
    timestamp: Timestamp = field(default_factory=Timestamp.now)


# =============================================================================
# STATE MACHINE
# =============================================================================
class EditStateMachine:
    """
    Finite state machine for one user's work on one record.

    Usage:
        fsm = EditStateMachine(RecordKey.of("orders", 42), user_id="alice")
        fsm.transition(EditTrigger.EDIT)
        result = fsm.transition("SAVE")
        if result.is_err():
            log(result.error)

    Thread Safety:
        None. Each editor owns its machine.
    """

    __slots__ = ("_key", "_user_id", "_state", "_version", "_listeners")

    def __init__(
        self,
        key: RecordKey,
        user_id: str,
        initial: EditState = EditState.IDLE,
    ) -> None:
        self._key = key
        self._user_id = user_id
        self._state = initial
        self._version = 0
        self._listeners: list[Callable[[EditTransitionEvent], Any]] = []

    def add_listener(self, listener: Callable[[EditTransitionEvent], Any]) -> None:
        self._listeners.append(listener)

    @staticmethod
    def _parse_trigger(trigger: EditTrigger | str) -> Optional[EditTrigger]:
        if isinstance(trigger, EditTrigger):
            return trigger
        try:
            return EditTrigger(str(trigger).upper())
        except ValueError:
            return None

    def transition(self, trigger: EditTrigger | str) -> Result[EditTransitionEvent, str]:
        """
        Attempt a transition.

        Returns:
            Ok(event) on success
            Err(message) for an unknown trigger or one not valid from the current state
        """
        parsed = self._parse_trigger(trigger)
        if parsed is None:
            return Err(f"Unknown trigger '{trigger}'")

        valid = _TRANSITION_INDEX.get((self._state, parsed))
        if valid is None:
            return Err(
                f"No valid transition from {self._state.name} "
                f"with trigger '{parsed.value}'"
            )

        old_state = self._state
        self._state = valid.to_state
        self._version += 1

        event = EditTransitionEvent(
            key=self._key,
            user_id=self._user_id,
            from_state=old_state,
            to_state=valid.to_state,
            trigger=parsed,
            version=self._version,
        )

        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Edit state listener failed",
                    extra={"record": str(self._key), "trigger": parsed.value},
                )

        return Ok(event)

    def reset(self) -> None:
        """Force back to IDLE without notifying listeners."""
        self._state = EditState.IDLE
        self._version += 1

    @property
    def state(self) -> EditState:
        return self._state

    @property
    def version(self) -> int:
        return self._version

    @property
    def key(self) -> RecordKey:
        return self._key

    def can_transition(self, trigger: EditTrigger | str) -> bool:
        parsed = self._parse_trigger(trigger)
        return parsed is not None and (self._state, parsed) in _TRANSITION_INDEX

    def available_triggers(self) -> list[EditTrigger]:
        return sorted(
            (t.trigger for t in VALID_TRANSITIONS if t.from_state == self._state),
            key=lambda trig: trig.value,
        )

"""
RecordEditor: one user's edit of one record, driven by the EditStateMachine.

Holds the snapshot the user started from (`base`) and the local draft,
so saves run three-way detection and disjoint edits merge cleanly.

Saves with an unknown outcome:
    If a save is cancelled mid-flight, times out or fails transiently, the
    editor cannot know whether the write landed. The next save re-fetches
    the record first:
      - version unchanged             → nothing landed; save normally
      - version == base + 1 by me     → our write landed; adopt it as base
      - anything else                 → save against the stale base so the
                                        conflict surfaces to the user

Usage:
    editor = RecordEditor(manager, "orders", 42)
    await editor.start_editing()
    editor.update_field("name", "Widget A")
    result = await editor.save()
    if result.conflict:
        await editor.resolve("keepLocal")
    await editor.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from coedit.concurrency.manager import ConcurrencyManager
from coedit.concurrency.results import SaveResult
from coedit.conflict.detector import ConflictReport
from coedit.conflict.resolution import KeepServer, parse_resolution
from coedit.core import constants as C
from coedit.core.errors import (
    ResolutionError,
    StoreError,
    StoreTimeoutError,
    TransientStoreError,
)
from coedit.core.types import (
    EditAction,
    Ok,
    Record,
    RecordId,
    RecordKey,
    Result,
    SaveStrategy,
)
from coedit.notify.events import ChangeEvent, EventType
from coedit.session.state_machine import EditState, EditStateMachine, EditTrigger

logger = logging.getLogger(__name__)


class RecordEditor:
    """Form-level wrapper around ConcurrencyManager for a single record."""

    def __init__(
        self,
        manager: ConcurrencyManager,
        table: str,
        record_id: RecordId,
    ) -> None:
        self._manager = manager
        self._key = RecordKey.of(table, record_id)
        self._record_id = record_id
        self._fsm = EditStateMachine(self._key, manager.user_id)
        self._base: Optional[Record] = None
        self._draft: Record = {}
        self._conflict: Optional[ConflictReport] = None
        self._save_in_doubt = False
        self._presence_sub: Optional[str] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> EditState:
        return self._fsm.state

    @property
    def state_machine(self) -> EditStateMachine:
        return self._fsm

    @property
    def base(self) -> Optional[Record]:
        return dict(self._base) if self._base is not None else None

    @property
    def draft(self) -> Record:
        return dict(self._draft)

    @property
    def conflict(self) -> Optional[ConflictReport]:
        return self._conflict

    @property
    def base_version(self) -> Optional[int]:
        if self._base is None:
            return None
        return int(self._base.get(C.VERSION_FIELD, 0))

    def changed_fields(self) -> frozenset[str]:
        if self._base is None:
            return frozenset()
        return self._manager.detector.changed_fields(self._draft, self._base)

    def is_dirty(self) -> bool:
        return bool(self.changed_fields())

    # -------------------------------------------------------------------------
    # Loading and presence
    # -------------------------------------------------------------------------

    async def _load(self) -> Result[Record, StoreError]:
        read = await self._manager.get_record(self._key.table, self._record_id)
        if read.is_ok():
            self._base = dict(read.value)
            self._draft = dict(read.value)
        return read

    def _watch_presence(self) -> None:
        if self._presence_sub is None:
            self._presence_sub = self._manager.subscribe_sessions(
                self._key.table, self._record_id, self._on_presence,
            )

    def _on_presence(self, event: ChangeEvent) -> None:
        if event.event is EventType.SESSION_EXPIRED and event.user_id == self._manager.user_id:
            if self._fsm.can_transition(EditTrigger.EXPIRE):
                self._fsm.transition(EditTrigger.EXPIRE)
                logger.info("Edit session expired", extra={"record": str(self._key)})

    async def view(self) -> Result[Record, StoreError]:
        """Load the record read-only and register as a viewer."""
        read = await self._load()
        if read.is_err():
            return read
        if self._fsm.can_transition(EditTrigger.VIEW):
            self._fsm.transition(EditTrigger.VIEW)
        await self._manager.start_session(self._key.table, self._record_id, EditAction.VIEWING)
        self._watch_presence()
        return read

    async def start_editing(self) -> Result[Record, StoreError]:
        """Enter EDITING, loading the record first if nothing is loaded."""
        if self._base is None or self._fsm.state is EditState.SAVED:
            read = await self._load()
            if read.is_err():
                return read
        transition = self._fsm.transition(EditTrigger.EDIT)
        if transition.is_err():
            raise RuntimeError(transition.error)
        await self._manager.start_session(self._key.table, self._record_id, EditAction.EDITING)
        self._watch_presence()
        return Ok(dict(self._base))

    # -------------------------------------------------------------------------
    # Draft
    # -------------------------------------------------------------------------

    def update_field(self, name: str, value: Any) -> None:
        if self._fsm.state is not EditState.EDITING:
            raise RuntimeError(f"Cannot edit in state {self._fsm.state.name}")
        if name in C.SYSTEM_FIELDS:
            raise ValueError(f"'{name}' is a system field")
        self._draft[name] = value

    def reset(self) -> None:
        """Discard local changes."""
        if self._base is not None:
            self._draft = dict(self._base)

    # -------------------------------------------------------------------------
    # Save / resolve
    # -------------------------------------------------------------------------

    async def save(self, strategy: SaveStrategy | str | None = None) -> SaveResult:
        """
        Save the draft against the base version.

        Raises:
            RuntimeError: Not in EDITING
        """
        transition = self._fsm.transition(EditTrigger.SAVE)
        if transition.is_err():
            raise RuntimeError(transition.error)

        if self._save_in_doubt:
            settled = await self._settle_unknown_outcome()
            if settled is not None:
                return settled

        self._save_in_doubt = True
        try:
            result = await self._manager.safe_save(
                self._key.table,
                {**self._draft, C.ID_FIELD: self._record_id},
                self.base_version or 0,
                strategy=strategy,
                base=self._base,
            )
        except asyncio.CancelledError:
            self._fsm.transition(EditTrigger.SAVE_FAILED)
            raise
        # A timed-out or transiently failed write may still have landed.
        self._save_in_doubt = isinstance(result.error, (StoreTimeoutError, TransientStoreError))
        self._apply_save_result(result)
        return result

    async def _settle_unknown_outcome(self) -> Optional[SaveResult]:
        """
        Re-fetch after a save whose outcome is unknown.

        Returns:
            A final SaveResult when nothing is left to save, otherwise None
        """
        read = await self._manager.get_record(self._key.table, self._record_id)
        if read.is_err():
            self._fsm.transition(EditTrigger.SAVE_FAILED)
            return SaveResult.failed(read.error)

        server = read.value
        server_version = int(server.get(C.VERSION_FIELD, 0))
        base_version = self.base_version or 0
        self._save_in_doubt = False

        if (
            server_version == base_version + 1
            and server.get(C.MODIFIED_BY_FIELD) == self._manager.user_id
        ):
            logger.info(
                "Earlier save had landed; adopting server version",
                extra={"record": str(self._key), "version": server_version},
            )
            self._base = dict(server)
            if not self.is_dirty():
                self._draft = dict(server)
                self._fsm.transition(EditTrigger.SAVE_SUCCEEDED)
                return SaveResult.ok(dict(server))
        return None

    def _apply_save_result(self, result: SaveResult) -> None:
        if result.success and result.data is not None:
            self._base = dict(result.data)
            self._draft = dict(result.data)
            self._conflict = None
            self._fsm.transition(EditTrigger.SAVE_SUCCEEDED)
        elif result.conflict is not None:
            self._conflict = result.conflict
            self._fsm.transition(EditTrigger.SAVE_CONFLICTED)
        else:
            self._fsm.transition(EditTrigger.SAVE_FAILED)

    async def resolve(self, choice: Any) -> SaveResult:
        """
        Resolve the pending conflict.

        Raises:
            RuntimeError: No conflict pending
        """
        if self._fsm.state is not EditState.CONFLICTED or self._conflict is None:
            raise RuntimeError(f"No conflict to resolve in state {self._fsm.state.name}")
        try:
            resolution = parse_resolution(choice)
        except ResolutionError as e:
            return SaveResult.failed(e)

        result = await self._manager.resolve_conflict(self._conflict, resolution)
        if result.success and result.data is not None:
            self._base = dict(result.data)
            self._draft = dict(result.data)
            self._conflict = None
            trigger = (
                EditTrigger.RESOLVED_KEEP_SERVER
                if isinstance(resolution, KeepServer)
                else EditTrigger.RESOLVED
            )
            self._fsm.transition(trigger)
        elif result.conflict is not None:
            self._conflict = result.conflict
        return result

    # -------------------------------------------------------------------------
    # Leaving
    # -------------------------------------------------------------------------

    async def stop_editing(self) -> None:
        """End the session and return to IDLE. Idempotent."""
        await self._manager.end_session(self._key.table, self._record_id)
        if self._fsm.can_transition(EditTrigger.END):
            self._fsm.transition(EditTrigger.END)
        elif self._fsm.can_transition(EditTrigger.FINISH):
            self._fsm.transition(EditTrigger.FINISH)

    async def close(self) -> None:
        await self.stop_editing()
        if self._presence_sub is not None:
            self._manager.unsubscribe(self._presence_sub)
            self._presence_sub = None

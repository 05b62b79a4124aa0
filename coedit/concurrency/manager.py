"""
Concurrency Manager: the optimistic-locking save path

Composes a VersionStore, the ConflictDetector, the SessionTracker and the
ChangeNotifier behind one public API:

    start_session / ping_session / end_session / get_active_users
    safe_save / resolve_conflict
    subscribe / subscribe_sessions / unsubscribe
    get_record / get_audit_history

Save Path:
    1. One conditional update: version == expected_version
    2. Success: audit, clear the caller's session, dispatch RECORD_UPDATED
       in the background; the saver never waits on subscribers
    3. Mismatch: read the current snapshot (retried on transient errors)
       and classify it with the ConflictDetector, then apply the strategy:
         FAIL   → conflict returned as a value
         FORCE  → conditional update against the CURRENT version
         MERGE  → server snapshot + non-colliding local fields, force-saved

Guarantees:
    - The manager caches no versions; a cancelled save leaves nothing stale
    - The CAS write is never retried; only idempotent reads are
    - The store round-trips of a save are bounded by config.save.timeout_s;
      a timeout is an error result, distinct from a conflict, and never
      retried here. A write that committed always reports success
    - Conflicts are returned, never raised

Usage:
    async with ConcurrencyManager(store, user_id="alice") as alice:
        bob = alice.as_user("bob")
        result = await alice.safe_save("orders", {"id": 1, "name": "X"}, 5)
        if result.conflict:
            result = await alice.resolve_conflict(result.conflict, "keepLocal")

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Mapping, Optional, Union

from coedit.concurrency.audit import AuditEntry, AuditTrail
from coedit.concurrency.results import SaveResult
from coedit.conflict.detector import ConflictDetector, ConflictReport
from coedit.conflict.resolution import (
    CustomMerge,
    KeepServer,
    ResolutionChoice,
    build_merge,
    parse_resolution,
)
from coedit.core import constants as C
from coedit.core.config import CoeditConfig
from coedit.core.errors import (
    CoeditError,
    RecordNotFoundError,
    ResolutionError,
    SessionStoreError,
    StoreError,
    StoreTimeoutError,
    TransientStoreError,
    VersionMismatchError,
)
from coedit.core.types import (
    EditAction,
    Err,
    Record,
    RecordId,
    Result,
    SaveStrategy,
    Timestamp,
)
from coedit.notify.events import ChangeEvent, EventKind, EventType
from coedit.notify.notifier import Callback, ChangeNotifier
from coedit.observability.logging import StructuredLogger
from coedit.observability.metrics import EngineMetrics
from coedit.reliability.retry import RetryPolicy, RetryStats, retry_with_backoff
from coedit.session.tracker import ActiveUser, Session, SessionTracker
from coedit.storage.protocols import VersionStore


@dataclass(frozen=True)
class _Commit:
    """A conditional update that landed; side effects still pending."""

    saved: Record
    strategy: SaveStrategy
    patch: Mapping[str, Any]
    resolution: Optional[str] = None


_Outcome = Union[SaveResult, _Commit]


class ConcurrencyManager:
    """
    Per-process orchestrator bound to one caller identity.

    Construct one at startup and inject it; `as_user()` derives managers for
    other users that share the tracker, notifier, audit trail and metrics.
    """

    def __init__(
        self,
        store: VersionStore,
        user_id: str,
        tracker: Optional[SessionTracker] = None,
        notifier: Optional[ChangeNotifier] = None,
        audit: Optional[AuditTrail] = None,
        metrics: Optional[EngineMetrics] = None,
        config: Optional[CoeditConfig] = None,
        detector: Optional[ConflictDetector] = None,
    ) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("user_id must be a non-empty string")

        self._config = config or CoeditConfig()
        cfg = self._config

        if metrics is None and cfg.observability.metrics_enabled:
            metrics = EngineMetrics()
        self._metrics = metrics

        self._store = store
        self._user_id = user_id
        self._tracker = tracker or SessionTracker(
            ttl_s=cfg.session.ttl_s,
            reaper_interval_s=cfg.session.reaper_interval_s,
            max_sessions_per_record=cfg.session.max_sessions_per_record,
            metrics=metrics,
        )
        self._notifier = notifier or ChangeNotifier(
            metrics=metrics, max_tracked_records=cfg.notify.max_tracked_records,
        )
        if audit is None and cfg.audit.enabled:
            audit = AuditTrail(cfg.audit.max_entries_per_record)
        self._audit = audit
        self._detector = detector or ConflictDetector(derived_fields=cfg.save.derived_fields)
        self._read_policy = RetryPolicy(
            max_attempts=cfg.save.read_retry_attempts,
            base_delay_ms=cfg.save.read_retry_base_ms,
            max_delay_ms=cfg.save.read_retry_max_ms,
        )

        self._tracker.set_on_expire(self._on_sessions_expired)
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._started_reaper = False
        self._log = StructuredLogger(__name__).with_extra(user_id=user_id)

    # -------------------------------------------------------------------------
    # Properties / derivation
    # -------------------------------------------------------------------------

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def store(self) -> VersionStore:
        return self._store

    @property
    def tracker(self) -> SessionTracker:
        return self._tracker

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    @property
    def detector(self) -> ConflictDetector:
        return self._detector

    @property
    def metrics(self) -> Optional[EngineMetrics]:
        return self._metrics

    @property
    def config(self) -> CoeditConfig:
        return self._config

    def as_user(self, user_id: str) -> ConcurrencyManager:
        """Manager for another caller sharing every component of this one."""
        return ConcurrencyManager(
            store=self._store,
            user_id=user_id,
            tracker=self._tracker,
            notifier=self._notifier,
            audit=self._audit,
            metrics=self._metrics,
            config=self._config,
            detector=self._detector,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the session reaper (if not running) and this user's heartbeat."""
        if not self._tracker.running:
            await self._tracker.start()
            self._started_reaper = True
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(), name=f"coedit-heartbeat-{self._user_id}",
            )

    async def close(self) -> None:
        """
        Flush pending notifications, then cancel the heartbeat and the reaper
        if this manager started it.
        """
        await self._notifier.drain(C.NOTIFY_DRAIN_TIMEOUT_S)
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._started_reaper:
            await self._tracker.stop()
            self._started_reaper = False

    async def __aenter__(self) -> ConcurrencyManager:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _heartbeat_loop(self) -> None:
        interval = self._config.session.heartbeat_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self._tracker.ping_user(self._user_id)
            except Exception:
                self._log.exception("Heartbeat failed")

    async def _on_sessions_expired(self, sessions: list[Session]) -> None:
        for session in sessions:
            await self._notifier.publish(ChangeEvent.presence(
                EventType.SESSION_EXPIRED,
                session.table,
                session.record_id,
                session.user_id,
                session.action.value,
            ))

    # -------------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        table: str,
        record_id: RecordId,
        action: EditAction | str = EditAction.VIEWING,
    ) -> None:
        """Register presence. Never raises; failures degrade presence to unknown."""
        try:
            action = EditAction.parse(action)
            await self._tracker.start_session(self._user_id, table, record_id, action)
        except SessionStoreError as e:
            self._log.warning(
                "Presence unavailable", table=table, record_id=str(record_id),
                error=str(e),
            )
            return
        except Exception:
            self._log.exception(
                "Unexpected presence failure", table=table, record_id=str(record_id),
            )
            return

        await self._notifier.publish(ChangeEvent.presence(
            EventType.SESSION_STARTED, table, record_id, self._user_id, action.value,
        ))

    async def ping_session(self, table: str, record_id: RecordId) -> None:
        """Renew the caller's session on one record; no-op without one."""
        try:
            await self._tracker.ping(self._user_id, table, record_id)
        except Exception:
            self._log.exception("Ping failed", table=table, record_id=str(record_id))

    async def end_session(self, table: str, record_id: RecordId) -> None:
        """Idempotent. Publishes SESSION_ENDED only when a session was removed."""
        removed = await self._release_session(table, record_id)
        if removed is not None:
            await self._notifier.publish(self._session_ended(table, record_id, removed))

    async def _release_session(self, table: str, record_id: RecordId) -> Optional[Session]:
        try:
            return await self._tracker.end_session(self._user_id, table, record_id)
        except Exception:
            self._log.exception(
                "Unexpected presence failure", table=table, record_id=str(record_id),
            )
            return None

    def _session_ended(self, table: str, record_id: RecordId, removed: Session) -> ChangeEvent:
        return ChangeEvent.presence(
            EventType.SESSION_ENDED, table, record_id, self._user_id, removed.action.value,
        )

    async def get_active_users(self, table: str, record_id: RecordId) -> list[ActiveUser]:
        """Non-expired sessions, most recently started first. [] when unknown."""
        try:
            return await self._tracker.active(table, record_id)
        except Exception:
            self._log.exception(
                "Presence lookup failed", table=table, record_id=str(record_id),
            )
            return []

    async def _active_user_ids(self, table: str, record_id: RecordId) -> list[str]:
        return [u.user_id for u in await self.get_active_users(table, record_id)]

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        table: str,
        record_id: Optional[RecordId],
        callback: Callback,
        kinds: EventKind = EventKind.RECORD,
    ) -> str:
        return self._notifier.subscribe(table, record_id, callback, kinds)

    def subscribe_sessions(
        self,
        table: str,
        record_id: Optional[RecordId],
        callback: Callback,
    ) -> str:
        """Presence events only (started, ended, expired)."""
        return self._notifier.subscribe(table, record_id, callback, EventKind.PRESENCE)

    def unsubscribe(self, subscription_id: str) -> None:
        self._notifier.unsubscribe(subscription_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _read(self, table: str, record_id: RecordId) -> Result[Record, StoreError]:
        stats = RetryStats()
        result = await retry_with_backoff(
            lambda: self._store.get(table, record_id),
            policy=self._read_policy,
            operation="get",
            stats=stats,
        )
        if self._metrics is not None and stats.total_attempts > 1:
            self._metrics.store_retries.inc(stats.total_attempts - 1, operation="get")
        return result

    async def get_record(self, table: str, record_id: RecordId) -> Result[Record, StoreError]:
        """Current server snapshot; bounded by the save timeout, retried on transient errors."""
        timeout_s = self._config.save.timeout_s
        try:
            return await asyncio.wait_for(self._read(table, record_id), timeout=timeout_s)
        except asyncio.TimeoutError:
            return Err(StoreError.timeout("get", int(timeout_s * C.SECOND_MS)))

    def get_audit_history(
        self,
        table: str,
        record_id: RecordId,
        limit: int = C.AUDIT_DEFAULT_LIMIT,
    ) -> list[AuditEntry]:
        """Committed saves on a record, newest first."""
        if self._audit is None:
            return []
        return self._audit.history(table, record_id, limit)

    # -------------------------------------------------------------------------
    # Save path
    # -------------------------------------------------------------------------

    def _build_patch(self, record: Mapping[str, Any]) -> Record:
        """Business fields minus system/derived fields, plus modification metadata."""
        ignored = self._detector.ignored_fields
        patch = {k: v for k, v in record.items() if k not in ignored}
        patch[C.MODIFIED_BY_FIELD] = self._user_id
        patch[C.UPDATED_AT_FIELD] = Timestamp.now().isoformat()
        return patch

    async def safe_save(
        self,
        table: str,
        record: Mapping[str, Any],
        expected_version: int,
        strategy: SaveStrategy | str | None = None,
        base: Optional[Mapping[str, Any]] = None,
    ) -> SaveResult:
        """
        Optimistic save of `record` against `expected_version`.

        Args:
            record: Must carry `id`; other non-system fields form the patch
            strategy: FAIL (default), FORCE or MERGE
            base: Snapshot the caller started from; enables three-way
                detection so disjoint edits merge cleanly

        Returns:
            SaveResult with exactly one of data / conflict / error
        """
        strategy = SaveStrategy.parse(strategy)
        record_id = record.get(C.ID_FIELD)
        if record_id is None or record_id == "":
            return SaveResult.failed(StoreError.invalid_request("record has no id"))

        started = time.perf_counter()
        outcome = await self._bounded(
            self._save(table, record_id, dict(record), expected_version, strategy, base),
            "safe_save",
        )
        result = await self._finish(table, record_id, outcome)
        self._record_outcome(table, strategy, result, started)
        return result

    async def _bounded(self, attempt: Awaitable[_Outcome], operation: str) -> _Outcome:
        """Store round-trips under save.timeout_s. Commit side effects run after."""
        timeout_s = self._config.save.timeout_s
        try:
            return await asyncio.wait_for(attempt, timeout=timeout_s)
        except asyncio.TimeoutError:
            return SaveResult.failed(
                StoreError.timeout(operation, int(timeout_s * C.SECOND_MS)),
            )

    async def _finish(self, table: str, record_id: RecordId, outcome: _Outcome) -> SaveResult:
        if isinstance(outcome, _Commit):
            return await self._committed(table, record_id, outcome)
        return outcome

    async def _save(
        self,
        table: str,
        record_id: RecordId,
        record: Record,
        expected_version: int,
        strategy: SaveStrategy,
        base: Optional[Mapping[str, Any]],
    ) -> _Outcome:
        patch = self._build_patch(record)
        cas = await self._store.conditional_update(table, record_id, patch, expected_version)
        if cas.is_ok():
            return _Commit(cas.value, strategy, patch)

        error = cas.error
        if not isinstance(error, VersionMismatchError):
            self._log.warning(
                "Save failed", table=table, record_id=str(record_id), error=str(error),
            )
            return SaveResult.failed(error)

        if strategy is SaveStrategy.FORCE:
            return await self._force(table, record_id, record, strategy)

        current = await self._read(table, record_id)
        if current.is_err():
            return SaveResult.failed(current.error)
        server = current.value

        active = await self._active_user_ids(table, record_id)
        if self._config.save.presence_gated_detection and len(active) < 2:
            self._log.info(
                "Version mismatch with a single editor present; saving over current version",
                table=table, record_id=str(record_id),
            )
            return await self._force(table, record_id, record, strategy, current=server)

        report = self._detector.detect(
            table=table,
            record_id=record_id,
            expected_version=expected_version,
            server=server,
            local=record,
            base=dict(base) if base is not None else None,
            active_users=active,
        )

        if strategy is SaveStrategy.MERGE and not report.has_conflict:
            changed = (
                self._detector.changed_fields(record, base) if base is not None else None
            )
            merged = build_merge(
                server,
                record,
                report.conflicting_fields,
                changed_fields=changed,
                ignored_fields=self._detector.ignored_fields,
            )
            self._log.info(
                "Auto-merging disjoint changes",
                table=table, record_id=str(record_id),
                server_version=report.current_version,
            )
            return await self._force(table, record_id, merged, strategy, current=server)

        return self._conflict(report)

    async def _force(
        self,
        table: str,
        record_id: RecordId,
        record: Mapping[str, Any],
        strategy: SaveStrategy,
        current: Optional[Record] = None,
        resolution: Optional[str] = None,
    ) -> _Outcome:
        """
        Conditional update against the current server version.

        A racing writer between read and write costs one more attempt, up to
        force_max_attempts; after that the latest state is reported as a
        conflict.
        """
        patch = self._build_patch(record)
        attempted_version = 0
        for attempt in range(self._config.save.force_max_attempts):
            if current is None:
                read = await self._read(table, record_id)
                if read.is_err():
                    return SaveResult.failed(read.error)
                current = read.value

            attempted_version = int(current.get(C.VERSION_FIELD, 0))
            cas = await self._store.conditional_update(
                table, record_id, patch, attempted_version,
            )
            if cas.is_ok():
                return _Commit(cas.value, strategy, patch, resolution)
            if not isinstance(cas.error, VersionMismatchError):
                return SaveResult.failed(cas.error)

            self._log.debug(
                "Force save raced another writer",
                table=table, record_id=str(record_id), attempt=attempt + 1,
            )
            current = None

        latest = await self._read(table, record_id)
        if latest.is_err():
            return SaveResult.failed(latest.error)
        report = self._detector.detect(
            table=table,
            record_id=record_id,
            expected_version=attempted_version,
            server=latest.value,
            local=dict(record),
            active_users=await self._active_user_ids(table, record_id),
        )
        return self._conflict(report)

    def _conflict(self, report: ConflictReport) -> SaveResult:
        if self._metrics is not None:
            self._metrics.conflicts.inc(table=report.table, kind=report.kind.value)
        self._log.info(
            "Conflict detected",
            table=report.table,
            record_id=str(report.record_id),
            expected_version=report.expected_version,
            current_version=report.current_version,
            conflicting_fields=sorted(report.conflicting_fields),
        )
        return SaveResult.conflicted(report)

    async def _committed(self, table: str, record_id: RecordId, commit: _Commit) -> SaveResult:
        """
        Audit, release the caller's session and hand the events to a
        background dispatch. The write has landed; nothing here can fail it.
        """
        saved = commit.saved
        version = int(saved.get(C.VERSION_FIELD, 0))
        if self._audit is not None:
            self._audit.record(
                table,
                record_id,
                version,
                self._user_id,
                commit.strategy,
                changed_fields=(
                    k for k in commit.patch
                    if k not in (C.MODIFIED_BY_FIELD, C.UPDATED_AT_FIELD)
                ),
                resolution=commit.resolution,
            )

        events = [ChangeEvent.record_updated(table, record_id, saved, version, self._user_id)]
        try:
            removed = await self._release_session(table, record_id)
            if removed is not None:
                events.insert(0, self._session_ended(table, record_id, removed))
        finally:
            self._notifier.dispatch(*events)

        self._log.debug("Saved", table=table, record_id=str(record_id), version=version)
        return SaveResult.ok(saved)

    def _record_outcome(
        self,
        table: str,
        strategy: SaveStrategy,
        result: SaveResult,
        started: float,
    ) -> None:
        if self._metrics is None:
            return
        if result.success:
            outcome = "success"
        elif result.conflict is not None:
            outcome = "conflict"
        else:
            outcome = _error_outcome(result.error)
        self._metrics.saves.inc(table=table, outcome=outcome)
        self._metrics.save_latency.observe(
            time.perf_counter() - started, table=table, strategy=strategy.value,
        )

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve_conflict(
        self,
        conflict: ConflictReport,
        choice: Any,
    ) -> SaveResult:
        """
        Apply the user's decision. The expected version is not re-checked.

        choice:
            ResolutionChoice.KEEP_LOCAL / "keepLocal"   force-save local snapshot
            ResolutionChoice.KEEP_SERVER / "keepServer" return server snapshot
            KeepServer(touch=True)                      metadata-only force write
            CustomMerge(record) / {"merged": record}    force-save caller data
        """
        try:
            resolution = parse_resolution(choice)
        except ResolutionError as e:
            return SaveResult.failed(e)

        table, record_id = conflict.table, conflict.record_id

        if isinstance(resolution, KeepServer) and not resolution.touch:
            await self.end_session(table, record_id)
            return SaveResult.ok(dict(conflict.server_snapshot))

        if isinstance(resolution, KeepServer):
            record: Mapping[str, Any] = {}
            label = "keep_server"
        elif isinstance(resolution, CustomMerge):
            record = resolution.record
            label = "custom"
        else:
            record = conflict.local_snapshot
            label = ResolutionChoice.KEEP_LOCAL.value

        started = time.perf_counter()
        outcome = await self._bounded(
            self._force(table, record_id, record, SaveStrategy.FORCE, resolution=label),
            "resolve_conflict",
        )
        result = await self._finish(table, record_id, outcome)
        self._record_outcome(table, SaveStrategy.FORCE, result, started)
        return result


def _error_outcome(error: Optional[CoeditError]) -> str:
    if isinstance(error, RecordNotFoundError):
        return "not_found"
    if isinstance(error, StoreTimeoutError):
        return "timeout"
    if isinstance(error, TransientStoreError):
        return "transient"
    return "error"

"""
Session Tracker: who is viewing or editing which record

Provides presence tracking with:
- One session per (user_id, table, record_id); a new start replaces the old
- Heartbeat pings extending a session's lifetime
- TTL eviction, both lazily on read and by a periodic reaper task
- Failure isolation: one bad record never stops the reaper

Storage Model:
    (table, record_id) -> [Session, ...] in process memory, guarded by an
    asyncio.Lock. Presence is advisory; losing it never blocks a save.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from coedit.core import constants as C
from coedit.core.errors import SessionStoreError
from coedit.core.types import EditAction, RecordId, RecordKey, Timestamp
from coedit.observability.metrics import EngineMetrics

logger = logging.getLogger(__name__)

Clock = Callable[[], Timestamp]
ExpireCallback = Callable[[list["Session"]], Union[Awaitable[None], None]]


# =============================================================================
# SESSION MODEL
# =============================================================================
@dataclass(slots=True)
class Session:
    """A user's presence on one record."""

    user_id: str
    table: str
    record_id: str
    action: EditAction
    started_at: Timestamp
    last_ping: Timestamp

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.table, self.record_id)

    def is_expired(self, now: Timestamp, ttl_s: float) -> bool:
        return self.last_ping.elapsed_seconds(now) > ttl_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "table": self.table,
            "record_id": self.record_id,
            "action": self.action.value,
            "started_at": self.started_at.isoformat(),
            "last_ping": self.last_ping.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ActiveUser:
    """Read-only presence view returned to callers."""

    user_id: str
    action: EditAction
    started_at: Timestamp
    last_ping: Timestamp

    @classmethod
    def from_session(cls, session: Session) -> ActiveUser:
        return cls(
            user_id=session.user_id,
            action=session.action,
            started_at=session.started_at,
            last_ping=session.last_ping,
        )

    @property
    def is_editing(self) -> bool:
        return self.action is EditAction.EDITING

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "action": self.action.value,
            "started_at": self.started_at.isoformat(),
        }


# =============================================================================
# SESSION TRACKER
# =============================================================================
class SessionTracker:
    """
    In-process presence registry with TTL expiry.

    Usage:
        tracker = SessionTracker(ttl_s=300)
        await tracker.start()               # launches the reaper

        await tracker.start_session("alice", "orders", 42, EditAction.EDITING)
        users = await tracker.active("orders", 42)

        await tracker.stop()
    """

    __slots__ = (
        "_sessions",
        "_lock",
        "_ttl_s",
        "_reaper_interval_s",
        "_max_per_record",
        "_clock",
        "_on_expire",
        "_metrics",
        "_reaper_task",
    )

    def __init__(
        self,
        ttl_s: float = C.SESSION_TTL_S,
        reaper_interval_s: float = C.SESSION_REAPER_INTERVAL_S,
        max_sessions_per_record: int = C.SESSION_MAX_PER_RECORD,
        clock: Clock = Timestamp.now,
        on_expire: Optional[ExpireCallback] = None,
        metrics: Optional[EngineMetrics] = None,
    ) -> None:
        if ttl_s <= 0:
            raise ValueError(f"ttl_s must be > 0, got {ttl_s}")
        if reaper_interval_s <= 0:
            raise ValueError(f"reaper_interval_s must be > 0, got {reaper_interval_s}")
        self._sessions: dict[RecordKey, list[Session]] = {}
        self._lock = asyncio.Lock()
        self._ttl_s = ttl_s
        self._reaper_interval_s = reaper_interval_s
        self._max_per_record = max_sessions_per_record
        self._clock = clock
        self._on_expire = on_expire
        self._metrics = metrics
        self._reaper_task: Optional[asyncio.Task[None]] = None

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def set_on_expire(self, callback: Optional[ExpireCallback]) -> None:
        self._on_expire = callback

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(self, user_id: str, table: str, record_id: RecordId) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise SessionStoreError.invalid_identity("user_id", user_id)
        if len(user_id) > C.USER_ID_MAX_LENGTH:
            raise SessionStoreError.invalid_identity("user_id", user_id)
        if not isinstance(table, str) or not table.strip():
            raise SessionStoreError.invalid_identity("table", table)
        if record_id is None or str(record_id) == "":
            raise SessionStoreError.invalid_identity("record_id", record_id)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        table: str,
        record_id: RecordId,
        action: EditAction | str = EditAction.VIEWING,
    ) -> Session:
        """
        Register presence, replacing any prior session of the same user.

        Raises:
            SessionStoreError: Invalid identity or record at capacity
        """
        self._validate(user_id, table, record_id)
        action = EditAction.parse(action)
        key = RecordKey.of(table, record_id)
        now = self._clock()

        async with self._lock:
            sessions = [s for s in self._sessions.get(key, []) if s.user_id != user_id]
            if len(sessions) >= self._max_per_record:
                raise SessionStoreError.capacity_exceeded(
                    str(key), len(sessions), self._max_per_record,
                )
            session = Session(
                user_id=user_id,
                table=key.table,
                record_id=key.record_id,
                action=action,
                started_at=now,
                last_ping=now,
            )
            sessions.append(session)
            self._sessions[key] = sessions
            self._update_gauge(key.table)

        logger.debug(
            "Session started",
            extra={"user_id": user_id, "record": str(key), "action": action.value},
        )
        return session

    async def ping(self, user_id: str, table: str, record_id: RecordId) -> bool:
        """Renew last_ping only. Returns False when no session exists."""
        key = RecordKey.of(table, record_id)
        async with self._lock:
            for session in self._sessions.get(key, []):
                if session.user_id == user_id:
                    session.last_ping = self._clock()
                    return True
        return False

    async def ping_user(self, user_id: str) -> int:
        """Renew every session held by `user_id`. Returns the count renewed."""
        now = self._clock()
        renewed = 0
        async with self._lock:
            for sessions in self._sessions.values():
                for session in sessions:
                    if session.user_id == user_id:
                        session.last_ping = now
                        renewed += 1
        return renewed

    async def end_session(
        self,
        user_id: str,
        table: str,
        record_id: RecordId,
    ) -> Optional[Session]:
        """Idempotent removal. Returns the removed session, if any."""
        key = RecordKey.of(table, record_id)
        async with self._lock:
            sessions = self._sessions.get(key)
            if not sessions:
                return None
            removed = next((s for s in sessions if s.user_id == user_id), None)
            if removed is None:
                return None
            remaining = [s for s in sessions if s.user_id != user_id]
            if remaining:
                self._sessions[key] = remaining
            else:
                del self._sessions[key]
            self._update_gauge(key.table)
            return removed

    async def active(self, table: str, record_id: RecordId) -> list[ActiveUser]:
        """
        Non-expired sessions on a record, most recently started first.

        Expired sessions found here are evicted immediately.
        """
        key = RecordKey.of(table, record_id)
        now = self._clock()
        async with self._lock:
            expired = self._evict_expired(key, now)
            sessions = list(self._sessions.get(key, []))
            if expired:
                self._update_gauge(key.table)

        if expired:
            await self._report_expired(expired)

        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return [ActiveUser.from_session(s) for s in sessions]

    async def count(self, table: str, record_id: RecordId) -> int:
        return len(await self.active(table, record_id))

    async def sessions_for_user(self, user_id: str) -> list[Session]:
        async with self._lock:
            return [
                s for sessions in self._sessions.values()
                for s in sessions if s.user_id == user_id
            ]

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def _evict_expired(self, key: RecordKey, now: Timestamp) -> list[Session]:
        """Drop expired sessions for one record. Caller holds the lock."""
        sessions = self._sessions.get(key)
        if not sessions:
            return []
        expired = [s for s in sessions if s.is_expired(now, self._ttl_s)]
        if not expired:
            return []
        remaining = [s for s in sessions if not s.is_expired(now, self._ttl_s)]
        if remaining:
            self._sessions[key] = remaining
        else:
            del self._sessions[key]
        return expired

    async def reap(self) -> list[Session]:
        """
        Evict every session whose last ping is older than the TTL.

        A failure on one record is logged and skipped.
        """
        now = self._clock()
        expired: list[Session] = []
        touched_tables: set[str] = set()

        async with self._lock:
            for key in list(self._sessions.keys()):
                try:
                    evicted = self._evict_expired(key, now)
                except Exception:
                    logger.exception(
                        "Failed to reap sessions for record",
                        extra={"record": str(key)},
                    )
                    continue
                if evicted:
                    expired.extend(evicted)
                    touched_tables.add(key.table)
            for table in touched_tables:
                self._update_gauge(table)

        if expired:
            if self._metrics is not None:
                for session in expired:
                    self._metrics.sessions_reaped.inc(table=session.table)
            logger.info("Reaped expired sessions", extra={"count": len(expired)})
            await self._report_expired(expired)
        return expired

    async def _report_expired(self, expired: list[Session]) -> None:
        if self._on_expire is None:
            return
        try:
            outcome = self._on_expire(expired)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Session expiry callback failed")

    # -------------------------------------------------------------------------
    # Reaper lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the periodic reaper. Idempotent."""
        if self._reaper_task is not None and not self._reaper_task.done():
            return
        self._reaper_task = asyncio.create_task(
            self._reaper_loop(), name="coedit-session-reaper",
        )

    async def stop(self) -> None:
        """Cancel the reaper and wait for it to exit."""
        task, self._reaper_task = self._reaper_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._reaper_task is not None and not self._reaper_task.done()

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reaper_interval_s)
            try:
                await self.reap()
            except Exception:
                logger.exception("Session reaper iteration failed")

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def _update_gauge(self, table: str) -> None:
        if self._metrics is None:
            return
        total = sum(
            len(sessions) for key, sessions in self._sessions.items()
            if key.table == table
        )
        self._metrics.active_sessions.set(total, table=table)

    @property
    def total_sessions(self) -> int:
        """Total session count (for metrics)."""
        return sum(len(sessions) for sessions in self._sessions.values())

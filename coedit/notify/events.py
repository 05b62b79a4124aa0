"""
Change events carried by the notifier and the optional push channel.

Wire shape (JSON object):
    {
        "event": "record_updated",
        "table": "orders",
        "record_id": "42",
        "payload": {...},
        "version": 7,          # record events only
        "user_id": "alice",
        "origin": "9f1c...",   # publishing process, used to drop echoes
        "ts": 1700000000000000000
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from typing import Any, Mapping, Optional

from coedit.core.errors import NotificationError
from coedit.core.types import RecordId, RecordKey, Timestamp


class EventKind(Flag):
    """Subscription filter: what a subscriber wants to hear about."""

    RECORD = auto()
    PRESENCE = auto()
    ALL = RECORD | PRESENCE


class EventType(str, Enum):
    RECORD_UPDATED = "record_updated"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    SESSION_EXPIRED = "session_expired"

    @property
    def kind(self) -> EventKind:
        if self is EventType.RECORD_UPDATED:
            return EventKind.RECORD
        return EventKind.PRESENCE


@dataclass(frozen=True)
class ChangeEvent:
    """
    One committed write or one presence change.

    `version` orders record events; presence events are ordered by the
    notifier's per-record publish sequence.
    """

    event: EventType
    table: str
    record_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    version: Optional[int] = None
    user_id: Optional[str] = None
    origin: Optional[str] = None
    timestamp: Timestamp = field(default_factory=Timestamp.now)

    @classmethod
    def record_updated(
        cls,
        table: str,
        record_id: RecordId,
        record: Mapping[str, Any],
        version: int,
        user_id: Optional[str] = None,
    ) -> ChangeEvent:
        return cls(
            event=EventType.RECORD_UPDATED,
            table=table,
            record_id=str(record_id),
            payload=dict(record),
            version=version,
            user_id=user_id,
        )

    @classmethod
    def presence(
        cls,
        event: EventType,
        table: str,
        record_id: RecordId,
        user_id: str,
        action: Optional[str] = None,
    ) -> ChangeEvent:
        payload: dict[str, Any] = {"user_id": user_id}
        if action is not None:
            payload["action"] = action
        return cls(
            event=event,
            table=table,
            record_id=str(record_id),
            payload=payload,
            user_id=user_id,
        )

    @property
    def kind(self) -> EventKind:
        return self.event.kind

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.table, self.record_id)

    def with_origin(self, origin: str) -> ChangeEvent:
        return ChangeEvent(
            event=self.event,
            table=self.table,
            record_id=self.record_id,
            payload=self.payload,
            version=self.version,
            user_id=self.user_id,
            origin=origin,
            timestamp=self.timestamp,
        )

    # -------------------------------------------------------------------------
    # Wire format
    # -------------------------------------------------------------------------

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "event": self.event.value,
            "table": self.table,
            "record_id": self.record_id,
            "payload": self.payload,
            "ts": self.timestamp.nanos,
        }
        if self.version is not None:
            message["version"] = self.version
        if self.user_id is not None:
            message["user_id"] = self.user_id
        if self.origin is not None:
            message["origin"] = self.origin
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message(), default=str, separators=(",", ":"))

    @classmethod
    def from_message(cls, message: Mapping[str, Any] | str | bytes) -> ChangeEvent:
        """
        Parse an inbound push-channel message.

        Raises:
            NotificationError: Not JSON, missing keys, or unknown event type
        """
        raw = message
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except (TypeError, ValueError) as e:
                raise NotificationError.malformed_message(f"invalid JSON: {e}", raw) from e
        if not isinstance(message, Mapping):
            raise NotificationError.malformed_message("expected a JSON object", raw)

        for required in ("event", "table", "record_id"):
            if required not in message:
                raise NotificationError.malformed_message(f"missing '{required}'", raw)

        try:
            event_type = EventType(message["event"])
        except ValueError as e:
            raise NotificationError.malformed_message(
                f"unknown event '{message['event']}'", raw,
            ) from e

        payload = message.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise NotificationError.malformed_message("payload must be an object", raw)

        version = message.get("version")
        try:
            version = int(version) if version is not None else None
        except (TypeError, ValueError) as e:
            raise NotificationError.malformed_message("version must be an integer", raw) from e

        ts = message.get("ts")
        return cls(
            event=event_type,
            table=str(message["table"]),
            record_id=str(message["record_id"]),
            payload=dict(payload),
            version=version,
            user_id=message.get("user_id"),
            origin=message.get("origin"),
            timestamp=Timestamp(int(ts)) if isinstance(ts, int) else Timestamp.now(),
        )

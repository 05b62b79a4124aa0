"""
Change Notifier: in-process publish/subscribe fan-out

Delivery Semantics:
- Best-effort, at-most-once, no replay buffer
- Per subscriber, events of one record arrive in commit order:
  record events are ordered by version, presence events by a sequence
  assigned at publish. An event older than one the subscriber already
  received is dropped, never delivered late.
- No ordering across different records. A table-wide subscriber keeps
  ordering state for its max_tracked_records most recent records.
- Deliveries to one subscriber are serialized. `publish()` waits for the
  callbacks; `dispatch()` runs them in a background task, so a callback
  may save the very record it watches.

Unsubscribe:
    Flips the subscription inactive under the registry lock before
    returning. Delivery re-checks the flag immediately before every
    callback invocation, so nothing is observable after unsubscribe returns.

Usage:
    notifier = ChangeNotifier()
    sub_id = notifier.subscribe("orders", 42, on_change)
    await notifier.publish(ChangeEvent.record_updated("orders", 42, rec, 7))
    notifier.unsubscribe(sub_id)
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from coedit.core import constants as C
from coedit.core.types import RecordId
from coedit.notify.events import ChangeEvent, EventKind
from coedit.observability.metrics import EngineMetrics

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], Union[Awaitable[None], None]]
Forwarder = Callable[[ChangeEvent], Union[Awaitable[None], None]]
OrderingKey = tuple[EventKind, str, str]


@dataclass(eq=False)
class Subscription:
    """Registered interest in one record, or every record of a table."""

    id: str
    table: str
    record_id: Optional[str]
    kinds: EventKind
    callback: Callback
    active: bool = True
    # Most recently touched records last; bounded by the notifier.
    last_seen: OrderedDict[OrderingKey, int] = field(default_factory=OrderedDict)
    # Serializes deliveries to this subscriber while an async callback runs.
    delivery_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_wildcard(self) -> bool:
        return self.record_id is None

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        if not (event.kind & self.kinds):
            return False
        return self.record_id is None or self.record_id == event.record_id


class ChangeNotifier:
    """
    Subscriber registry and dispatcher.

    Thread Safety:
        Registry mutations and ordering bookkeeping are guarded by a
        threading.Lock, so unsubscribe may be called from any thread.
    """

    __slots__ = (
        "_subscriptions",
        "_lock",
        "_sequence",
        "_forwarders",
        "_origin",
        "_metrics",
        "_max_tracked_records",
        "_pending",
    )

    def __init__(
        self,
        metrics: Optional[EngineMetrics] = None,
        origin: Optional[str] = None,
        max_tracked_records: int = C.NOTIFY_MAX_TRACKED_RECORDS,
    ) -> None:
        if max_tracked_records < 1:
            raise ValueError("max_tracked_records must be >= 1")
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        # One counter for all presence events keeps them ordered per record
        # without per-record state.
        self._sequence = itertools.count(1)
        self._forwarders: list[Forwarder] = []
        self._origin = origin or uuid.uuid4().hex
        self._metrics = metrics
        self._max_tracked_records = max_tracked_records
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def origin(self) -> str:
        """Identifier stamped on locally published events."""
        return self._origin

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        table: str,
        record_id: Optional[RecordId],
        callback: Callback,
        kinds: EventKind = EventKind.RECORD,
    ) -> str:
        """
        Register a callback; `record_id=None` subscribes to the whole table.

        Returns:
            Opaque subscription id
        """
        if not callable(callback):
            raise TypeError("callback must be callable")
        sub = Subscription(
            id=uuid.uuid4().hex,
            table=table,
            record_id=None if record_id is None else str(record_id),
            kinds=kinds,
            callback=callback,
        )
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.debug(
            "Subscribed",
            extra={"subscription_id": sub.id, "table": table, "record_id": sub.record_id},
        )
        return sub.id

    def unsubscribe(self, subscription_id: str) -> None:
        """Idempotent. No delivery to the callback is observable after return."""
        with self._lock:
            sub = self._subscriptions.pop(subscription_id, None)
            if sub is not None:
                sub.active = False
                sub.last_seen.clear()

    def is_subscribed(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def add_forwarder(self, forwarder: Forwarder) -> None:
        """Receive every locally originated event (e.g. a push-channel bridge)."""
        with self._lock:
            self._forwarders.append(forwarder)

    def remove_forwarder(self, forwarder: Forwarder) -> None:
        with self._lock:
            self._forwarders = [f for f in self._forwarders if f is not forwarder]

    # -------------------------------------------------------------------------
    # Publish / Deliver
    # -------------------------------------------------------------------------

    async def publish(self, event: ChangeEvent) -> int:
        """
        Publish a locally originated event to subscribers and forwarders.

        Returns:
            Number of callbacks invoked
        """
        if event.origin is None:
            event = event.with_origin(self._origin)
        if self._metrics is not None:
            self._metrics.events_published.inc(event=event.event.value)

        delivered = await self.deliver(event)

        if event.origin == self._origin:
            with self._lock:
                forwarders = list(self._forwarders)
            for forwarder in forwarders:
                try:
                    outcome = forwarder(event)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    logger.exception(
                        "Event forwarder failed",
                        extra={"event": event.event.value, "record": str(event.key)},
                    )
        return delivered

    def dispatch(self, *events: ChangeEvent) -> asyncio.Task[None]:
        """
        Publish `events`, in order, from a background task.

        The caller never waits on subscriber callbacks. A callback may itself
        save the record it watches; its own event is delivered after the
        callback returns.
        """
        task = asyncio.create_task(self._publish_all(events), name="coedit-dispatch")
        self._pending.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    async def _publish_all(self, events: tuple[ChangeEvent, ...]) -> None:
        for event in events:
            await self.publish(event)

    def _dispatch_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background dispatch failed", exc_info=error)

    @property
    def pending_dispatches(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for background dispatches, including ones started meanwhile.

        Returns:
            False when `timeout` expired; the stragglers are cancelled
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._pending if t is not current]
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, not_done = await asyncio.wait(pending, timeout=remaining)
            if not_done:
                logger.warning(
                    "Cancelling undelivered dispatches", extra={"count": len(not_done)},
                )
                for task in not_done:
                    task.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                return False

    async def deliver(self, event: ChangeEvent) -> int:
        """Dispatch to matching local subscribers only (no forwarding)."""
        order = self._order_of(event)
        ordering_key: OrderingKey = (event.kind, event.table, event.record_id)

        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(event)]

        delivered = 0
        for sub in targets:
            async with sub.delivery_lock:
                if not self._admit(sub, ordering_key, order):
                    continue
                if await self._invoke(sub, event):
                    delivered += 1
        return delivered

    def _admit(self, sub: Subscription, ordering_key: OrderingKey, order: Optional[int]) -> bool:
        with self._lock:
            if not sub.active:
                self._count_drop("inactive")
                return False
            if order is not None:
                seen = sub.last_seen.get(ordering_key)
                if seen is not None and order <= seen:
                    self._count_drop("stale")
                    return False
                sub.last_seen[ordering_key] = order
                sub.last_seen.move_to_end(ordering_key)
                # Forgetting the least recent record only relaxes its ordering.
                while len(sub.last_seen) > self._max_tracked_records:
                    sub.last_seen.popitem(last=False)
            return True

    def _order_of(self, event: ChangeEvent) -> Optional[int]:
        if event.kind is EventKind.RECORD:
            return event.version
        with self._lock:
            return next(self._sequence)

    async def _invoke(self, sub: Subscription, event: ChangeEvent) -> bool:
        # Last check before the callback runs.
        if not sub.active:
            self._count_drop("inactive")
            return False
        try:
            outcome = sub.callback(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception(
                "Subscriber callback failed",
                extra={"subscription_id": sub.id, "event": event.event.value},
            )
            if self._metrics is not None:
                self._metrics.callback_failures.inc(event=event.event.value)
            return False
        if self._metrics is not None:
            self._metrics.events_delivered.inc(event=event.event.value)
        return True

    def _count_drop(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.events_dropped.inc(reason=reason)

    def clear(self) -> None:
        """Deactivate and remove every subscription."""
        with self._lock:
            for sub in self._subscriptions.values():
                sub.active = False
                sub.last_seen.clear()
            self._subscriptions.clear()

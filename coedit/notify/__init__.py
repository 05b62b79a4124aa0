"""
Notify module: change-event fan-out.

Provides:
- ChangeNotifier: in-process publish/subscribe with per-record ordering
- ChangeEvent: wire-compatible event value
- RedisEventBridge: optional cross-process push channel (imported lazily)
"""

from coedit.notify.events import ChangeEvent, EventKind, EventType
from coedit.notify.notifier import ChangeNotifier, Subscription

__all__ = [
    "ChangeEvent",
    "EventKind",
    "EventType",
    "ChangeNotifier",
    "Subscription",
]

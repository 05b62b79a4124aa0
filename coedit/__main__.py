#!/usr/bin/env python3
"""
coedit demo: two users race to edit the same record.

Usage:
    python -m coedit

    # Plain-text logs at debug level
    COEDIT_LOG_JSON=false COEDIT_LOG_LEVEL=DEBUG python -m coedit
"""

from __future__ import annotations

import asyncio
import sys

from coedit.concurrency.manager import ConcurrencyManager
from coedit.core.config import CoeditConfig
from coedit.core.types import EditAction
from coedit.notify.events import ChangeEvent, EventKind
from coedit.observability.logging import LogLevel, setup_logging
from coedit.storage.memory import InMemoryVersionStore


async def demo_widget_race() -> None:
    """
    Record {id: 1, version: 5, name: "Widget"}; users A and B both load it.
    B saves first; A gets a conflict on "name" and keeps their own value.
    """
    print("\n" + "=" * 60)
    print("coedit - Concurrent Edit Demo")
    print("=" * 60 + "\n")

    config_result = CoeditConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        sys.exit(1)

    config = config_result.unwrap()

    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}")
        sys.exit(1)

    setup_logging(
        LogLevel.parse(config.observability.log_level),
        json_output=config.observability.log_json,
    )

    store = InMemoryVersionStore()
    (await store.insert("products", {"id": 1, "version": 5, "name": "Widget"})).unwrap()
    print("✓ Seeded products:1 at version 5")

    async with ConcurrencyManager(store, user_id="user-a", config=config) as alice:
        bob = alice.as_user("user-b")

        def on_change(event: ChangeEvent) -> None:
            print(f"   [event] {event.event.value} v{event.version} by {event.user_id}")

        sub_id = alice.subscribe("products", 1, on_change, kinds=EventKind.ALL)

        await alice.start_session("products", 1, EditAction.EDITING)
        await bob.start_session("products", 1, EditAction.EDITING)
        users = await alice.get_active_users("products", 1)
        print(f"\n1. Active editors: {[u.user_id for u in users]}")

        result = await bob.safe_save("products", {"id": 1, "name": "Widget B"}, 5)
        await alice.notifier.drain()
        print(f"\n2. B saves 'Widget B' at v5 -> success={result.success}, v{result.version}")

        result = await alice.safe_save("products", {"id": 1, "name": "Widget A"}, 5)
        conflict = result.conflict
        if conflict is None:
            print("   Expected a conflict")
            sys.exit(1)
        print(
            f"\n3. A saves 'Widget A' at v5 -> conflict on {sorted(conflict.conflicting_fields)}; "
            f"server has {conflict.server_snapshot['name']!r}"
        )

        result = await alice.resolve_conflict(conflict, "keepLocal")
        await alice.notifier.drain()
        print(f"\n4. A keeps local -> success={result.success}, v{result.version}, "
              f"name={result.data['name']!r}")

        print("\n5. Audit history (newest first):")
        for entry in alice.get_audit_history("products", 1):
            print(f"   v{entry.version} {entry.user_id} {entry.strategy.value} "
                  f"{entry.resolution or ''}")

        alice.unsubscribe(sub_id)

        if alice.metrics is not None:
            print("\n6. Metrics:")
            print(alice.metrics.collector.export_prometheus())

    print("\n✓ Demo complete")
    print("=" * 60 + "\n")


async def main() -> None:
    """Main entry point."""
    try:
        await demo_widget_race()
    except KeyboardInterrupt:
        print("\nInterrupted")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

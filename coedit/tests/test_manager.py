"""
Unit Tests: Concurrency Manager

Tests:
    - Versioned saves and the no-double-advance guarantee
    - FAIL / FORCE / MERGE strategies and conflict reports
    - Resolution (keepLocal, keepServer, touch, custom, invalid)
    - Timeouts, missing records, transient read retries
    - Presence side effects, events and audit history
"""

import asyncio
import dataclasses

import pytest

from coedit.concurrency.manager import ConcurrencyManager
from coedit.conflict.resolution import CustomMerge, KeepServer
from coedit.core.errors import (
    InvalidStoreRequestError,
    RecordNotFoundError,
    ResolutionError,
    StoreError,
    StoreTimeoutError,
    TransientStoreError,
)
from coedit.core.types import EditAction, SaveStrategy
from coedit.notify.events import EventKind
from coedit.session.tracker import SessionTracker
from coedit.tests.utils import EventLog, FakeClock, assert_ok


def with_save(config, **changes):
    return dataclasses.replace(config, save=dataclasses.replace(config.save, **changes))


async def current(store, record_id=1):
    return assert_ok(await store.get("products", record_id))


class TestVersionedSave:
    """Tests for the conditional write path."""

    async def test_save_advances_version(self, manager, store):
        first = await manager.safe_save("products", {"id": 1, "name": "Gadget"}, 5)
        second = await manager.safe_save("products", {"id": 1, "name": "Gizmo"}, 6)

        assert first.success and first.version == 6
        assert second.success and second.version == 7
        record = await current(store)
        assert record["name"] == "Gizmo"
        assert record["last_modified_by"] == "user-a"
        assert "updated_at" in record

    async def test_concurrent_saves_never_double_advance(self, manager, store):
        bob = manager.as_user("user-b")

        results = await asyncio.gather(
            manager.safe_save("products", {"id": 1, "name": "From A"}, 5),
            bob.safe_save("products", {"id": 1, "name": "From B"}, 5),
        )

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.is_conflict
        assert (await current(store))["version"] == 6

    async def test_system_and_derived_fields_not_written(self, manager, store):
        result = await manager.safe_save(
            "products",
            {"id": 1, "version": 99, "name": "Gadget", "quantity_available": 42},
            5,
        )

        assert result.version == 6
        assert "quantity_available" not in await current(store)

    async def test_missing_id_is_invalid_request(self, manager):
        result = await manager.safe_save("products", {"name": "orphan"}, 1)

        assert not result.success
        assert isinstance(result.error, InvalidStoreRequestError)

    async def test_missing_record_is_not_a_conflict(self, manager, metrics):
        result = await manager.safe_save("products", {"id": 99, "name": "ghost"}, 1)

        assert not result.success
        assert result.conflict is None
        assert isinstance(result.error, RecordNotFoundError)
        assert metrics.saves.get(table="products", outcome="not_found") == 1

    def test_empty_user_rejected(self, store):
        with pytest.raises(ValueError):
            ConcurrencyManager(store, user_id="  ")


class TestConflicts:
    """Tests for stale saves under each strategy."""

    async def test_widget_scenario(self, manager, store, metrics):
        bob = manager.as_user("user-b")
        assert (await bob.safe_save("products", {"id": 1, "name": "Widget B"}, 5)).success

        result = await manager.safe_save("products", {"id": 1, "name": "Widget A"}, 5)

        assert result.is_conflict
        report = result.conflict
        assert report.expected_version == 5
        assert report.current_version == 6
        assert report.conflicting_fields == {"name"}
        assert report.last_modified_by == "user-b"
        assert (await current(store))["name"] == "Widget B"
        assert metrics.saves.get(table="products", outcome="conflict") == 1

        resolved = await manager.resolve_conflict(report, "keepLocal")

        assert resolved.success
        assert resolved.version == 7
        assert (await current(store))["name"] == "Widget A"

    async def test_force_from_far_behind(self, manager, store):
        bob = manager.as_user("user-b")
        for version in (5, 6, 7):
            await bob.safe_save("products", {"id": 1, "name": f"v{version + 1}"}, version)

        result = await manager.safe_save(
            "products", {"id": 1, "name": "Forced"}, 5, strategy=SaveStrategy.FORCE,
        )

        assert result.success
        assert result.version == 9
        assert (await current(store))["name"] == "Forced"

    async def test_force_gives_up_after_bounded_races(self, manager, store):
        busy = False

        async def racer(table, record_id, expected):
            nonlocal busy
            if busy:
                return
            busy = True
            try:
                latest = await current(store, record_id)
                await store.conditional_update(
                    table, record_id, {"name": "racer"}, latest["version"],
                )
            finally:
                busy = False

        store.set_before_update(racer)
        result = await manager.safe_save(
            "products", {"id": 1, "name": "Forced"}, 5, strategy="force",
        )
        store.set_before_update(None)

        assert result.is_conflict
        assert result.conflict.expected_version == 8
        assert result.conflict.current_version == 9

    async def test_merge_with_base_combines_disjoint_edits(self, manager, store):
        base = await current(store)
        bob = manager.as_user("user-b")
        await bob.safe_save("products", {"id": 1, "name": "Widget", "price": 10}, 5)

        result = await manager.safe_save(
            "products", {**base, "name": "Gadget"}, 5, strategy="merge", base=base,
        )

        assert result.success
        assert result.version == 7
        assert result.data["name"] == "Gadget"
        assert result.data["price"] == 10

    async def test_merge_with_overlapping_edit_conflicts(self, manager, store):
        base = await current(store)
        bob = manager.as_user("user-b")
        await bob.safe_save("products", {"id": 1, "name": "Widget B"}, 5)

        result = await manager.safe_save(
            "products", {**base, "name": "Widget A"}, 5, strategy="merge", base=base,
        )

        assert result.is_conflict
        assert result.conflict.base_snapshot["name"] == "Widget"
        assert (await current(store))["version"] == 6

    async def test_identical_edit_is_version_only(self, manager):
        bob = manager.as_user("user-b")
        await bob.safe_save("products", {"id": 1, "name": "Same"}, 5)

        result = await manager.safe_save("products", {"id": 1, "name": "Same"}, 5)

        assert result.is_conflict
        assert not result.conflict.has_conflict

    async def test_presence_gate_forces_lone_editor(self, store, config, metrics):
        gated = ConcurrencyManager(
            store, "user-a", config=with_save(config, presence_gated_detection=True),
            metrics=metrics,
        )
        bob = gated.as_user("user-b")
        await bob.safe_save("products", {"id": 1, "name": "Widget B"}, 5)

        result = await gated.safe_save("products", {"id": 1, "name": "Widget A"}, 5)

        assert result.success
        assert result.version == 7

    async def test_conflict_lists_active_users(self, manager):
        bob = manager.as_user("user-b")
        await bob.start_session("products", 1, EditAction.EDITING)
        await manager.start_session("products", 1, EditAction.EDITING)
        await manager.as_user("user-c").safe_save("products", {"id": 1, "name": "C"}, 5)

        result = await manager.safe_save("products", {"id": 1, "name": "A"}, 5)

        assert set(result.conflict.active_users) == {"user-a", "user-b"}


class TestResolution:
    """Tests for resolve_conflict."""

    async def _conflict(self, manager):
        bob = manager.as_user("user-b")
        await bob.safe_save("products", {"id": 1, "name": "Widget B"}, 5)
        result = await manager.safe_save("products", {"id": 1, "name": "Widget A"}, 5)
        assert result.is_conflict
        return result.conflict

    async def test_keep_server_performs_no_write(self, manager, store):
        report = await self._conflict(manager)
        calls = store.update_calls

        result = await manager.resolve_conflict(report, "keepServer")

        assert result.success
        assert result.data["name"] == "Widget B"
        assert result.version == 6
        assert store.update_calls == calls

    async def test_keep_server_touch_restamps_metadata(self, manager, store):
        report = await self._conflict(manager)

        result = await manager.resolve_conflict(report, KeepServer(touch=True))

        record = await current(store)
        assert result.success
        assert record["version"] == 7
        assert record["name"] == "Widget B"
        assert record["last_modified_by"] == "user-a"

    async def test_custom_merge(self, manager, store):
        report = await self._conflict(manager)

        result = await manager.resolve_conflict(report, {"merged": {"name": "Widget AB"}})

        assert result.success
        assert (await current(store))["name"] == "Widget AB"
        assert manager.get_audit_history("products", 1)[0].resolution == "custom"

    async def test_resolution_ignores_newer_versions(self, manager, store):
        report = await self._conflict(manager)
        await manager.as_user("user-c").safe_save("products", {"id": 1, "name": "C"}, 6)

        result = await manager.resolve_conflict(report, CustomMerge({"name": "Final"}))

        assert result.success
        assert result.version == 8

    async def test_invalid_choice_is_failure(self, manager, store):
        report = await self._conflict(manager)

        result = await manager.resolve_conflict(report, "discard")

        assert not result.success
        assert isinstance(result.error, ResolutionError)
        assert (await current(store))["version"] == 6


class TestStoreFailures:
    """Tests for timeouts and transient errors."""

    async def test_timeout_is_distinct_from_conflict(self, store, config, metrics):
        slow = ConcurrencyManager(
            store, "user-a", config=with_save(config, timeout_s=0.05), metrics=metrics,
        )
        store.set_latency(0.5)

        result = await slow.safe_save("products", {"id": 1, "name": "late"}, 5)

        store.set_latency(0)
        assert not result.success
        assert result.conflict is None
        assert isinstance(result.error, StoreTimeoutError)
        assert metrics.saves.get(table="products", outcome="timeout") == 1
        assert (await current(store))["version"] == 5

    async def test_get_record_timeout(self, store, config):
        slow = ConcurrencyManager(store, "user-a", config=with_save(config, timeout_s=0.05))
        store.set_latency(0.5)

        result = await slow.get_record("products", 1)

        store.set_latency(0)
        assert isinstance(result.error, StoreTimeoutError)

    async def test_conflict_read_is_retried(self, manager, store, metrics):
        await manager.as_user("user-b").safe_save("products", {"id": 1, "name": "B"}, 5)
        store.inject_fault("get", StoreError.transient("get"), times=2)

        result = await manager.safe_save("products", {"id": 1, "name": "A"}, 5)

        assert result.is_conflict
        assert metrics.store_retries.get(operation="get") == 2

    async def test_read_retries_exhausted(self, manager, store):
        await manager.as_user("user-b").safe_save("products", {"id": 1, "name": "B"}, 5)
        store.inject_fault("get", StoreError.transient("get"), times=3)

        result = await manager.safe_save("products", {"id": 1, "name": "A"}, 5)

        assert isinstance(result.error, TransientStoreError)

    async def test_write_is_never_retried(self, manager, store, metrics):
        store.inject_fault("conditional_update", StoreError.transient("conditional_update"))

        result = await manager.safe_save("products", {"id": 1, "name": "A"}, 5)

        assert isinstance(result.error, TransientStoreError)
        assert store.update_calls == 1
        assert (await current(store))["version"] == 5
        assert metrics.saves.get(table="products", outcome="transient") == 1


class TestSideEffects:
    """Tests for presence, events and audit around saves."""

    async def test_successful_save_clears_session(self, manager):
        await manager.start_session("products", 1, "editing")
        assert [u.user_id for u in await manager.get_active_users("products", 1)] == ["user-a"]

        await manager.safe_save("products", {"id": 1, "name": "Gadget"}, 5)

        assert await manager.get_active_users("products", 1) == []

    async def test_conflict_keeps_session(self, manager):
        await manager.as_user("user-b").safe_save("products", {"id": 1, "name": "B"}, 5)
        await manager.start_session("products", 1, "editing")

        await manager.safe_save("products", {"id": 1, "name": "A"}, 5)

        assert len(await manager.get_active_users("products", 1)) == 1

    async def test_start_session_never_raises(self, manager):
        await manager.start_session("products", None)
        await manager.start_session("", 1)
        await manager.start_session("products", 1, "juggling")

        assert await manager.get_active_users("products", 1) == []

    async def test_record_events_published(self, manager):
        log = EventLog()
        manager.subscribe("products", 1, log)

        await manager.safe_save("products", {"id": 1, "name": "Gadget"}, 5)
        await manager.notifier.drain()

        assert log.types == ["record_updated"]
        assert log.versions == [6]
        assert log.events[0].user_id == "user-a"
        assert log.events[0].payload["name"] == "Gadget"

    async def test_presence_events_published(self, manager):
        log = EventLog()
        manager.subscribe_sessions("products", 1, log)

        await manager.start_session("products", 1, "viewing")
        await manager.end_session("products", 1)
        await manager.end_session("products", 1)

        assert log.types == ["session_started", "session_ended"]

    async def test_unsubscribed_callback_not_invoked(self, manager):
        log = EventLog()
        sub_id = manager.subscribe("products", None, log, EventKind.ALL)
        manager.unsubscribe(sub_id)

        await manager.safe_save("products", {"id": 1, "name": "Gadget"}, 5)
        await manager.notifier.drain()

        assert log.events == []

    async def test_audit_history_newest_first(self, manager):
        bob = manager.as_user("user-b")
        await manager.safe_save("products", {"id": 1, "name": "A"}, 5)
        await bob.safe_save("products", {"id": 1, "name": "B", "price": 3}, 6)

        history = manager.get_audit_history("products", 1)

        assert [(e.version, e.user_id) for e in history] == [(7, "user-b"), (6, "user-a")]
        assert history[0].changed_fields == {"name", "price"}
        assert history[0].strategy is SaveStrategy.FAIL
        assert manager.get_audit_history("products", 1, limit=1) == history[:1]


class TestCommitTail:
    """Tests for what follows a landed write."""

    async def test_slow_subscriber_does_not_fail_save(self, store, config, metrics):
        manager = ConcurrencyManager(
            store, "user-a", config=with_save(config, timeout_s=0.1), metrics=metrics,
        )
        release = asyncio.Event()
        seen = []

        async def slow(event):
            seen.append(event.version)
            await release.wait()

        manager.subscribe("products", 1, slow)
        await manager.start_session("products", 1, "editing")

        result = await asyncio.wait_for(
            manager.safe_save("products", {"id": 1, "name": "Gadget"}, 5), timeout=1.0,
        )
        await asyncio.sleep(0.2)

        assert result.success
        assert result.version == 6
        assert [e.version for e in manager.get_audit_history("products", 1)] == [6]
        assert await manager.get_active_users("products", 1) == []
        assert metrics.saves.get(table="products", outcome="success") == 1
        assert seen == [6]

        release.set()
        assert await manager.notifier.drain(timeout=1.0)

    async def test_subscriber_may_save_the_record_it_watches(self, manager, store):
        bob = manager.as_user("user-b")
        seen, follow_ups = [], []

        async def follow_up(event):
            seen.append(event.version)
            if event.version == 6:
                follow_ups.append(await bob.safe_save("products", {"id": 1, "price": 3}, 6))

        manager.subscribe("products", 1, follow_up)

        result = await manager.safe_save("products", {"id": 1, "name": "Gadget"}, 5)
        assert await manager.notifier.drain(timeout=1.0)

        assert result.success
        assert follow_ups[0].success
        assert follow_ups[0].version == 7
        assert seen == [6, 7]
        assert (await current(store))["version"] == 7


class TestLifecycle:
    """Tests for heartbeat, reaper ownership and expiry events."""

    async def test_expired_sessions_publish_events(self, store, config):
        clock = FakeClock()
        tracker = SessionTracker(ttl_s=10, clock=clock)
        manager = ConcurrencyManager(store, "user-a", tracker=tracker, config=config)
        log = EventLog()
        manager.subscribe_sessions("products", 1, log)

        await manager.start_session("products", 1, "editing")
        clock.advance(20)
        await tracker.reap()

        assert log.types == ["session_started", "session_expired"]
        assert log.events[-1].payload["action"] == "editing"

    async def test_ping_renews_one_record(self, store, config):
        clock = FakeClock()
        tracker = SessionTracker(ttl_s=10, clock=clock)
        manager = ConcurrencyManager(store, "user-a", tracker=tracker, config=config)
        await manager.start_session("products", 1)
        await manager.start_session("products", 2)

        clock.advance(8)
        await manager.ping_session("products", 1)
        await manager.ping_session("products", 404)
        clock.advance(5)

        assert [u.user_id for u in await manager.get_active_users("products", 1)] == ["user-a"]
        assert await manager.get_active_users("products", 2) == []

    async def test_heartbeat_keeps_session_alive(self, store, config):
        clock = FakeClock()
        tracker = SessionTracker(ttl_s=300, clock=clock)
        fast = dataclasses.replace(
            config, session=dataclasses.replace(config.session, heartbeat_interval_s=0.01),
        )

        async with ConcurrencyManager(store, "user-a", tracker=tracker, config=fast) as mgr:
            await mgr.start_session("products", 1)
            clock.advance(200)
            await asyncio.sleep(0.05)
            clock.advance(200)

            assert [u.user_id for u in await mgr.get_active_users("products", 1)] == ["user-a"]

    async def test_reaper_stopped_only_by_owner(self, store, config):
        owner = ConcurrencyManager(store, "user-a", config=config)
        await owner.start()
        other = owner.as_user("user-b")
        await other.start()

        await other.close()
        assert owner.tracker.running

        await owner.close()
        assert not owner.tracker.running

"""Shared fixtures."""

from __future__ import annotations

import pytest

from coedit.concurrency.manager import ConcurrencyManager
from coedit.core.config import CoeditConfig, SaveConfig, SessionConfig
from coedit.observability.metrics import EngineMetrics
from coedit.storage.memory import InMemoryVersionStore
from coedit.tests.utils import FakeClock


@pytest.fixture
def config() -> CoeditConfig:
    """Fast configuration: no retry sleeps, short save timeout."""
    return CoeditConfig(
        session=SessionConfig(ttl_s=300.0, reaper_interval_s=30.0, heartbeat_interval_s=30.0),
        save=SaveConfig(
            timeout_s=1.0,
            read_retry_attempts=3,
            read_retry_base_ms=0,
            read_retry_max_ms=0,
        ),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics()


@pytest.fixture
async def store() -> InMemoryVersionStore:
    """Store seeded with the Widget record at version 5."""
    store = InMemoryVersionStore()
    result = await store.insert("products", {"id": 1, "version": 5, "name": "Widget"})
    assert result.is_ok()
    return store


@pytest.fixture
async def manager(store, config, metrics):
    """Manager for user A; derive user B with `manager.as_user("user-b")`."""
    mgr = ConcurrencyManager(store, user_id="user-a", config=config, metrics=metrics)
    yield mgr
    await mgr.close()

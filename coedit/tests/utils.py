"""Shared helpers for the test suite."""

from __future__ import annotations

from typing import Any

from coedit.core.types import Timestamp


def assert_ok(result: Any, message: str = "Expected Ok result") -> Any:
    """Assert that result is Ok."""
    if result.is_err():
        raise AssertionError(f"{message}: {result.error}")
    return result.unwrap()


def assert_err(result: Any, message: str = "Expected Err result") -> Any:
    """Assert that result is Err."""
    if result.is_ok():
        raise AssertionError(f"{message}: Got Ok({result.unwrap()})")
    return result.error


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start_s: float = 1_700_000_000.0) -> None:
        self._now = Timestamp.from_seconds(start_s)

    def __call__(self) -> Timestamp:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now.plus_seconds(seconds)


class EventLog:
    """Callback that records every event it receives."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    def __call__(self, event: Any) -> None:
        self.events.append(event)

    @property
    def versions(self) -> list[Any]:
        return [e.version for e in self.events]

    @property
    def types(self) -> list[str]:
        return [e.event.value for e in self.events]

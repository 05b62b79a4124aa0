"""
Unit Tests: Configuration, Retry, Metrics and Logging
"""

import asyncio
import io
import json
import logging

import pytest

from coedit.core.config import CoeditConfig, SessionConfig
from coedit.core.errors import StoreError
from coedit.core.types import Err, Ok, SaveStrategy
from coedit.observability.logging import JsonFormatter, LogLevel, StructuredLogger
from coedit.observability.metrics import EngineMetrics, MetricsCollector
from coedit.reliability.retry import RetryPolicy, RetryStats, calculate_backoff, retry_with_backoff


class TestConfig:
    """Tests for environment loading and validation."""

    def test_defaults_are_valid(self):
        assert CoeditConfig().validate().is_ok()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("COEDIT_SESSION_TTL_S", "120")
        monkeypatch.setenv("COEDIT_SAVE_PRESENCE_GATED", "yes")
        monkeypatch.setenv("COEDIT_SAVE_DERIVED_FIELDS", "total, stock ,")
        monkeypatch.setenv("COEDIT_LOG_LEVEL", "debug")
        monkeypatch.setenv("COEDIT_NOTIFY_MAX_TRACKED_RECORDS", "64")

        config = CoeditConfig.from_env().unwrap()

        assert config.session.ttl_s == 120.0
        assert config.save.presence_gated_detection is True
        assert config.save.derived_fields == {"total", "stock"}
        assert config.observability.log_level == "DEBUG"
        assert config.notify.max_tracked_records == 64

    @pytest.mark.parametrize("key, value", [
        ("COEDIT_SESSION_TTL_S", "forever"),
        ("COEDIT_AUDIT_ENABLED", "maybe"),
    ])
    def test_from_env_rejects_garbage(self, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        result = CoeditConfig.from_env()

        assert result.is_err()
        assert "Configuration error" in result.error

    def test_heartbeat_must_beat_ttl(self):
        config = CoeditConfig(session=SessionConfig(ttl_s=30, heartbeat_interval_s=30))
        assert config.validate().is_err()

    def test_strategy_parse(self):
        assert SaveStrategy.parse(None) is SaveStrategy.FAIL
        assert SaveStrategy.parse("MERGE") is SaveStrategy.MERGE
        with pytest.raises(ValueError):
            SaveStrategy.parse("overwrite")


class TestRetry:
    """Tests for retry_with_backoff."""

    async def test_transient_errors_retried_until_ok(self):
        replies = [Err(StoreError.transient("get")), Err(StoreError.transient("get")), Ok(1)]
        stats = RetryStats()

        async def call():
            return replies.pop(0)

        result = await retry_with_backoff(call, RetryPolicy.immediate(), stats=stats)

        assert result.unwrap() == 1
        assert stats.total_attempts == 3

    async def test_permanent_error_not_retried(self):
        calls = 0

        async def call():
            nonlocal calls
            calls += 1
            return Err(StoreError.not_found("orders", 1))

        result = await retry_with_backoff(call, RetryPolicy.immediate())

        assert result.is_err()
        assert calls == 1

    async def test_attempt_timeout_counts_as_transient(self):
        async def hang():
            await asyncio.sleep(1)
            return Ok(None)

        policy = RetryPolicy(max_attempts=2, base_delay_ms=0, max_delay_ms=0, attempt_timeout_s=0.01)
        result = await retry_with_backoff(hang, policy)

        assert result.is_err()
        assert result.error.retryable

    def test_backoff_is_capped(self):
        assert calculate_backoff(10, 50, 2000, 2.0, jitter=False) == 2000
        assert 0 <= calculate_backoff(3, 50, 2000, 2.0, jitter=True) <= 400

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestMetrics:
    """Tests for the metrics registry."""

    def test_engine_metrics_export(self):
        metrics = EngineMetrics()
        metrics.saves.inc(table="orders", outcome="success")
        metrics.saves.inc(table="orders", outcome="conflict")
        metrics.active_sessions.set(3, table="orders")
        metrics.save_latency.observe(0.02, table="orders", strategy="fail")

        text = metrics.collector.export_prometheus()

        assert 'coedit_saves_total{outcome="conflict",table="orders"} 1.0' in text
        assert 'coedit_active_sessions{table="orders"} 3' in text
        assert "# TYPE coedit_save_seconds histogram" in text
        assert 'coedit_save_seconds_count{strategy="fail",table="orders"} 1' in text
        assert metrics.saves.total() == 2

    def test_collector_reuses_instruments(self):
        collector = MetricsCollector()
        assert collector.counter("x_total") is collector.counter("x_total")

    def test_counter_rejects_negative(self):
        with pytest.raises(ValueError):
            MetricsCollector().counter("x_total").inc(-1)


class TestLogging:
    """Tests for structured JSON logging."""

    def _capture(self, name):
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter())
        target = logging.getLogger(name)
        target.addHandler(handler)
        target.setLevel(logging.DEBUG)
        return stream, target, handler

    def test_bound_and_context_fields_in_output(self):
        stream, target, handler = self._capture("coedit.tests.logging")
        try:
            log = StructuredLogger("coedit.tests.logging").with_extra(user_id="alice")
            with StructuredLogger.context(request_id="r-1"):
                log.info("Saved", version=6)
        finally:
            target.removeHandler(handler)

        entry = json.loads(stream.getvalue())
        assert entry["message"] == "Saved"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "alice"
        assert entry["request_id"] == "r-1"
        assert entry["version"] == 6

    def test_exception_is_serialized(self):
        stream, target, handler = self._capture("coedit.tests.logging.exc")
        try:
            try:
                raise RuntimeError("boom")
            except RuntimeError:
                StructuredLogger("coedit.tests.logging.exc").exception("Failed")
        finally:
            target.removeHandler(handler)

        entry = json.loads(stream.getvalue())
        assert "RuntimeError: boom" in entry["exception"]

    def test_level_parse(self):
        assert LogLevel.parse("warning") is LogLevel.WARNING
        with pytest.raises(ValueError):
            LogLevel.parse("LOUD")

"""
Configuration Management for the Multi-User Concurrency Engine

Provides validated configuration with sensible defaults.
Supports environment variable overrides (COEDIT_* prefix).

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from coedit.core.types import Result, Ok, Err
from coedit.core import constants as C


@dataclass(frozen=True)
class SessionConfig:
    """Presence tracking configuration."""

    ttl_s: float = C.SESSION_TTL_S
    reaper_interval_s: float = C.SESSION_REAPER_INTERVAL_S
    heartbeat_interval_s: float = C.SESSION_HEARTBEAT_INTERVAL_S
    max_sessions_per_record: int = C.SESSION_MAX_PER_RECORD


@dataclass(frozen=True)
class SaveConfig:
    """Optimistic save path configuration."""

    timeout_s: float = C.SAVE_TIMEOUT_S
    force_max_attempts: int = C.FORCE_MAX_ATTEMPTS
    # When on, a save with fewer than two editors skips the field diff.
    presence_gated_detection: bool = False
    derived_fields: frozenset[str] = C.DEFAULT_DERIVED_FIELDS
    read_retry_attempts: int = C.RETRY_MAX_ATTEMPTS
    read_retry_base_ms: int = C.RETRY_BASE_MS
    read_retry_max_ms: int = C.RETRY_MAX_MS

    @property
    def ignored_fields(self) -> frozenset[str]:
        """Fields excluded from conflict detection."""
        return C.SYSTEM_FIELDS | self.derived_fields


@dataclass(frozen=True)
class NotifyConfig:
    """Change notification configuration."""

    redis_channel_prefix: str = C.REDIS_CHANNEL_PREFIX
    bridge_enabled: bool = False
    # Per wildcard subscriber; older records lose ordering state first.
    max_tracked_records: int = C.NOTIFY_MAX_TRACKED_RECORDS


@dataclass(frozen=True)
class AuditConfig:
    """In-process audit trail configuration."""

    enabled: bool = True
    max_entries_per_record: int = C.AUDIT_MAX_ENTRIES_PER_RECORD


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging and metrics configuration."""

    metrics_enabled: bool = True
    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class CoeditConfig:
    """Root configuration for the concurrency engine."""

    session: SessionConfig = field(default_factory=SessionConfig)
    save: SaveConfig = field(default_factory=SaveConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> Result[CoeditConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with COEDIT_.
        Example: COEDIT_SESSION_TTL_S, COEDIT_SAVE_TIMEOUT_S,
        COEDIT_SAVE_DERIVED_FIELDS=quantity_available,total
        """
        def _get(key: str, default: str) -> str:
            return os.getenv(f"COEDIT_{key}", default)

        def _get_bool(key: str, default: bool) -> bool:
            val = os.getenv(f"COEDIT_{key}", "").strip().lower()
            if val in ("true", "1", "yes", "on"):
                return True
            if val in ("false", "0", "no", "off"):
                return False
            if val:
                raise ValueError(f"COEDIT_{key} is not a boolean: {val!r}")
            return default

        try:
            session = SessionConfig(
                ttl_s=float(_get("SESSION_TTL_S", str(C.SESSION_TTL_S))),
                reaper_interval_s=float(
                    _get("SESSION_REAPER_INTERVAL_S", str(C.SESSION_REAPER_INTERVAL_S))
                ),
                heartbeat_interval_s=float(
                    _get("SESSION_HEARTBEAT_INTERVAL_S", str(C.SESSION_HEARTBEAT_INTERVAL_S))
                ),
                max_sessions_per_record=int(
                    _get("SESSION_MAX_PER_RECORD", str(C.SESSION_MAX_PER_RECORD))
                ),
            )

            derived_raw = os.getenv("COEDIT_SAVE_DERIVED_FIELDS")
            derived = (
                frozenset(f.strip() for f in derived_raw.split(",") if f.strip())
                if derived_raw is not None
                else C.DEFAULT_DERIVED_FIELDS
            )
            save = SaveConfig(
                timeout_s=float(_get("SAVE_TIMEOUT_S", str(C.SAVE_TIMEOUT_S))),
                force_max_attempts=int(
                    _get("SAVE_FORCE_MAX_ATTEMPTS", str(C.FORCE_MAX_ATTEMPTS))
                ),
                presence_gated_detection=_get_bool("SAVE_PRESENCE_GATED", False),
                derived_fields=derived,
            )

            notify = NotifyConfig(
                redis_channel_prefix=_get("NOTIFY_CHANNEL_PREFIX", C.REDIS_CHANNEL_PREFIX),
                bridge_enabled=_get_bool("NOTIFY_BRIDGE_ENABLED", False),
                max_tracked_records=int(
                    _get("NOTIFY_MAX_TRACKED_RECORDS", str(C.NOTIFY_MAX_TRACKED_RECORDS))
                ),
            )

            audit = AuditConfig(
                enabled=_get_bool("AUDIT_ENABLED", True),
                max_entries_per_record=int(
                    _get("AUDIT_MAX_ENTRIES", str(C.AUDIT_MAX_ENTRIES_PER_RECORD))
                ),
            )

            observability = ObservabilityConfig(
                metrics_enabled=_get_bool("METRICS_ENABLED", True),
                log_level=_get("LOG_LEVEL", "INFO").upper(),
                log_json=_get_bool("LOG_JSON", True),
            )

            return Ok(cls(
                session=session,
                save=save,
                notify=notify,
                audit=audit,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if self.session.ttl_s <= 0:
            return Err("Session TTL must be > 0")
        if self.session.reaper_interval_s <= 0:
            return Err("Reaper interval must be > 0")
        if self.session.heartbeat_interval_s >= self.session.ttl_s:
            return Err("Heartbeat interval must be shorter than the session TTL")
        if self.session.max_sessions_per_record < 1:
            return Err("max_sessions_per_record must be >= 1")
        if self.save.timeout_s <= 0:
            return Err("Save timeout must be > 0")
        if self.save.force_max_attempts < 1:
            return Err("force_max_attempts must be >= 1")
        if self.save.read_retry_attempts < 1:
            return Err("read_retry_attempts must be >= 1")
        if self.notify.max_tracked_records < 1:
            return Err("Notify max_tracked_records must be >= 1")
        if self.audit.max_entries_per_record < 1:
            return Err("Audit max_entries_per_record must be >= 1")
        if self.observability.log_level not in (
            "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
        ):
            return Err(f"Unknown log level: {self.observability.log_level}")
        return Ok(None)

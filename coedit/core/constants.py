"""
System-Wide Constants for the Multi-User Concurrency Engine

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
MS: Final[int] = 1
SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS

NS_PER_MS: Final[int] = 1_000_000
NS_PER_S: Final[int] = 1_000_000_000

# =============================================================================
# SESSIONS / PRESENCE
# =============================================================================
SESSION_TTL_S: Final[float] = 300.0
SESSION_REAPER_INTERVAL_S: Final[float] = 30.0
SESSION_HEARTBEAT_INTERVAL_S: Final[float] = 30.0
SESSION_MAX_PER_RECORD: Final[int] = 256
USER_ID_MAX_LENGTH: Final[int] = 256

# =============================================================================
# SAVE PATH
# =============================================================================
SAVE_TIMEOUT_S: Final[float] = 5.0
FORCE_MAX_ATTEMPTS: Final[int] = 3

# Owned by the core or the store; never diffed, never sent in a patch.
SYSTEM_FIELDS: Final[frozenset[str]] = frozenset(
    {"id", "version", "created_at", "updated_at", "last_modified_by"}
)
DEFAULT_DERIVED_FIELDS: Final[frozenset[str]] = frozenset({"quantity_available"})

VERSION_FIELD: Final[str] = "version"
ID_FIELD: Final[str] = "id"
MODIFIED_BY_FIELD: Final[str] = "last_modified_by"
UPDATED_AT_FIELD: Final[str] = "updated_at"

# =============================================================================
# STORE BACKENDS
# =============================================================================
PG_POOL_MIN: Final[int] = 2
PG_POOL_MAX: Final[int] = 20
PG_CONN_TIMEOUT_MS: Final[int] = 5 * SECOND_MS
PG_QUERY_TIMEOUT_MS: Final[int] = 5 * SECOND_MS

REDIS_KEY_PREFIX: Final[str] = "coedit:rec"
REDIS_CHANNEL_PREFIX: Final[str] = "coedit:changes"

# =============================================================================
# NOTIFICATION
# =============================================================================
NOTIFY_MAX_TRACKED_RECORDS: Final[int] = 4096
NOTIFY_DRAIN_TIMEOUT_S: Final[float] = 5.0

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_MS: Final[int] = 2 * SECOND_MS
RETRY_MAX_ATTEMPTS: Final[int] = 3

# =============================================================================
# AUDIT
# =============================================================================
AUDIT_MAX_ENTRIES_PER_RECORD: Final[int] = 500
AUDIT_DEFAULT_LIMIT: Final[int] = 50

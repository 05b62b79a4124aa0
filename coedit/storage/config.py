"""
Store Backend Configuration Module
==================================

Type-safe, immutable configuration dataclasses for the networked
VersionStore adapters. All configurations use frozen dataclasses for
thread-safety and hash-ability.

Design Principles:
------------------
1. **Immutability**: All configs are frozen to prevent runtime mutation
2. **Validation**: Pre-conditions checked at construction time
3. **Environment**: Supports loading from environment variables

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional

from coedit.core import constants as C


# =============================================================================
# ENUMERATIONS
# =============================================================================

class BackendType(Enum):
    """
    VersionStore backend type enumeration.

    Used for factory dispatch in the demo entry point.
    """
    IN_MEMORY = auto()  # Development/testing only
    POSTGRES = auto()   # Row-per-record, version column
    REDIS = auto()      # Hash-per-record, Lua CAS

    @classmethod
    def parse(cls, value: str) -> BackendType:
        mapping = {
            "memory": cls.IN_MEMORY,
            "in_memory": cls.IN_MEMORY,
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "redis": cls.REDIS,
        }
        try:
            return mapping[value.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown store backend: {value!r}") from None


def _env_reader(prefix: str):
    def _get(key: str, default: str = "") -> str:
        return os.environ.get(f"{prefix}_{key}", default)

    def _get_int(key: str, default: int) -> int:
        val = _get(key)
        return int(val) if val else default

    def _get_bool(key: str, default: bool) -> bool:
        val = _get(key).lower()
        if val in ("true", "1", "yes"):
            return True
        if val in ("false", "0", "no"):
            return False
        return default

    return _get, _get_int, _get_bool


# =============================================================================
# POSTGRES CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class PostgresConfig:
    """
    PostgreSQL connection configuration for PostgresVersionStore.

    Attributes:
        host: Server hostname or IP address.
        port: Server port (1-65535).
        database: Database name.
        user: Login role.
        password: Login password.
        pool_min: Minimum pooled connections.
        pool_max: Maximum pooled connections.
        connect_timeout_ms: Connection establishment timeout.
        query_timeout_ms: Per-statement timeout (asyncpg command_timeout).
        ssl_mode: libpq sslmode value.
        id_column: Primary key column of versioned tables.

    Example:
        >>> config = PostgresConfig.from_env()
        >>> config = PostgresConfig(host="db.internal", password="secret")
    """
    host: str = "localhost"
    port: int = 5432
    database: str = "coedit"
    user: str = "coedit"
    password: str = ""
    pool_min: int = C.PG_POOL_MIN
    pool_max: int = C.PG_POOL_MAX
    connect_timeout_ms: int = C.PG_CONN_TIMEOUT_MS
    query_timeout_ms: int = C.PG_QUERY_TIMEOUT_MS
    ssl_mode: str = "prefer"
    id_column: str = C.ID_FIELD

    def __post_init__(self) -> None:
        """
        Validate configuration invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if self.pool_min < 0:
            raise ValueError(f"pool_min must be >= 0, got {self.pool_min}")
        if self.pool_max <= 0 or self.pool_min > self.pool_max:
            raise ValueError(
                f"pool bounds invalid: min={self.pool_min}, max={self.pool_max}"
            )
        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")
        if self.query_timeout_ms <= 0:
            raise ValueError(f"query_timeout_ms must be > 0, got {self.query_timeout_ms}")

    @property
    def dsn(self) -> str:
        """PostgreSQL connection string."""
        return (
            f"postgresql://{self.user}:{self.password}@"
            f"{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.ssl_mode}"
        )

    @classmethod
    def from_env(cls, prefix: str = "COEDIT_PG") -> "PostgresConfig":
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST, {prefix}_PORT, {prefix}_DATABASE
        - {prefix}_USER, {prefix}_PASSWORD
        - {prefix}_POOL_MIN, {prefix}_POOL_MAX
        - {prefix}_QUERY_TIMEOUT_MS, {prefix}_SSL_MODE
        """
        _get, _get_int, _ = _env_reader(prefix)
        return cls(
            host=_get("HOST", "localhost"),
            port=_get_int("PORT", 5432),
            database=_get("DATABASE", "coedit"),
            user=_get("USER", "coedit"),
            password=_get("PASSWORD"),
            pool_min=_get_int("POOL_MIN", C.PG_POOL_MIN),
            pool_max=_get_int("POOL_MAX", C.PG_POOL_MAX),
            connect_timeout_ms=_get_int("CONNECT_TIMEOUT_MS", C.PG_CONN_TIMEOUT_MS),
            query_timeout_ms=_get_int("QUERY_TIMEOUT_MS", C.PG_QUERY_TIMEOUT_MS),
            ssl_mode=_get("SSL_MODE", "prefer"),
        )

    def get_pool_kwargs(self) -> Dict[str, Any]:
        """Generate kwargs for asyncpg.create_pool()."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password or None,
            "min_size": self.pool_min,
            "max_size": self.pool_max,
            "timeout": self.connect_timeout_ms / 1000.0,
            "command_timeout": self.query_timeout_ms / 1000.0,
        }


# =============================================================================
# REDIS CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Redis/Valkey connection configuration.

    Shared by RedisVersionStore and RedisEventBridge.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index (0-15).
        max_connections: Connection pool size. Must be > 0.
        connect_timeout_ms: TCP connection timeout in milliseconds.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        ssl: Enable TLS encryption for connections.
        key_prefix: Namespace for record hashes.

    Example:
        >>> config = RedisConfig.from_env()
    """
    password: Optional[str] = None
    host: str = "localhost"
    socket_timeout_ms: int = 5000
    connect_timeout_ms: int = 2000
    max_connections: int = 50
    port: int = 6379
    db: int = 0
    ssl: bool = False
    key_prefix: str = C.REDIS_KEY_PREFIX

    def __post_init__(self) -> None:
        """
        Validate configuration invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15], got {self.db}")
        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")
        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")
        if self.socket_timeout_ms <= 0:
            raise ValueError(f"socket_timeout_ms must be > 0, got {self.socket_timeout_ms}")
        if not self.key_prefix:
            raise ValueError("key_prefix must be non-empty")

    @classmethod
    def from_env(cls, prefix: str = "COEDIT_REDIS") -> "RedisConfig":
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST: Server hostname (default: localhost)
        - {prefix}_PORT: Server port (default: 6379)
        - {prefix}_PASSWORD: Authentication password
        - {prefix}_DB: Database index (default: 0)
        - {prefix}_SSL: Enable TLS (default: false)
        - {prefix}_MAX_CONNECTIONS: Pool size (default: 50)
        - {prefix}_KEY_PREFIX: Record key namespace
        """
        _get, _get_int, _get_bool = _env_reader(prefix)
        return cls(
            host=_get("HOST", "localhost"),
            port=_get_int("PORT", 6379),
            password=_get("PASSWORD") or None,
            db=_get_int("DB", 0),
            max_connections=_get_int("MAX_CONNECTIONS", 50),
            connect_timeout_ms=_get_int("CONNECT_TIMEOUT_MS", 2000),
            socket_timeout_ms=_get_int("SOCKET_TIMEOUT_MS", 5000),
            ssl=_get_bool("SSL", False),
            key_prefix=_get("KEY_PREFIX", C.REDIS_KEY_PREFIX),
        )

    def get_connection_kwargs(self) -> Dict[str, Any]:
        """
        Generate kwargs for redis-py connection.

        Responses are always decoded; the store keeps JSON text.
        """
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_ms / 1000.0,
            "socket_timeout": self.socket_timeout_ms / 1000.0,
            "decode_responses": True,
            "ssl": self.ssl,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


__all__ = [
    "BackendType",
    "PostgresConfig",
    "RedisConfig",
]

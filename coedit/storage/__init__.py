"""
Storage Module: VersionStore contract and adapters
==================================================

Provides:
- VersionStore protocol (read + atomic compare-and-swap)
- In-memory implementation for development/testing
- PostgreSQL (asyncpg) and Redis (redis.asyncio) adapters
- Factory function for backend selection

Design Principles:
-----------------
1. **Backend Agnostic**: Same interface for in-memory and production
2. **Factory Pattern**: Runtime backend selection via configuration
3. **Lazy Loading**: Network adapters imported only when selected
4. **Result Monad**: No exceptions for control flow

Example:
    >>> store = create_version_store()                       # in-memory
    >>> store = create_version_store(BackendType.POSTGRES,
    ...                              postgres=PostgresConfig(host="db"))
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

from coedit.storage.protocols import ManagedStore, VersionStore
from coedit.storage.memory import InMemoryVersionStore
from coedit.storage.config import BackendType, PostgresConfig, RedisConfig

if TYPE_CHECKING:
    from coedit.storage.postgres import PostgresVersionStore
    from coedit.storage.redis_store import RedisVersionStore


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_version_store(
    backend: BackendType = BackendType.IN_MEMORY,
    postgres: Optional[PostgresConfig] = None,
    redis: Optional[RedisConfig] = None,
) -> Any:
    """
    Create a VersionStore for the selected backend.

    Networked stores must still be connected with `await store.connect()`.

    Returns:
        InMemoryVersionStore | PostgresVersionStore | RedisVersionStore
    """
    if backend == BackendType.POSTGRES:
        from coedit.storage.postgres import PostgresVersionStore
        return PostgresVersionStore(postgres or PostgresConfig.from_env())

    if backend == BackendType.REDIS:
        from coedit.storage.redis_store import RedisVersionStore
        return RedisVersionStore(redis or RedisConfig.from_env())

    return InMemoryVersionStore()


def __getattr__(name: str) -> Any:
    """Lazy access to the network adapters."""
    if name == "PostgresVersionStore":
        from coedit.storage.postgres import PostgresVersionStore
        return PostgresVersionStore
    if name == "RedisVersionStore":
        from coedit.storage.redis_store import RedisVersionStore
        return RedisVersionStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Protocols
    "VersionStore",
    "ManagedStore",
    # Configuration
    "BackendType",
    "PostgresConfig",
    "RedisConfig",
    # Backends
    "InMemoryVersionStore",
    "PostgresVersionStore",
    "RedisVersionStore",
    # Factory
    "create_version_store",
]

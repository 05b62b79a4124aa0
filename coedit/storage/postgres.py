"""
PostgreSQL Version Store: asyncpg-backed optimistic locking

Provides:
- Pooled connections via asyncpg
- Single-statement compare-and-swap:
      UPDATE "t" SET ..., version = version + 1
      WHERE "id" = $n AND version = $m RETURNING *
- Follow-up SELECT on zero rows to tell a lost race from a deleted record
- DDL helper for a versioned table

Design:
- Identifiers are validated and double-quoted; values are always bound
- Driver exceptions never escape: every call returns a Result
- Connection/serialization failures map to TransientStoreError
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

from coedit.core import constants as C
from coedit.core.errors import StoreError
from coedit.core.types import Err, Ok, Record, RecordId, Result, Timestamp
from coedit.storage.config import PostgresConfig

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Permanent request errors; everything else from the driver is transient.
_INVALID_REQUEST_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.UndefinedTableError,
    asyncpg.UndefinedColumnError,
    asyncpg.DataError,
)


def quote_identifier(name: str) -> str:
    """
    Validate and double-quote a table or column name.

    Raises:
        ValueError: If the name is not a plain SQL identifier
    """
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def versioned_table_ddl(table: str, columns: dict[str, str]) -> str:
    """
    CREATE TABLE statement for a record type managed by the engine.

    Args:
        table: Table name
        columns: Business columns mapped to their SQL types
    """
    business = "".join(
        f"        {quote_identifier(name)} {sql_type},\n"
        for name, sql_type in columns.items()
    )
    return (
        f"CREATE TABLE IF NOT EXISTS {quote_identifier(table)} (\n"
        f"        id BIGSERIAL PRIMARY KEY,\n"
        f"{business}"
        f"        version INT NOT NULL DEFAULT 1,\n"
        f"        last_modified_by TEXT,\n"
        f"        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),\n"
        f"        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()\n"
        f"    );"
    )


class PostgresVersionStore:
    """
    VersionStore over PostgreSQL tables carrying an integer `version` column.

    Thread Safety: All operations are coroutine-safe (pooled connections).

    Usage:
        store = PostgresVersionStore(PostgresConfig.from_env())
        (await store.connect()).unwrap()
        result = await store.conditional_update("orders", 42, {"name": "X"}, 5)
        await store.close()
    """

    __slots__ = ("_config", "_pool", "_owns_pool", "_closed")

    def __init__(
        self,
        config: Optional[PostgresConfig] = None,
        pool: Optional[Any] = None,
    ) -> None:
        """
        Args:
            config: Connection configuration
            pool: Pre-built asyncpg.Pool (not closed by this store)
        """
        self._config = config or PostgresConfig()
        self._pool: Optional[Any] = pool
        self._owns_pool = pool is None
        self._closed = False

    async def connect(self) -> Result[None, StoreError]:
        """Create the connection pool and validate connectivity."""
        if self._pool is not None:
            return Ok(None)
        try:
            self._pool = await asyncpg.create_pool(**self._config.get_pool_kwargs())
            async with self._pool.acquire() as conn:
                await conn.execute("SELECT 1")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            return Err(StoreError.connection_failed(
                host=self._config.host,
                port=self._config.port,
                cause=e,
            ))

        logger.info(
            "Postgres version store initialized",
            extra={
                "host": self._config.host,
                "port": self._config.port,
                "pool_size": f"{self._config.pool_min}-{self._config.pool_max}",
            },
        )
        return Ok(None)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Acquire connection from pool."""
        if self._closed:
            raise RuntimeError("Store is closed")
        if self._pool is None:
            raise RuntimeError("Store is not connected; call connect() first")
        async with self._pool.acquire() as conn:
            yield conn

    def _map_error(self, operation: str, exc: Exception) -> StoreError:
        if isinstance(exc, _INVALID_REQUEST_ERRORS):
            return StoreError.invalid_request(f"{operation}: {exc}", cause=exc)
        logger.warning(
            "Postgres operation failed",
            extra={"operation": operation, "error": repr(exc)},
        )
        return StoreError.transient(operation, cause=exc)

    def _ensure_connected(self) -> Optional[StoreError]:
        if self._closed:
            return StoreError.invalid_request("Postgres store is closed")
        if self._pool is None:
            return StoreError.transient(
                "connect", cause=RuntimeError("Postgres store not connected"),
            )
        return None

    def _coerce(self, column: str, value: Any) -> Any:
        # updated_at travels as ISO-8601 text; the column is TIMESTAMPTZ.
        if column == C.UPDATED_AT_FIELD and isinstance(value, str):
            return datetime.fromisoformat(value)
        return value

    # -------------------------------------------------------------------------
    # VersionStore Implementation
    # -------------------------------------------------------------------------

    async def get(
        self,
        table: str,
        record_id: RecordId,
    ) -> Result[Record, StoreError]:
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        try:
            query = (
                f"SELECT * FROM {quote_identifier(table)} "
                f"WHERE {quote_identifier(self._config.id_column)} = $1"
            )
        except ValueError as e:
            return Err(StoreError.invalid_request(str(e)))

        try:
            async with self.connection() as conn:
                row = await conn.fetchrow(query, record_id)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            return Err(self._map_error("get", e))

        if row is None:
            return Err(StoreError.not_found(table, record_id))
        return Ok(dict(row))

    async def conditional_update(
        self,
        table: str,
        record_id: RecordId,
        patch: dict[str, Any],
        expected_version: int,
    ) -> Result[Record, StoreError]:
        """
        Compare-and-swap in a single UPDATE statement.

        On zero affected rows a follow-up SELECT distinguishes a version
        mismatch (row exists) from a concurrent delete (row gone).
        """
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        columns = [
            name for name in patch
            if name not in (C.VERSION_FIELD, self._config.id_column)
        ]
        try:
            table_sql = quote_identifier(table)
            id_sql = quote_identifier(self._config.id_column)
            assignments = [
                f"{quote_identifier(name)} = ${i}"
                for i, name in enumerate(columns, start=1)
            ]
        except ValueError as e:
            return Err(StoreError.invalid_request(str(e)))

        assignments.append(f"{quote_identifier(C.VERSION_FIELD)} = {quote_identifier(C.VERSION_FIELD)} + 1")
        id_param = len(columns) + 1
        version_param = len(columns) + 2
        query = (
            f"UPDATE {table_sql} SET {', '.join(assignments)} "
            f"WHERE {id_sql} = ${id_param} "
            f"AND {quote_identifier(C.VERSION_FIELD)} = ${version_param} "
            f"RETURNING *"
        )
        args = [self._coerce(name, patch[name]) for name in columns]
        args.extend([record_id, expected_version])

        start = Timestamp.now()
        try:
            async with self.connection() as conn:
                row = await conn.fetchrow(query, *args)
                if row is not None:
                    logger.debug(
                        "Conditional update applied",
                        extra={
                            "table": table,
                            "record_id": str(record_id),
                            "version": row[C.VERSION_FIELD],
                            "duration_ms": (Timestamp.now() - start) / 1_000_000,
                        },
                    )
                    return Ok(dict(row))

                current = await conn.fetchval(
                    f"SELECT {quote_identifier(C.VERSION_FIELD)} FROM {table_sql} "
                    f"WHERE {id_sql} = $1",
                    record_id,
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            return Err(self._map_error("conditional_update", e))

        if current is None:
            return Err(StoreError.not_found(table, record_id))
        return Err(StoreError.version_mismatch(
            table, record_id, expected_version, int(current),
        ))

    # -------------------------------------------------------------------------
    # Administrative operations
    # -------------------------------------------------------------------------

    async def insert(self, table: str, record: Record) -> Result[Record, StoreError]:
        """Insert a record; omitted columns take their defaults."""
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        try:
            names = list(record)
            column_sql = ", ".join(quote_identifier(n) for n in names)
            placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
            query = (
                f"INSERT INTO {quote_identifier(table)} ({column_sql}) "
                f"VALUES ({placeholders}) RETURNING *"
            )
        except ValueError as e:
            return Err(StoreError.invalid_request(str(e)))

        try:
            async with self.connection() as conn:
                row = await conn.fetchrow(
                    query, *(self._coerce(n, record[n]) for n in names)
                )
        except asyncpg.UniqueViolationError as e:
            return Err(StoreError.invalid_request(f"duplicate key: {e}", cause=e))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            return Err(self._map_error("insert", e))
        return Ok(dict(row))

    async def delete(self, table: str, record_id: RecordId) -> Result[None, StoreError]:
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        try:
            query = (
                f"DELETE FROM {quote_identifier(table)} "
                f"WHERE {quote_identifier(self._config.id_column)} = $1 "
                f"RETURNING {quote_identifier(self._config.id_column)}"
            )
        except ValueError as e:
            return Err(StoreError.invalid_request(str(e)))

        try:
            async with self.connection() as conn:
                deleted = await conn.fetchval(query, record_id)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            return Err(self._map_error("delete", e))
        if deleted is None:
            return Err(StoreError.not_found(table, record_id))
        return Ok(None)

    async def ensure_table(
        self,
        table: str,
        columns: dict[str, str],
    ) -> Result[None, StoreError]:
        """Idempotently create a versioned table."""
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        try:
            ddl = versioned_table_ddl(table, columns)
        except ValueError as e:
            return Err(StoreError.invalid_request(str(e)))
        try:
            async with self.connection() as conn:
                await conn.execute(ddl)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            return Err(self._map_error("ensure_table", e))
        logger.info("Versioned table ensured", extra={"table": table})
        return Ok(None)

    async def close(self) -> None:
        """Close connection pool and release resources."""
        if self._closed:
            return
        self._closed = True
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            logger.info("Postgres version store closed")

    async def __aenter__(self) -> PostgresVersionStore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

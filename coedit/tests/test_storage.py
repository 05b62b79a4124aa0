"""
Unit Tests: Version Stores

Tests:
    - InMemoryVersionStore CAS, copies and fault injection
    - PostgresVersionStore SQL and error mapping (fake asyncpg pool)
    - RedisVersionStore script protocol (fake redis client)
    - Backend selection and configuration
"""

import json
from contextlib import asynccontextmanager

import asyncpg
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError

from coedit.concurrency.manager import ConcurrencyManager
from coedit.core.errors import (
    InvalidStoreRequestError,
    RecordNotFoundError,
    StoreError,
    TransientStoreError,
    VersionMismatchError,
)
from coedit.storage import (
    BackendType,
    InMemoryVersionStore,
    PostgresConfig,
    RedisConfig,
    VersionStore,
    create_version_store,
)
from coedit.storage.postgres import PostgresVersionStore, quote_identifier, versioned_table_ddl
from coedit.storage.redis_store import RedisVersionStore
from coedit.tests.utils import assert_err, assert_ok


# =============================================================================
# Fakes
# =============================================================================

class FakeConnection:
    """Records statements; replies from queued rows."""

    def __init__(self):
        self.queries = []
        self.rows = []
        self.values = []
        self.error = None

    async def fetchrow(self, query, *args):
        self.queries.append((query, args))
        if self.error is not None:
            raise self.error
        return self.rows.pop(0) if self.rows else None

    async def fetchval(self, query, *args):
        self.queries.append((query, args))
        if self.error is not None:
            raise self.error
        return self.values.pop(0) if self.values else None

    async def execute(self, query, *args):
        self.queries.append((query, args))
        if self.error is not None:
            raise self.error
        return "OK"


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self):
        self.closed = True


class FakeRedis:
    """Dict-backed redis.asyncio client running the CAS scripts in Python."""

    def __init__(self):
        self.hashes = {}
        self.scripts = {}
        self.evals = 0
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def ping(self):
        self._check()
        return True

    async def script_load(self, source):
        self._check()
        sha = f"sha{len(self.scripts)}"
        self.scripts[sha] = source
        return sha

    async def evalsha(self, sha, numkeys, *args):
        self._check()
        if sha not in self.scripts:
            raise NoScriptError("NOSCRIPT")
        self.evals += 1
        keys, argv = args[:numkeys], args[numkeys:]
        if "EXISTS" in self.scripts[sha]:
            return self._insert(keys[0], *argv)
        return self._cas(keys[0], *argv)

    def _insert(self, key, data, version):
        if key in self.hashes:
            return 0
        self.hashes[key] = {"d": data, "v": str(version)}
        return 1

    def _cas(self, key, expected, patch):
        entry = self.hashes.get(key)
        if entry is None:
            return ["missing"]
        if int(entry["v"]) != int(expected):
            return ["mismatch", entry["v"]]
        record = json.loads(entry["d"])
        for name, value in json.loads(patch).items():
            if name not in ("version", "id"):
                record[name] = value
        record["version"] = int(entry["v"]) + 1
        entry["d"] = json.dumps(record)
        entry["v"] = str(record["version"])
        return ["ok", entry["d"]]

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def delete(self, key):
        self._check()
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def aclose(self):
        pass


# =============================================================================
# In-memory
# =============================================================================

class TestInMemoryStore:
    """Tests for the reference store."""

    async def test_conforms_to_protocol(self):
        assert isinstance(InMemoryVersionStore(), VersionStore)

    async def test_cas_success_and_mismatch(self, store):
        updated = assert_ok(await store.conditional_update("products", 1, {"name": "X"}, 5))
        assert updated["version"] == 6

        error = assert_err(await store.conditional_update("products", 1, {"name": "Y"}, 5))
        assert isinstance(error, VersionMismatchError)
        assert error.current_version == 6
        assert assert_ok(await store.get("products", 1))["name"] == "X"

    async def test_patch_cannot_set_version_or_id(self, store):
        updated = assert_ok(
            await store.conditional_update("products", 1, {"version": 100, "id": 9}, 5),
        )
        assert (updated["id"], updated["version"]) == (1, 6)

    async def test_snapshots_are_copies(self, store):
        record = assert_ok(await store.get("products", 1))
        record["name"] = "mutated"

        assert assert_ok(await store.get("products", 1))["name"] == "Widget"

    async def test_missing_record(self, store):
        assert isinstance(assert_err(await store.get("products", 2)), RecordNotFoundError)
        error = assert_err(await store.conditional_update("products", 2, {}, 1))
        assert isinstance(error, RecordNotFoundError)

    async def test_insert_defaults_and_duplicates(self):
        store = InMemoryVersionStore()
        assert assert_ok(await store.insert("t", {"id": "a"}))["version"] == 1
        assert isinstance(assert_err(await store.insert("t", {"id": "a"})), InvalidStoreRequestError)
        assert isinstance(assert_err(await store.insert("t", {"x": 1})), InvalidStoreRequestError)

    async def test_delete(self, store):
        assert_ok(await store.delete("products", 1))
        assert await store.count() == 0
        assert isinstance(assert_err(await store.delete("products", 1)), RecordNotFoundError)

    async def test_fault_injection_is_consumed(self, store):
        store.inject_fault("get", StoreError.transient("get"), times=1)

        assert isinstance(assert_err(await store.get("products", 1)), TransientStoreError)
        assert_ok(await store.get("products", 1))

    def test_unknown_fault_operation(self):
        with pytest.raises(ValueError):
            InMemoryVersionStore().inject_fault("insert", StoreError.transient("insert"))


# =============================================================================
# PostgreSQL
# =============================================================================

class TestPostgresStore:
    """Tests for the asyncpg adapter against a fake pool."""

    def _store(self):
        conn = FakeConnection()
        return PostgresVersionStore(PostgresConfig(), pool=FakePool(conn)), conn

    async def test_conditional_update_single_statement(self):
        store, conn = self._store()
        conn.rows.append({"id": 1, "name": "X", "version": 6})

        updated = assert_ok(await store.conditional_update(
            "products", 1, {"name": "X", "version": 99}, 5,
        ))

        assert updated["version"] == 6
        query, args = conn.queries[0]
        assert query.startswith('UPDATE "products" SET "name" = $1, "version" = "version" + 1')
        assert 'WHERE "id" = $2 AND "version" = $3 RETURNING *' in query
        assert args == ("X", 1, 5)

    async def test_zero_rows_with_existing_row_is_mismatch(self):
        store, conn = self._store()
        conn.values.append(7)

        error = assert_err(await store.conditional_update("products", 1, {"name": "X"}, 5))

        assert isinstance(error, VersionMismatchError)
        assert error.current_version == 7

    async def test_zero_rows_without_row_is_not_found(self):
        store, conn = self._store()

        error = assert_err(await store.conditional_update("products", 1, {"name": "X"}, 5))

        assert isinstance(error, RecordNotFoundError)

    async def test_updated_at_coerced_to_datetime(self):
        store, conn = self._store()
        conn.rows.append({"id": 1, "version": 6})

        await store.conditional_update(
            "products", 1, {"updated_at": "2024-05-01T10:00:00+00:00"}, 5,
        )

        _, args = conn.queries[0]
        assert args[0].year == 2024

    async def test_driver_errors_mapped(self):
        store, conn = self._store()
        conn.error = asyncpg.UndefinedTableError("relation does not exist")
        assert isinstance(assert_err(await store.get("nope", 1)), InvalidStoreRequestError)

        conn.error = ConnectionResetError("reset by peer")
        assert isinstance(assert_err(await store.get("products", 1)), TransientStoreError)

    async def test_unsafe_identifiers_rejected(self):
        store, conn = self._store()

        error = assert_err(await store.get('products"; DROP TABLE x; --', 1))

        assert isinstance(error, InvalidStoreRequestError)
        assert conn.queries == []

    async def test_get_and_delete(self):
        store, conn = self._store()
        conn.rows.append({"id": 1, "version": 5})

        assert assert_ok(await store.get("products", 1))["version"] == 5
        assert isinstance(assert_err(await store.get("products", 2)), RecordNotFoundError)
        assert isinstance(assert_err(await store.delete("products", 2)), RecordNotFoundError)

    async def test_injected_pool_not_closed(self):
        store, _ = self._store()
        await store.close()

        assert not store._pool.closed
        with pytest.raises(RuntimeError):
            async with store.connection():
                pass

    async def test_closed_store_returns_typed_error(self):
        store, conn = self._store()
        await store.close()

        error = assert_err(await store.conditional_update("products", 1, {"name": "X"}, 5))

        assert isinstance(error, InvalidStoreRequestError)
        assert isinstance(assert_err(await store.get("products", 1)), InvalidStoreRequestError)
        assert conn.queries == []

    async def test_unconnected_store_fails_save_as_result(self):
        manager = ConcurrencyManager(PostgresVersionStore(PostgresConfig()), "user-a")

        result = await manager.safe_save("products", {"id": 1, "name": "X"}, 5)

        assert not result.success
        assert isinstance(result.error, TransientStoreError)

    def test_ddl(self):
        ddl = versioned_table_ddl("products", {"name": "TEXT"})

        assert 'CREATE TABLE IF NOT EXISTS "products"' in ddl
        assert '"name" TEXT' in ddl
        assert "version INT NOT NULL DEFAULT 1" in ddl
        with pytest.raises(ValueError):
            quote_identifier("1bad")


# =============================================================================
# Redis
# =============================================================================

class TestRedisStore:
    """Tests for the Redis adapter against a fake client."""

    async def _store(self):
        client = FakeRedis()
        store = RedisVersionStore(RedisConfig(), client=client)
        assert_ok(await store.connect())
        assert_ok(await store.insert("products", {"id": 1, "version": 5, "name": "Widget"}))
        return store, client

    async def test_round_trip(self):
        store, client = await self._store()

        record = assert_ok(await store.get("products", 1))
        updated = assert_ok(await store.conditional_update("products", 1, {"name": "X"}, 5))

        assert record == {"id": 1, "version": 5, "name": "Widget"}
        assert updated["version"] == 6
        assert assert_ok(await store.get("products", 1))["name"] == "X"
        assert store.key_for("products", 1) == "coedit:rec:products:1"
        assert store.key_for("products", 1) in client.hashes

    async def test_mismatch_and_missing(self):
        store, _ = await self._store()

        mismatch = assert_err(await store.conditional_update("products", 1, {}, 4))
        missing = assert_err(await store.conditional_update("products", 2, {}, 1))

        assert isinstance(mismatch, VersionMismatchError)
        assert mismatch.current_version == 5
        assert isinstance(missing, RecordNotFoundError)

    async def test_script_reloaded_after_flush(self):
        store, client = await self._store()
        client.scripts.clear()

        assert_ok(await store.conditional_update("products", 1, {"name": "X"}, 5))
        assert client.scripts

    async def test_duplicate_insert(self):
        store, _ = await self._store()
        error = assert_err(await store.insert("products", {"id": 1}))
        assert isinstance(error, InvalidStoreRequestError)

    async def test_outage_is_transient(self):
        store, client = await self._store()
        client.down = True

        assert isinstance(assert_err(await store.get("products", 1)), TransientStoreError)
        error = assert_err(await store.conditional_update("products", 1, {}, 5))
        assert isinstance(error, TransientStoreError)

    async def test_not_connected(self):
        store = RedisVersionStore(client=FakeRedis())
        assert isinstance(assert_err(await store.get("products", 1)), TransientStoreError)

    async def test_connect_failure(self):
        client = FakeRedis()
        client.down = True
        error = assert_err(await RedisVersionStore(client=client).connect())
        assert isinstance(error, TransientStoreError)


# =============================================================================
# Factory / configuration
# =============================================================================

class TestFactory:
    """Tests for backend selection."""

    def test_default_is_in_memory(self):
        assert isinstance(create_version_store(), InMemoryVersionStore)

    def test_postgres_backend(self):
        store = create_version_store(BackendType.POSTGRES, postgres=PostgresConfig(host="db"))
        assert isinstance(store, PostgresVersionStore)

    def test_redis_backend(self):
        store = create_version_store(BackendType.REDIS, redis=RedisConfig(host="cache"))
        assert isinstance(store, RedisVersionStore)

    @pytest.mark.parametrize("raw, expected", [
        ("memory", BackendType.IN_MEMORY),
        ("PostgreSQL", BackendType.POSTGRES),
        ("redis", BackendType.REDIS),
    ])
    def test_backend_parse(self, raw, expected):
        assert BackendType.parse(raw) is expected

    def test_invalid_configs(self):
        with pytest.raises(ValueError):
            PostgresConfig(pool_min=5, pool_max=1)
        with pytest.raises(ValueError):
            RedisConfig(db=16)

"""
Redis Version Store
===================

Redis/Valkey implementation of the VersionStore contract.

Design Principles:
------------------
1. **Lock-Free**: CAS via Lua scripts, no Python-side locks
2. **Script Cache**: SCRIPT LOAD once, EVALSHA per call, reload on NOSCRIPT
3. **Result Monad**: No exceptions for control flow

Memory Model:
-------------
Each record is stored as a Redis Hash at "{key_prefix}:{table}:{id}":
- 'd': data (JSON object, includes `id`)
- 'v': version (integer, monotonic)

The Lua CAS decodes 'd' with cjson, overlays the patch and bumps 'v'
atomically on the server. cjson encodes empty JSON arrays as objects;
business fields holding empty lists come back as empty dicts.

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import NoScriptError, RedisError, ResponseError

from coedit.core import constants as C
from coedit.core.errors import StoreError
from coedit.core.types import Err, Ok, Record, RecordId, Result
from coedit.storage.config import RedisConfig

logger = logging.getLogger(__name__)


# =============================================================================
# LUA SCRIPTS
# =============================================================================

# Replies are flat arrays; `{err=...}` tables would surface as ResponseError.
LUA_CAS_SCRIPT: str = """
local key = KEYS[1]
local expected_version = tonumber(ARGV[1])
local patch = cjson.decode(ARGV[2])

local data = redis.call('HGET', key, 'd')
if not data then
    return {'missing'}
end

local current_version = tonumber(redis.call('HGET', key, 'v') or '0')
if current_version ~= expected_version then
    return {'mismatch', tostring(current_version)}
end

local record = cjson.decode(data)
for field, value in pairs(patch) do
    if field ~= 'version' and field ~= 'id' then
        record[field] = value
    end
end
local new_version = current_version + 1
record['version'] = new_version

local encoded = cjson.encode(record)
redis.call('HSET', key, 'd', encoded, 'v', new_version)
return {'ok', encoded}
"""

LUA_INSERT_SCRIPT: str = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 1 then
    return 0
end
redis.call('HSET', key, 'd', ARGV[1], 'v', ARGV[2])
return 1
"""

_SCRIPTS: Dict[str, str] = {
    "cas": LUA_CAS_SCRIPT,
    "insert": LUA_INSERT_SCRIPT,
}


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


# =============================================================================
# REDIS VERSION STORE
# =============================================================================

class RedisVersionStore:
    """
    VersionStore backed by Redis hashes and a server-side CAS script.

    Thread Safety:
    -------------
    - Connection pool handles thread safety internally
    - Lua scripts execute atomically on Redis server

    Example:
        >>> store = RedisVersionStore(RedisConfig(host="redis.example.com"))
        >>> (await store.connect()).unwrap()
        >>> result = await store.conditional_update("orders", 42, {"name": "X"}, 5)
        >>> await store.close()
    """

    __slots__ = ("_config", "_client", "_owns_client", "_shas", "_connected")

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional[Any] = None,
    ) -> None:
        """
        Args:
            config: Redis connection configuration.
            client: Pre-built redis.asyncio.Redis (not closed by this store).

        Note:
            Call `connect()` before performing operations.
        """
        self._config = config or RedisConfig()
        self._client: Optional[Any] = client
        self._owns_client = client is None
        self._shas: Dict[str, str] = {}
        self._connected = False

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StoreError]:
        """
        Establish the connection pool and load Lua scripts.

        Returns:
            Ok(None) on success, Err(TransientStoreError) on failure.
        """
        try:
            if self._client is None:
                self._client = aioredis.Redis(**self._config.get_connection_kwargs())
            await self._client.ping()
            for name, source in _SCRIPTS.items():
                self._shas[name] = _decode(await self._client.script_load(source))
        except (RedisError, OSError) as e:
            return Err(StoreError.connection_failed(
                host=self._config.host,
                port=self._config.port,
                cause=e,
            ))

        self._connected = True
        logger.info(
            "Redis version store initialized",
            extra={"host": self._config.host, "port": self._config.port},
        )
        return Ok(None)

    async def close(self) -> None:
        """Close connections. Safe to call multiple times."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self._connected = False

    def key_for(self, table: str, record_id: RecordId) -> str:
        return f"{self._config.key_prefix}:{table}:{record_id}"

    async def _run_script(self, name: str, keys: List[str], args: List[Any]) -> Any:
        """EVALSHA, reloading the script once if the server lost its cache."""
        sha = self._shas.get(name)
        try:
            if sha is None:
                raise NoScriptError("script not loaded")
            return await self._client.evalsha(sha, len(keys), *keys, *args)
        except NoScriptError:
            logger.info("Reloading Lua script", extra={"script": name})
            sha = _decode(await self._client.script_load(_SCRIPTS[name]))
            self._shas[name] = sha
            return await self._client.evalsha(sha, len(keys), *keys, *args)

    def _map_error(self, operation: str, exc: Exception) -> StoreError:
        if isinstance(exc, ResponseError):
            return StoreError.invalid_request(f"{operation}: {exc}", cause=exc)
        logger.warning(
            "Redis operation failed",
            extra={"operation": operation, "error": repr(exc)},
        )
        return StoreError.transient(operation, cause=exc)

    def _ensure_connected(self) -> Optional[StoreError]:
        if not self._connected or self._client is None:
            return StoreError.transient(
                "connect", cause=RuntimeError("Redis store not connected"),
            )
        return None

    # -------------------------------------------------------------------------
    # VersionStore Implementation
    # -------------------------------------------------------------------------

    async def get(
        self,
        table: str,
        record_id: RecordId,
    ) -> Result[Record, StoreError]:
        """
        Retrieve a record.

        Complexity: O(1) - HGETALL on a two-field hash.
        """
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        try:
            data = await self._client.hgetall(self.key_for(table, record_id))
        except (RedisError, OSError) as e:
            return Err(self._map_error("get", e))

        if not data:
            return Err(StoreError.not_found(table, record_id))

        fields = {_decode(k): _decode(v) for k, v in data.items()}
        try:
            record = json.loads(fields.get("d", "{}"))
        except json.JSONDecodeError as e:
            return Err(StoreError.invalid_request(f"corrupt record payload: {e}", cause=e))
        record[C.VERSION_FIELD] = int(fields.get("v", "0"))
        return Ok(record)

    async def conditional_update(
        self,
        table: str,
        record_id: RecordId,
        patch: dict[str, Any],
        expected_version: int,
    ) -> Result[Record, StoreError]:
        """Atomic CAS via LUA_CAS_SCRIPT."""
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)

        payload = json.dumps(patch, default=str)
        try:
            reply = await self._run_script(
                "cas",
                [self.key_for(table, record_id)],
                [expected_version, payload],
            )
        except (RedisError, OSError) as e:
            return Err(self._map_error("conditional_update", e))

        status = _decode(reply[0])
        if status == "ok":
            return Ok(json.loads(_decode(reply[1])))
        if status == "mismatch":
            return Err(StoreError.version_mismatch(
                table, record_id, expected_version, int(_decode(reply[1])),
            ))
        if status == "missing":
            return Err(StoreError.not_found(table, record_id))
        return Err(StoreError.invalid_request(f"unexpected CAS reply: {reply!r}"))

    # -------------------------------------------------------------------------
    # Administrative operations
    # -------------------------------------------------------------------------

    async def insert(self, table: str, record: Record) -> Result[Record, StoreError]:
        """Insert a new record (version defaults to 1)."""
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)
        if C.ID_FIELD not in record:
            return Err(StoreError.invalid_request("record has no 'id' field"))

        stored = dict(record)
        stored.setdefault(C.VERSION_FIELD, 1)
        try:
            created = await self._run_script(
                "insert",
                [self.key_for(table, record[C.ID_FIELD])],
                [json.dumps(stored, default=str), stored[C.VERSION_FIELD]],
            )
        except (RedisError, OSError) as e:
            return Err(self._map_error("insert", e))
        if int(created) == 0:
            return Err(StoreError.invalid_request(
                f"duplicate key {table}:{record[C.ID_FIELD]}"
            ))
        return Ok(stored)

    async def delete(self, table: str, record_id: RecordId) -> Result[None, StoreError]:
        not_ready = self._ensure_connected()
        if not_ready is not None:
            return Err(not_ready)
        try:
            removed = await self._client.delete(self.key_for(table, record_id))
        except (RedisError, OSError) as e:
            return Err(self._map_error("delete", e))
        if int(removed) == 0:
            return Err(StoreError.not_found(table, record_id))
        return Ok(None)

    async def __aenter__(self) -> RedisVersionStore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

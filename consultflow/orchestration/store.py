from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg
from redis.asyncio import Redis

from ..core.config import StorageSettings
from ..core.logging import get_logger
from ..utils.json_encoding import decode_json, encode_json

logger = get_logger(name=__name__)

CONSULTATIONS = "consultations"
CONTEXT = "context"
EXECUTIONS = "executions"


class RecordStore:
    """Collection-scoped get/put/list boundary for serialized records."""

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def put(self, collection: str, key: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    async def list(self, collection: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def delete(self, collection: str, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["RecordStore"]:
        try:
            yield self
        finally:
            await self.close()


class InMemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        async with self._lock:
            raw = self._collections.get(collection, {}).get(key)
        return decode_json(raw)

    async def put(self, collection: str, key: str, payload: dict[str, Any]) -> None:
        encoded = encode_json(payload)
        async with self._lock:
            self._collections.setdefault(collection, {})[key] = encoded

    async def list(self, collection: str) -> list[dict[str, Any]]:
        async with self._lock:
            values = list(self._collections.get(collection, {}).values())
        return [decode_json(value) for value in values]

    async def delete(self, collection: str, key: str) -> None:
        async with self._lock:
            self._collections.get(collection, {}).pop(key, None)

    def keys(self, collection: str) -> list[str]:
        return sorted(self._collections.get(collection, {}))


class RedisRecordStore(RecordStore):
    """One Redis hash per collection, keyed under the configured namespace."""

    def __init__(self, client: Any, *, namespace: str = "consultflow") -> None:
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "RedisRecordStore":
        return cls(Redis.from_url(settings.redis_url), namespace=settings.namespace)

    def _key(self, collection: str) -> str:
        return f"{self._namespace}:{collection}"

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        raw = await self._client.hget(self._key(collection), key)
        return decode_json(raw)

    async def put(self, collection: str, key: str, payload: dict[str, Any]) -> None:
        await self._client.hset(self._key(collection), key, encode_json(payload))

    async def list(self, collection: str) -> list[dict[str, Any]]:
        values = await self._client.hvals(self._key(collection))
        return [decode_json(value) for value in values]

    async def delete(self, collection: str, key: str) -> None:
        await self._client.hdel(self._key(collection), key)

    async def close(self) -> None:
        closer = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result


class PostgresRecordStore(RecordStore):
    _CREATE = """
        CREATE TABLE IF NOT EXISTS consultflow_records (
            collection TEXT NOT NULL,
            key TEXT NOT NULL,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (collection, key)
        )
    """

    _UPSERT = """
        INSERT INTO consultflow_records(collection, key, payload)
        VALUES($1, $2, $3::jsonb)
        ON CONFLICT (collection, key)
        DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
    """

    _FETCH = "SELECT payload FROM consultflow_records WHERE collection = $1 AND key = $2"
    _LIST = "SELECT payload FROM consultflow_records WHERE collection = $1 ORDER BY updated_at ASC"
    _DELETE = "DELETE FROM consultflow_records WHERE collection = $1 AND key = $2"

    def __init__(self, pool: Any) -> None:
        self._pool_or_factory = pool
        self._pool: Any | None = None
        self._schema_ready = False

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "PostgresRecordStore":
        pool = asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
        )
        return cls(pool)

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(self._FETCH, collection, key)
        if row is None:
            return None
        return decode_json(row["payload"])

    async def put(self, collection: str, key: str, payload: dict[str, Any]) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(self._UPSERT, collection, key, encode_json(payload))

    async def list(self, collection: str) -> list[dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(self._LIST, collection)
        return [decode_json(row["payload"]) for row in rows]

    async def delete(self, collection: str, key: str) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(self._DELETE, collection, key)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_pool(self) -> Any:
        if self._pool is None:
            candidate = self._pool_or_factory
            if candidate is None:
                raise RuntimeError("Invalid asyncpg pool supplied to PostgresRecordStore")
            if inspect.isawaitable(candidate):
                candidate = await candidate
            if not (hasattr(candidate, "acquire") and hasattr(candidate, "close")):
                raise RuntimeError("Invalid asyncpg pool supplied to PostgresRecordStore")
            self._pool = candidate
        if not self._schema_ready:
            async with self._pool.acquire() as connection:
                await connection.execute(self._CREATE)
            self._schema_ready = True
        return self._pool


def build_record_store(settings: StorageSettings) -> RecordStore:
    if settings.backend == "redis":
        store: RecordStore = RedisRecordStore.from_settings(settings)
    elif settings.backend == "postgres":
        store = PostgresRecordStore.from_settings(settings)
    else:
        store = InMemoryRecordStore()
    logger.info("record_store_configured", backend=settings.backend)
    return store


__all__ = [
    "CONSULTATIONS",
    "CONTEXT",
    "EXECUTIONS",
    "RecordStore",
    "InMemoryRecordStore",
    "RedisRecordStore",
    "PostgresRecordStore",
    "build_record_store",
]

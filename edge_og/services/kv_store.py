from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from edge_og.logging import get_logger

logger = get_logger("edge_og.kv_store")


class StoreError(Exception):
    """Raised when the key-value backend cannot serve a request."""


class KVStore(ABC):
    """Asynchronous key-value capability: get, put, delete and prefix listing.

    No transactions or compare-and-swap are assumed; read-modify-write callers
    accept lost updates under concurrency.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]: ...

    async def close(self) -> None:
        return None

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt JSON value under '{key.split(':', 1)[0]}:*'.") from exc

    async def put_json(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        await self.put(key, json.dumps(value, separators=(",", ":")), ttl_seconds=ttl_seconds)


class MemoryKVStore(KVStore):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)


class SQLiteKVStore(KVStore):
    def __init__(self, db_path: str | Path, clock: Callable[[], float] = time.time) -> None:
        self._path = Path(db_path)
        self._clock = clock

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path))
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> int:
        """Create the table if needed and drop rows whose TTL already passed."""
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                );

                CREATE INDEX IF NOT EXISTS idx_kv_expires_at ON kv(expires_at);
                """
            )
        return self.purge_expired()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise StoreError("SQLite key-value operation failed.") from exc

    def _get(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT value
                FROM kv
                WHERE key = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                """,
                (key, self._clock()),
            ).fetchone()
        return str(row["value"]) if row else None

    def _put(self, key: str, value: str, ttl_seconds: int | None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv(key, value, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, value, expires_at),
            )

    def _delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def _list_keys(self, prefix: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT key
                FROM kv
                WHERE substr(key, 1, ?) = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key
                """,
                (len(prefix), prefix, self._clock()),
            ).fetchall()
        return [str(row["key"]) for row in rows]

    def purge_expired(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?", (self._clock(),)
            )
            return cur.rowcount

    async def get(self, key: str) -> str | None:
        return await self._run(self._get, key)

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await self._run(self._put, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._run(self._delete, key)

    async def list_keys(self, prefix: str) -> list[str]:
        return await self._run(self._list_keys, prefix)


def _escape_glob(prefix: str) -> str:
    return "".join(f"\\{ch}" if ch in "*?[]\\" else ch for ch in prefix)


class RedisKVStore(KVStore):
    def __init__(self, redis_url: str) -> None:
        self.redis_url = redis_url
        self._redis: redis.Redis | None = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> str | None:
        try:
            return await self._client().get(key)
        except RedisError as exc:
            raise StoreError("Redis GET failed.") from exc

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        try:
            await self._client().set(key, value, ex=ttl_seconds or None)
        except RedisError as exc:
            raise StoreError("Redis SET failed.") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client().delete(key)
        except RedisError as exc:
            raise StoreError("Redis DEL failed.") from exc

    async def list_keys(self, prefix: str) -> list[str]:
        try:
            keys = [key async for key in self._client().scan_iter(match=f"{_escape_glob(prefix)}*")]
        except RedisError as exc:
            raise StoreError("Redis SCAN failed.") from exc
        return sorted(keys)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_store(backend: str, *, db_path: str, redis_url: str) -> KVStore:
    if backend == "memory":
        return MemoryKVStore()
    if backend == "sqlite":
        store = SQLiteKVStore(db_path)
        purged = store.init_db()
        logger.info("kv_store_ready", backend=backend, expired_purged=purged)
        return store
    if backend == "redis":
        return RedisKVStore(redis_url)
    raise ValueError(f"Unsupported store backend '{backend}'.")

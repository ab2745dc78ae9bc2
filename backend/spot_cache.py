from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import weakref
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional, Protocol

from geohash_codec import geohash_encode
from models import CacheEntry
from spot_time import CACHE_TTL_MS, now_ms

"""
Client-resident TTL cache for discovery results.

Entries are keyed by a precision-5 geohash of the query center (~4.9km cells),
so nearby centers share one entry whatever radius they were queried with.
The cache is an optimization only: every storage failure is logged and
treated as a miss.
"""

logger = logging.getLogger(__name__)

CACHE_GEOHASH_PRECISION = 5


class CacheIOFailure(RuntimeError):
    pass


class KeyValueStorage(Protocol):
    async def get(self, key: str) -> Optional[dict[str, Any]]: ...

    async def put(self, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self) -> list[str]: ...


def spot_cache_key(lat: float, lng: float) -> str:
    return f"spots_{geohash_encode(lat, lng, precision=CACHE_GEOHASH_PRECISION)}"


class MemoryKeyValueStorage:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self) -> list[str]:
        return list(self._data)


class SqliteKeyValueStorage:
    """
    Persistent key-value storage in a single sqlite table.

    Each call opens its own connection on a worker thread so the event loop is
    never blocked; sqlite errors surface as CacheIOFailure.
    """

    def __init__(self, path: str | Path, *, table: str = "geohash_spots") -> None:
        self.path = Path(path)
        self.table = table
        self._ready = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        if not self._ready:
            conn.execute(f"CREATE TABLE IF NOT EXISTS {self.table} (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
            conn.commit()
            self._ready = True
        return conn

    def _run(self, sql: str, params: tuple = (), *, fetch: bool = False) -> list[tuple]:
        try:
            conn = self._connect()
            try:
                cur = conn.execute(sql, params)
                rows = cur.fetchall() if fetch else []
                conn.commit()
                return rows
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheIOFailure(f"sqlite cache at {self.path} failed: {e}") from e

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        rows = await asyncio.to_thread(
            self._run, f"SELECT value FROM {self.table} WHERE key = ?", (key,), fetch=True
        )
        if not rows:
            return None
        try:
            return json.loads(rows[0][0])
        except ValueError as e:
            raise CacheIOFailure(f"Corrupt cache entry {key!r}: {e}") from e

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._run,
            f"INSERT OR REPLACE INTO {self.table} (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._run, f"DELETE FROM {self.table} WHERE key = ?", (key,))

    async def list_keys(self) -> list[str]:
        rows = await asyncio.to_thread(self._run, f"SELECT key FROM {self.table}", fetch=True)
        return [r[0] for r in rows]


class SpotCache:
    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        ttl_ms: int = CACHE_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.storage = storage
        self.ttl_ms = int(ttl_ms)
        self._clock = clock
        # Operations on one key linearize; different keys never wait on each other.
        # A lock lives only while some operation holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.timestamp < self.ttl_ms

    async def get(self, key: str) -> Any:
        async with self._lock_for(key):
            try:
                raw = await self.storage.get(key)
                if raw is None:
                    return None
                entry = CacheEntry.model_validate(raw)
                if self._is_fresh(entry):
                    return entry.data
                await self.storage.delete(key)
            except Exception:
                logger.warning("Spot cache read failed for %s; treating as miss", key, exc_info=True)
            return None

    async def set(self, key: str, value: Any) -> None:
        entry = CacheEntry(data=value, timestamp=self._clock())
        async with self._lock_for(key):
            try:
                await self.storage.put(key, entry.model_dump())
            except Exception:
                logger.warning("Spot cache write failed for %s", key, exc_info=True)

    async def delete(self, key: str) -> None:
        async with self._lock_for(key):
            try:
                await self.storage.delete(key)
            except Exception:
                logger.warning("Spot cache delete failed for %s", key, exc_info=True)

    async def clear(self) -> None:
        try:
            keys = await self.storage.list_keys()
        except Exception:
            logger.warning("Spot cache clear failed to list keys", exc_info=True)
            return
        for key in keys:
            async with self._lock_for(key):
                try:
                    await self.storage.delete(key)
                except Exception:
                    logger.warning("Spot cache clear failed for %s", key, exc_info=True)

    async def sweep(self) -> int:
        """
        Evict every entry past its TTL and return how many were removed.

        Housekeeping only; `get` already refuses stale entries.
        """
        try:
            keys = await self.storage.list_keys()
        except Exception:
            logger.warning("Spot cache sweep failed to list keys", exc_info=True)
            return 0

        evicted = 0
        for key in keys:
            async with self._lock_for(key):
                try:
                    raw = await self.storage.get(key)
                    if raw is None:
                        continue
                    if not self._is_fresh(CacheEntry.model_validate(raw)):
                        await self.storage.delete(key)
                        evicted += 1
                except Exception:
                    logger.warning("Spot cache sweep failed for %s", key, exc_info=True)
        if evicted:
            logger.info("Spot cache sweep evicted %d stale entries", evicted)
        return evicted

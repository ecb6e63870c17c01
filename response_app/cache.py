"""
TTL cache for upstream provider responses.

Both backends share one contract:

- ``get(key)`` returns the stored value, or ``MISS`` when the key is absent
  or its entry is at/past expiry. Expired entries are purged lazily on read.
- ``set(key, value, ttl)`` replaces the whole entry (no merge). Writes to the
  same key are serialised; a reader sees the old or the new entry, never a mix.

``MISS`` is a sentinel so that cached empty answers (``[]``, ``None``) stay
distinguishable from "nothing cached".
"""

import asyncio
import copy
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import aiosqlite

from .errors import InvalidInput
from .storage import connect

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 3600


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float  # epoch seconds


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class _KeyLocks:
    """Per-key locks, dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class TTLCache:
    """In-process backend. Entries are immutable and swapped whole on ``set``."""

    def __init__(self, default_ttl: int = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"[Cache] miss key={key}")
            return MISS
        if self._clock() >= entry.expires_at:
            # only drop the entry we looked at; a concurrent set may have replaced it
            if self._entries.get(key) is entry:
                del self._entries[key]
            logger.info(f"[Cache] expired key={key}")
            return MISS
        logger.info(f"[Cache] hit key={key}")
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise InvalidInput(f"ttl must be positive, got {ttl}")
        # built and swapped without yielding; readers see old or new, never a mix
        entry = CacheEntry(key=key, value=copy.deepcopy(value), expires_at=self._clock() + ttl)
        self._entries[key] = entry
        logger.info(f"[Cache] set key={key} expires_at={_iso(entry.expires_at)}")

    async def close(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


CREATE_CACHE_SQL = """
CREATE TABLE IF NOT EXISTS cache (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  expires_at TEXT NOT NULL
)
"""


class SqliteTTLCache:
    """
    Persisted backend: one row per key in the ``cache`` table,
    ``{key, value (JSON), expires_at (ISO-8601 UTC)}``.

    A storage outage degrades to a miss on read and a logged no-op on write;
    it never fails the request that consulted the cache.
    """

    def __init__(self, path: str, default_ttl: int = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.path = path
        self.default_ttl = default_ttl
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._key_lock = _KeyLocks()

    async def open(self) -> "SqliteTTLCache":
        self._db = await connect(self.path)
        await self._db.execute(CREATE_CACHE_SQL)
        await self._db.commit()
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def get(self, key: str) -> Any:
        try:
            async with self._db.execute(
                "SELECT value, expires_at FROM cache WHERE key = ?", (key,)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                logger.debug(f"[Cache] miss key={key}")
                return MISS
            value_json, expires_at = row
            if datetime.fromisoformat(expires_at).timestamp() <= self._clock():
                await self._db.execute(
                    "DELETE FROM cache WHERE key = ? AND expires_at = ?", (key, expires_at)
                )
                await self._db.commit()
                logger.info(f"[Cache] expired key={key}")
                return MISS
            logger.info(f"[Cache] hit key={key}")
            return json.loads(value_json)
        except (aiosqlite.Error, ValueError) as e:
            logger.error(f"[Cache][ERROR] get failed key={key}: {e}")
            return MISS

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise InvalidInput(f"ttl must be positive, got {ttl}")
        expires_at = _iso(self._clock() + ttl)
        async with self._key_lock.hold(key):
            try:
                payload = json.dumps(value)
                await self._db.execute("""
                    INSERT INTO cache (key, value, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """, (key, payload, expires_at))
                await self._db.commit()
            except (aiosqlite.Error, TypeError) as e:
                logger.error(f"[Cache][ERROR] set failed key={key}: {e}")
                return
        logger.info(f"[Cache] set key={key} expires_at={expires_at}")

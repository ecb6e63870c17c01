"""
TTL cache tests: expiry at the boundary, whole-entry overwrite, and the
persisted sqlite backend behaving like the in-memory one.
"""

import asyncio

import pytest

from response_app.cache import MISS, TTLCache, SqliteTTLCache
from response_app.errors import InvalidInput

from .fixtures import FakeClock


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class TestMemoryCache:

    def test_value_served_until_expiry_then_miss(self):
        async def scenario():
            clock = FakeClock()
            cache = TTLCache(clock=clock)
            await cache.set("geocode:Manhattan, NYC", {"lat": 40.7831, "lon": -73.9712}, ttl=60)

            clock.advance(59)
            assert await cache.get("geocode:Manhattan, NYC") == {"lat": 40.7831, "lon": -73.9712}

            clock.advance(1)  # exactly at expires_at
            assert await cache.get("geocode:Manhattan, NYC") is MISS
            assert len(cache) == 0  # purged on read
        asyncio.run(scenario())

    def test_default_ttl_is_one_hour(self):
        async def scenario():
            clock = FakeClock()
            cache = TTLCache(clock=clock)
            await cache.set("k", "v")
            clock.advance(3599)
            assert await cache.get("k") == "v"
            clock.advance(1)
            assert await cache.get("k") is MISS
        asyncio.run(scenario())

    def test_second_set_replaces_without_merge(self):
        async def scenario():
            cache = TTLCache()
            await cache.set("k", {"a": 1, "b": 2})
            await cache.set("k", {"c": 3})
            assert await cache.get("k") == {"c": 3}
        asyncio.run(scenario())

    def test_overwrite_resets_expiry(self):
        async def scenario():
            clock = FakeClock()
            cache = TTLCache(clock=clock)
            await cache.set("k", "old", ttl=10)
            clock.advance(8)
            await cache.set("k", "new", ttl=10)
            clock.advance(8)
            assert await cache.get("k") == "new"
        asyncio.run(scenario())

    def test_empty_values_are_hits_not_misses(self):
        async def scenario():
            cache = TTLCache()
            await cache.set("social:x", [])
            assert await cache.get("social:x") == []
            assert await cache.get("social:x") is not MISS
            assert await cache.get("never-set") is MISS
        asyncio.run(scenario())

    def test_returned_value_is_a_copy(self):
        async def scenario():
            cache = TTLCache()
            await cache.set("k", [1, 2])
            got = await cache.get("k")
            got.append(3)
            assert await cache.get("k") == [1, 2]
        asyncio.run(scenario())

    def test_non_positive_ttl_rejected(self):
        async def scenario():
            cache = TTLCache()
            with pytest.raises(InvalidInput):
                await cache.set("k", "v", ttl=0)
            assert await cache.get("k") is MISS
        asyncio.run(scenario())

    def test_concurrent_writers_leave_one_complete_entry(self):
        async def scenario():
            cache = TTLCache()
            values = [{"writer": i, "payload": list(range(i))} for i in range(20)]
            await asyncio.gather(*(cache.set("k", v) for v in values))
            assert await cache.get("k") in values
        asyncio.run(scenario())


# =============================================================================
# SQLITE BACKEND
# =============================================================================

class TestSqliteCache:

    def test_round_trip_and_expiry(self, tmp_path):
        async def scenario():
            clock = FakeClock()
            cache = await SqliteTTLCache(str(tmp_path / "cache.sqlite"), clock=clock).open()
            try:
                await cache.set("official_updates:fema", [{"id": "fema1"}], ttl=30)
                assert await cache.get("official_updates:fema") == [{"id": "fema1"}]
                clock.advance(30)
                assert await cache.get("official_updates:fema") is MISS
            finally:
                await cache.close()
        asyncio.run(scenario())

    def test_upsert_on_key(self, tmp_path):
        async def scenario():
            cache = await SqliteTTLCache(str(tmp_path / "cache.sqlite")).open()
            try:
                await cache.set("k", {"a": 1})
                await cache.set("k", {"b": 2})
                assert await cache.get("k") == {"b": 2}
                async with cache._db.execute("SELECT COUNT(*) FROM cache") as cur:
                    (count,) = await cur.fetchone()
                assert count == 1
            finally:
                await cache.close()
        asyncio.run(scenario())

    def test_entries_survive_reopen(self, tmp_path):
        async def scenario():
            path = str(tmp_path / "cache.sqlite")
            first = await SqliteTTLCache(path).open()
            await first.set("geocode:Sendai, Japan", {"lat": 38.2682, "lon": 140.8694})
            await first.close()

            second = await SqliteTTLCache(path).open()
            try:
                assert await second.get("geocode:Sendai, Japan") == {"lat": 38.2682, "lon": 140.8694}
            finally:
                await second.close()
        asyncio.run(scenario())

    def test_unserialisable_value_is_logged_not_raised(self, tmp_path):
        async def scenario():
            cache = await SqliteTTLCache(str(tmp_path / "cache.sqlite")).open()
            try:
                await cache.set("k", object())
                assert await cache.get("k") is MISS
            finally:
                await cache.close()
        asyncio.run(scenario())

    def test_key_locks_released_after_writes(self, tmp_path):
        async def scenario():
            cache = await SqliteTTLCache(str(tmp_path / "cache.sqlite")).open()
            try:
                await asyncio.gather(*(cache.set(f"search_social:q{i % 3}", [i]) for i in range(30)))
                await cache.set("k", object())  # failed write still releases its lock
                assert len(cache._key_lock) == 0
                assert await cache.get("search_social:q0") in ([i] for i in range(0, 30, 3))
            finally:
                await cache.close()
        asyncio.run(scenario())

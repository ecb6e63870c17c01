"""
Upstream gateway
================

Uniform async front for every provider operation:

1) build a deterministic cache key from the operation and its normalised inputs
2) consult the TTL cache; a hit returns without touching the provider
3) on a miss, run the provider call (one in-flight call per key), cache
   ``ok`` / ``no_data`` results with the default TTL and return them
4) unexpected provider exceptions become ``failed`` results and are not cached

Caller timeouts are cooperative: the provider task is shielded, keeps running
after the caller gives up, and still fills the cache when it lands.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .cache import MISS, CACHE_TTL_SECONDS
from .providers import ProviderResult, MockProviders, BULLETIN_SOURCES

logger = logging.getLogger(__name__)


def normalize(value) -> str:
    """Collapse whitespace runs and trim; case is preserved."""
    return " ".join(str(value).split())


def cache_key(operation: str, *params) -> str:
    # JSON list: distinct param tuples never share a key
    return f"{operation}:" + json.dumps([normalize(p) for p in params], ensure_ascii=False)


class UpstreamGateway:
    def __init__(self, cache, providers: MockProviders,
                 ttl: int = CACHE_TTL_SECONDS, timeout: Optional[float] = None):
        self.cache = cache
        self.providers = providers
        self.ttl = ttl
        self.timeout = timeout
        self._inflight: Dict[str, asyncio.Task] = {}

    # ---------------- provider operations ----------------

    async def extract_location(self, text: str, timeout: Optional[float] = None) -> ProviderResult:
        text = normalize(text)
        return await self._call("extract_location", (text,),
                                lambda: self.providers.extract_location(text), timeout)

    async def verify_image(self, url: str, timeout: Optional[float] = None) -> ProviderResult:
        url = normalize(url)
        return await self._call("verify_image", (url,),
                                lambda: self.providers.verify_image(url), timeout)

    async def geocode(self, location_name: str, timeout: Optional[float] = None) -> ProviderResult:
        location_name = normalize(location_name)
        return await self._call("geocode", (location_name,),
                                lambda: self.providers.geocode(location_name), timeout)

    async def search_social(self, disaster_id: str, query: str = "",
                            timeout: Optional[float] = None) -> ProviderResult:
        disaster_id, query = normalize(disaster_id), normalize(query or "")
        return await self._call("search_social", (disaster_id, query),
                                lambda: self.providers.search_social(disaster_id, query), timeout)

    async def fetch_bulletins(self, source: str, timeout: Optional[float] = None) -> ProviderResult:
        source = normalize(source)
        return await self._call("fetch_bulletins", (source,),
                                lambda: self.providers.fetch_bulletins(source), timeout)

    async def fetch_all_bulletins(self, sources: Sequence[str] = BULLETIN_SOURCES,
                                  timeout: Optional[float] = None) -> ProviderResult:
        results = await asyncio.gather(*(self.fetch_bulletins(s, timeout) for s in sources))
        failures = [r for r in results if r.status == "failed"]
        if failures:
            return ProviderResult.failed("; ".join(r.reason or "unknown" for r in failures))
        updates: List = []
        for r in results:
            updates.extend(r.data or [])
        if not updates:
            return ProviderResult.no_data("no_updates", data=[])
        return ProviderResult.ok(updates)

    # ---------------- cache + single flight ----------------

    async def _call(self, operation: str, params: tuple,
                    invoke: Callable[[], Awaitable[ProviderResult]],
                    timeout: Optional[float]) -> ProviderResult:
        key = cache_key(operation, *params)
        cached = await self.cache.get(key)
        if cached is not MISS:
            return ProviderResult.model_validate(cached)

        task = self._inflight.get(key)
        if task is None:
            logger.info(f"[Gateway] calling provider op={operation} key={key}")
            task = asyncio.create_task(self._fetch(key, operation, invoke))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        wait = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(task), wait)
        except asyncio.TimeoutError:
            logger.warning(f"[Gateway] caller timed out after {wait}s op={operation}; result will still be cached")
            return ProviderResult.failed("timeout")

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Gateway][ERROR] fetch task crashed key={key}: {task.exception()}")

    async def _fetch(self, key: str, operation: str,
                     invoke: Callable[[], Awaitable[ProviderResult]]) -> ProviderResult:
        # a previous flight may have filled the cache between our miss and this task starting
        cached = await self.cache.get(key)
        if cached is not MISS:
            return ProviderResult.model_validate(cached)
        try:
            result = await invoke()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Gateway][ERROR] provider op={operation} failed: {e}")
            return ProviderResult.failed(f"{type(e).__name__}: {e}")

        if result.status == "failed":
            return result
        if result.status == "no_data":
            logger.warning(f"[Gateway] op={operation} returned no data ({result.reason})")
        await self.cache.set(key, result.model_dump(), self.ttl)
        return result

    async def close(self) -> None:
        pending = list(self._inflight.values())
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()

"""
Shared builders for the async core.

Every component binds to the running event loop, so tests build the whole
stack inside the coroutine they pass to ``asyncio.run``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from response_app.broadcast import Broadcaster
from response_app.cache import TTLCache
from response_app.gateway import UpstreamGateway
from response_app.geo import GeoIndex
from response_app.providers import MockProviders
from response_app.storage import RecordStore


class FakeClock:
    """Monotonic epoch-seconds clock moved by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class TickingClock:
    """datetime clock that moves one millisecond per reading."""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current


class CountingProviders(MockProviders):
    """Mock providers with no latency (unless asked) that count invocations per operation."""

    def __init__(self, latency_scale: float = 0.0, rate_limit_chance: float = 0.0, **kw):
        super().__init__(latency_scale=latency_scale, rate_limit_chance=rate_limit_chance, **kw)
        self.calls = {}

    def _count(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1

    async def extract_location(self, text):
        self._count("extract_location")
        return await super().extract_location(text)

    async def verify_image(self, url):
        self._count("verify_image")
        return await super().verify_image(url)

    async def geocode(self, location_name):
        self._count("geocode")
        return await super().geocode(location_name)

    async def search_social(self, disaster_id, query=""):
        self._count("search_social")
        return await super().search_social(disaster_id, query)

    async def fetch_bulletins(self, source):
        self._count("fetch_bulletins")
        return await super().fetch_bulletins(source)


class ExplodingProviders(CountingProviders):
    async def geocode(self, location_name):
        self._count("geocode")
        raise ConnectionError("geocoder unreachable")


@dataclass
class Core:
    cache: TTLCache
    providers: CountingProviders
    gateway: UpstreamGateway
    index: GeoIndex
    broadcaster: Broadcaster
    store: RecordStore

    async def close(self) -> None:
        await self.broadcaster.close()
        await self.store.close()
        await self.gateway.close()
        await self.cache.close()


async def build_core(tmp_path, providers=None, clock=None, max_pending: int = 100,
                     db_name: str = "core.sqlite") -> Core:
    cache = TTLCache()
    providers = providers or CountingProviders()
    gateway = UpstreamGateway(cache, providers, timeout=5.0)
    index = GeoIndex()
    broadcaster = Broadcaster(max_pending=max_pending)
    path = db_name if db_name == ":memory:" else str(tmp_path / db_name)
    store = RecordStore(path, gateway=gateway, index=index,
                        broadcaster=broadcaster, clock=clock or TickingClock())
    await store.open()
    return Core(cache, providers, gateway, index, broadcaster, store)


def drain(sub):
    """Everything currently buffered for a subscription, without waiting."""
    out = []
    while sub.pending():
        out.append(sub._queue.get_nowait())
    return out

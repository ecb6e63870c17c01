"""
Mock upstream providers
=======================

Stand-ins for the external services the coordinator depends on: an LLM
(location extraction, image verification), a geocoder, a social-media search
API and official-bulletin scraping. Each call sleeps for a simulated latency
and answers with a ``ProviderResult``:

- ``ok``:       data came back
- ``no_data``:  a recognised empty answer (rate limit, unknown input); valid, cacheable
- ``failed``:   built by the gateway from an unexpected exception; never cached
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

ResultStatus = Literal["ok", "no_data", "failed"]


class ProviderResult(BaseModel):
    status: ResultStatus
    data: Any = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, data: Any) -> "ProviderResult":
        return cls(status="ok", data=data)

    @classmethod
    def no_data(cls, reason: str, data: Any = None) -> "ProviderResult":
        return cls(status="no_data", data=data, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "ProviderResult":
        return cls(status="failed", reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def unwrap(self) -> Any:
        """Data for ok/no_data; raises UpstreamUnavailable for a failure."""
        if self.status == "failed":
            raise UpstreamUnavailable(f"upstream provider failed: {self.reason}")
        return self.data


UNKNOWN_LOCATION = "Unknown Location"

# ---- canned responses ----

LOCATION_HINTS = [
    ("NYC Flood", "Manhattan, NYC"),
    ("Japan earthquake", "Sendai, Japan"),
]

GEOCODE_TABLE: Dict[str, Dict[str, float]] = {
    "Manhattan, NYC": {"lat": 40.7831, "lon": -73.9712},
    "Lower East Side, NYC": {"lat": 40.7145, "lon": -73.9882},
    "Brooklyn, NYC": {"lat": 40.6782, "lon": -73.9442},
    "Sendai, Japan": {"lat": 38.2682, "lon": 140.8694},
    UNKNOWN_LOCATION: {"lat": 0.0, "lon": 0.0},
}

IMAGE_VERDICTS = [
    ("authentic", {"status": "verified", "message": "Image appears authentic and relevant to disaster context."}),
    ("manipulated", {"status": "unverified", "message": "Image shows signs of manipulation or is irrelevant."}),
]


def _now():
    return datetime.now(timezone.utc)


def _social_posts() -> List[Dict[str, Any]]:
    now = _now()
    return [
        {"id": "sm1", "disaster_id": "sample_nyc_flood", "user": "citizen1",
         "content": "#NYCFlood Need food in Lower East Side. Urgent! #foodrelief",
         "timestamp": now.isoformat()},
        {"id": "sm2", "disaster_id": "sample_nyc_flood", "user": "volunteer_grp",
         "content": "Our team is mobilizing supplies for #NYCFlood victims. Contact us for help!",
         "timestamp": (now - timedelta(minutes=1)).isoformat()},
        {"id": "sm3", "disaster_id": "sample_japan_quake", "user": "local_news",
         "content": "Updates on #JapanEarthquake: Rescue efforts underway in Sendai.",
         "timestamp": (now - timedelta(minutes=2)).isoformat()},
        {"id": "sm4", "disaster_id": "sample_nyc_flood", "user": "citizen2",
         "content": "Power is out in Manhattan. Any info on shelters? #floodalert",
         "timestamp": (now - timedelta(minutes=3)).isoformat()},
        {"id": "sm5", "disaster_id": "sample_nyc_flood", "user": "reliefAdmin",
         "content": "Shelter opening at 123 Main St, Manhattan. #NYCFlood #shelter",
         "timestamp": (now - timedelta(seconds=30)).isoformat()},
    ]


def _bulletins() -> Dict[str, List[Dict[str, Any]]]:
    now = _now()
    return {
        "fema": [
            {"id": "fema1", "title": "FEMA Update: NYC Flood Declaration",
             "content": "President declares major disaster for New York. Federal aid available.",
             "url": "http://fema.gov/nyc-flood-update", "published_at": now.isoformat()},
            {"id": "fema2", "title": "FEMA Guidance: Preparing for Earthquakes",
             "content": "Tips on how to secure your home and prepare for seismic activity.",
             "url": "http://fema.gov/earthquake-prep", "published_at": (now - timedelta(days=1)).isoformat()},
        ],
        "redcross": [
            {"id": "rc1", "title": "Red Cross: Shelter Map for NYC",
             "content": "Find open shelters and aid stations in impacted areas of NYC.",
             "url": "http://redcross.org/nyc-shelters", "published_at": now.isoformat()},
            {"id": "rc2", "title": "Red Cross: Donate for Japan Relief",
             "content": "Support victims of the recent earthquake in Japan.",
             "url": "http://redcross.org/japan-relief", "published_at": (now - timedelta(days=2)).isoformat()},
        ],
    }


BULLETIN_SOURCES = ("fema", "redcross")


class MockProviders:
    """
    Simulated upstream services.

    Args:
        latency_scale: multiplies every simulated delay (0 disables sleeping).
        rate_limit_chance: probability that a social search answers "no new posts".
        rng: random source for the rate-limit simulation (seed it for reproducibility).
    """

    LATENCY = {
        "extract_location": 0.5,
        "verify_image": 0.8,
        "geocode": 0.3,
        "search_social": 0.7,
        "fetch_bulletins": 1.0,
    }

    def __init__(self, latency_scale: float = 1.0, rate_limit_chance: float = 0.2,
                 rng: Optional[random.Random] = None):
        self.latency_scale = latency_scale
        self.rate_limit_chance = rate_limit_chance
        self.rng = rng or random.Random()

    async def _delay(self, op: str) -> None:
        secs = self.LATENCY[op] * self.latency_scale
        if secs > 0:
            await asyncio.sleep(secs)

    async def extract_location(self, text: str) -> ProviderResult:
        await self._delay("extract_location")
        for hint, location in LOCATION_HINTS:
            if hint in text:
                return ProviderResult.ok(location)
        return ProviderResult.ok(UNKNOWN_LOCATION)

    async def verify_image(self, url: str) -> ProviderResult:
        await self._delay("verify_image")
        for marker, verdict in IMAGE_VERDICTS:
            if marker in url:
                return ProviderResult.ok(dict(verdict))
        return ProviderResult.no_data(
            "inconclusive",
            data={"status": "pending", "message": "Image verification in progress (mock)."},
        )

    async def geocode(self, location_name: str) -> ProviderResult:
        await self._delay("geocode")
        coords = GEOCODE_TABLE.get(location_name)
        if coords is None:
            return ProviderResult.no_data(f"no match for {location_name!r}")
        return ProviderResult.ok(dict(coords))

    async def search_social(self, disaster_id: str, query: str = "") -> ProviderResult:
        await self._delay("search_social")
        if self.rng.random() < self.rate_limit_chance:
            logger.warning("[Social] simulating 'no new reports' due to rate limit")
            return ProviderResult.no_data("rate_limited", data=[])
        q = query.lower()
        posts = [p for p in _social_posts()
                 if p["disaster_id"] == disaster_id and q in p["content"].lower()]
        if not posts:
            return ProviderResult.no_data("no_matching_posts", data=[])
        return ProviderResult.ok(posts)

    async def fetch_bulletins(self, source: str) -> ProviderResult:
        await self._delay("fetch_bulletins")
        updates = _bulletins().get(source.lower(), [])
        if not updates:
            logger.warning(f"[Bulletins] no updates found for source {source}")
            return ProviderResult.no_data("unknown_source", data=[])
        return ProviderResult.ok(updates)

"""
Geospatial resource index
=========================

Read-optimised view of the store's resources, bucketed by disaster.

- ``upsert`` / ``remove`` / ``remove_disaster`` keep it in step with the store
- ``replace`` rebuilds one bucket when the store reports a divergence
- ``query_radius`` returns resources within ``radius_m`` of a point, nearest
  first; equal distances fall back to creation time, then insertion order

Distances are great-circle (haversine) on a spherical earth. Points are
(lon, lat) everywhere in this module.
"""

import logging
import math
from math import radians, sin, cos, asin, sqrt
from typing import Dict, Iterable, List, Optional, Set

from .errors import InvalidInput
from .models import GeoPoint, NearbyResource, Resource

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEG_LAT = math.pi * EARTH_RADIUS_M / 180.0


def haversine_m(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat/2)**2 + cos(radians(lat1))*cos(radians(lat2))*sin(dlon/2)**2
    return 2*EARTH_RADIUS_M*asin(min(1.0, sqrt(a)))


def distance_m(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_m(a.lon, a.lat, b.lon, b.lat)


def validate_radius(radius_m) -> float:
    try:
        r = float(radius_m)
    except (TypeError, ValueError):
        raise InvalidInput(f"radius must be a number, got {radius_m!r}")
    if not math.isfinite(r) or r <= 0:
        raise InvalidInput(f"radius must be a positive number of meters, got {radius_m!r}")
    return r


class GeoIndex:
    def __init__(self):
        self._buckets: Dict[str, Dict[str, Resource]] = {}
        self._owner: Dict[str, str] = {}  # resource id -> disaster id

    def upsert(self, resource: Resource) -> None:
        prev = self._owner.get(resource.id)
        if prev is not None and prev != resource.disaster_id:
            self._buckets.get(prev, {}).pop(resource.id, None)
        self._buckets.setdefault(resource.disaster_id, {})[resource.id] = resource
        self._owner[resource.id] = resource.disaster_id

    def remove(self, resource_id: str) -> bool:
        disaster_id = self._owner.pop(resource_id, None)
        if disaster_id is None:
            return False
        bucket = self._buckets.get(disaster_id, {})
        bucket.pop(resource_id, None)
        if not bucket:
            self._buckets.pop(disaster_id, None)
        return True

    def remove_disaster(self, disaster_id: str) -> int:
        bucket = self._buckets.pop(disaster_id, {})
        for rid in bucket:
            self._owner.pop(rid, None)
        return len(bucket)

    def replace(self, disaster_id: str, resources: Iterable[Resource]) -> None:
        """Rebuild one disaster's bucket from authoritative rows."""
        self.remove_disaster(disaster_id)
        for r in resources:
            self.upsert(r)
        logger.info(f"[Geo] rebuilt bucket disaster={disaster_id} size={len(self.ids(disaster_id))}")

    def ids(self, disaster_id: str) -> Set[str]:
        return set(self._buckets.get(disaster_id, {}))

    def __len__(self) -> int:
        return len(self._owner)

    def query_radius(self, center: GeoPoint, radius_m: float, disaster_id: str,
                     category: Optional[str] = None) -> List[NearbyResource]:
        radius_m = validate_radius(radius_m)
        # latitude band prefilter; longitude is left to the exact distance
        max_dlat = radius_m / METERS_PER_DEG_LAT

        hits: List[NearbyResource] = []
        for r in self._buckets.get(disaster_id, {}).values():
            if category is not None and r.category != category:
                continue
            if abs(r.location.lat - center.lat) > max_dlat + 1e-9:
                continue
            d = distance_m(center, r.location)
            if d <= radius_m:
                hits.append(NearbyResource(resource=r, distance_m=d))

        hits.sort(key=lambda h: (h.distance_m, h.resource.created_at, h.resource.seq))
        return hits

"""
Geospatial index tests: distance, radius membership and result ordering.
"""

from datetime import datetime, timedelta, timezone

import pytest

from response_app.errors import InvalidInput
from response_app.geo import GeoIndex, distance_m, haversine_m, validate_radius
from response_app.models import GeoPoint, Resource

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
MANHATTAN = GeoPoint(lon=-73.9712, lat=40.7831)


def _res(rid, lon, lat, disaster_id="d1", category="shelter", created_offset=0, seq=0):
    return Resource(
        id=rid, disaster_id=disaster_id, name=rid, location_name=rid,
        location=GeoPoint(lon=lon, lat=lat), category=category,
        created_at=T0 + timedelta(seconds=created_offset), seq=seq,
    )


# =============================================================================
# DISTANCE
# =============================================================================

class TestDistance:

    def test_zero_for_same_point(self):
        assert distance_m(MANHATTAN, MANHATTAN) == 0.0

    def test_one_degree_of_latitude(self):
        # 2 * pi * 6371000 / 360
        assert haversine_m(0.0, 0.0, 0.0, 1.0) == pytest.approx(111194.93, abs=0.01)

    def test_lon_lat_order_matters(self):
        # swapping the axes of Manhattan lands somewhere else entirely
        swapped = GeoPoint(lon=40.7831, lat=-73.9712)
        assert distance_m(MANHATTAN, swapped) > 1_000_000

    def test_manhattan_to_brooklyn(self):
        brooklyn = GeoPoint(lon=-73.9442, lat=40.6782)
        assert 11_000 < distance_m(MANHATTAN, brooklyn) < 12_500


# =============================================================================
# RADIUS QUERIES
# =============================================================================

class TestQueryRadius:

    def test_nearest_first_and_excludes_outside(self):
        idx = GeoIndex()
        idx.upsert(_res("far", -73.9442, 40.6782, seq=1))         # Brooklyn, ~11.7km
        idx.upsert(_res("near", -73.9882, 40.7145, seq=2))        # LES, ~7.8km
        idx.upsert(_res("here", -73.9712, 40.7831, seq=3))
        idx.upsert(_res("japan", 140.8694, 38.2682, seq=4))

        hits = idx.query_radius(MANHATTAN, 10_000, "d1")
        assert [h.resource.id for h in hits] == ["here", "near"]
        assert hits[0].distance_m == 0.0
        assert all(h.distance_m <= 10_000 for h in hits)

        wide = idx.query_radius(MANHATTAN, 15_000, "d1")
        assert [h.resource.id for h in wide] == ["here", "near", "far"]

    def test_radius_boundary_is_inclusive(self):
        idx = GeoIndex()
        north = _res("north", -73.9712, 40.8831)
        idx.upsert(north)
        exact = distance_m(MANHATTAN, north.location)

        assert [h.resource.id for h in idx.query_radius(MANHATTAN, exact, "d1")] == ["north"]
        assert idx.query_radius(MANHATTAN, exact - 1.0, "d1") == []

    def test_ties_break_by_created_at_then_seq(self):
        idx = GeoIndex()
        idx.upsert(_res("later", -73.9882, 40.7145, created_offset=5, seq=1))
        idx.upsert(_res("second", -73.9882, 40.7145, created_offset=0, seq=3))
        idx.upsert(_res("first", -73.9882, 40.7145, created_offset=0, seq=2))

        hits = idx.query_radius(MANHATTAN, 10_000, "d1")
        assert [h.resource.id for h in hits] == ["first", "second", "later"]

    def test_category_filter(self):
        idx = GeoIndex()
        idx.upsert(_res("s", -73.9712, 40.7831, category="shelter"))
        idx.upsert(_res("f", -73.9712, 40.7831, category="food"))

        hits = idx.query_radius(MANHATTAN, 1_000, "d1", category="food")
        assert [h.resource.id for h in hits] == ["f"]
        assert len(idx.query_radius(MANHATTAN, 1_000, "d1")) == 2

    def test_scoped_to_one_disaster(self):
        idx = GeoIndex()
        idx.upsert(_res("a", -73.9712, 40.7831, disaster_id="d1"))
        idx.upsert(_res("b", -73.9712, 40.7831, disaster_id="d2"))

        assert [h.resource.id for h in idx.query_radius(MANHATTAN, 1_000, "d2")] == ["b"]
        assert idx.query_radius(MANHATTAN, 1_000, "nope") == []

    @pytest.mark.parametrize("radius", [0, -5, float("nan"), float("inf"), "far", None])
    def test_invalid_radius_rejected(self, radius):
        idx = GeoIndex()
        with pytest.raises(InvalidInput):
            idx.query_radius(MANHATTAN, radius, "d1")

    def test_numeric_strings_accepted(self):
        assert validate_radius("2500") == 2500.0


# =============================================================================
# MAINTENANCE
# =============================================================================

class TestIndexMaintenance:

    def test_remove_and_remove_disaster(self):
        idx = GeoIndex()
        idx.upsert(_res("a", -73.9712, 40.7831))
        idx.upsert(_res("b", -73.9712, 40.7831))
        idx.upsert(_res("c", -73.9712, 40.7831, disaster_id="d2"))

        assert idx.remove("a") is True
        assert idx.remove("a") is False
        assert idx.ids("d1") == {"b"}

        assert idx.remove_disaster("d1") == 1
        assert idx.ids("d1") == set()
        assert len(idx) == 1

    def test_upsert_replaces_in_place(self):
        idx = GeoIndex()
        idx.upsert(_res("a", -73.9712, 40.7831))
        idx.upsert(_res("a", 140.8694, 38.2682))
        assert len(idx) == 1
        assert idx.query_radius(MANHATTAN, 1_000, "d1") == []

    def test_replace_rebuilds_bucket(self):
        idx = GeoIndex()
        idx.upsert(_res("stale", -73.9712, 40.7831))
        idx.replace("d1", [_res("fresh", -73.9712, 40.7831)])
        assert idx.ids("d1") == {"fresh"}
        assert len(idx) == 1

from __future__ import annotations

import math
import sys
from pathlib import Path
from typing import Any

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from document_store import InMemoryDocumentStore
from geohash_codec import InvalidCoordinate, geohash_encode
from spot_cache import MemoryKeyValueStorage, SpotCache, spot_cache_key
from spot_moderation import create_spot
from spot_query import (
    QueryFailure,
    SpotDiscovery,
    execute_query,
    filter_results,
    plan_query,
    within_radius,
)


def _destination(lat: float, lng: float, distance_m: float, bearing_deg: float) -> tuple[float, float]:
    r = 6371000.0
    d = distance_m / r
    b = math.radians(bearing_deg)
    lat1 = math.radians(lat)
    lng1 = math.radians(lng)
    lat2 = math.asin(math.sin(lat1) * math.cos(d) + math.cos(lat1) * math.sin(d) * math.cos(b))
    lng2 = lng1 + math.atan2(math.sin(b) * math.sin(d) * math.cos(lat1), math.cos(d) - math.sin(lat1) * math.sin(lat2))
    lng2_deg = (math.degrees(lng2) + 540.0) % 360.0 - 180.0
    return math.degrees(lat2), lng2_deg


def _covered(intervals: list[tuple[str, str]], geohash: str) -> bool:
    return any(start <= geohash <= end for start, end in intervals)


def _doc(spot_id: str, *, expires_at: int, lat: float = -6.2, lng: float = 106.8) -> dict[str, Any]:
    return {
        "id": spot_id,
        "location": {"latitude": lat, "longitude": lng, "geohash": geohash_encode(lat, lng)},
        "created_at": 0,
        "created_by": "u1",
        "expires_at": expires_at,
    }


@pytest.mark.parametrize(
    "center",
    [
        (-6.2, 106.816666),
        (0.00001, -0.00001),
        (37.7749, -122.4194),
        (60.0, 24.9),
        (0.0, 179.999),
        (89.99, 0.0),
        (-89.99, 45.0),
        (89.5, -170.0),
    ],
)
@pytest.mark.parametrize("radius_m", [50, 2000, 15000])
def test_plan_covers_every_point_in_radius(center, radius_m):
    intervals = plan_query(center[0], center[1], radius_m)
    assert intervals
    assert intervals == sorted(set(intervals))

    for bearing in range(0, 360, 15):
        for frac in (0.0, 0.25, 0.5, 0.75, 0.98):
            lat, lng = _destination(center[0], center[1], radius_m * frac, bearing)
            assert _covered(intervals, geohash_encode(lat, lng)), (center, radius_m, bearing, frac)


def test_plan_near_pole_covers_the_far_side():
    # The circle crosses the pole, so points on the opposite meridian are in range.
    intervals = plan_query(89.99, 0.0, 2000)
    assert _covered(intervals, geohash_encode(89.995, -90.0))
    assert _covered(intervals, geohash_encode(89.99, 180.0))
    assert _covered(intervals, geohash_encode(89.99, 0.0))
    # Only the polar cap is queried, not the whole hemisphere.
    assert not _covered(intervals, geohash_encode(45.0, 0.0))


def test_plan_intervals_are_disjoint():
    intervals = plan_query(-6.2, 106.816666, 2000)
    for (s1, e1), (s2, e2) in zip(intervals, intervals[1:]):
        assert e1 <= s2 or (s1, e1) == (s2, e2)


def test_plan_rejects_bad_input():
    with pytest.raises(InvalidCoordinate):
        plan_query(123.0, 0.0, 2000)
    with pytest.raises(ValueError):
        plan_query(0.0, 0.0, 0)


def test_filter_results_dedupes_and_drops_expired():
    now = 1_000_000
    batches = [
        [_doc("a", expires_at=now + 10), _doc("b", expires_at=now - 1)],
        [_doc("a", expires_at=now + 10), _doc("c", expires_at=now + 5)],
    ]
    out = filter_results(batches, now=now)
    assert [s.id for s in out] == ["a", "c"]


def test_filter_results_expiry_boundary_is_exclusive():
    now = 5000
    assert filter_results([[_doc("x", expires_at=now)]], now=now) == []


def test_within_radius_is_exact():
    center = (-6.2, 106.8)
    near = _doc("near", expires_at=10, lat=-6.2, lng=106.801)
    far = _doc("far", expires_at=10, lat=-6.2, lng=106.85)
    spots = filter_results([[near, far]], now=0)
    assert [s.id for s in within_radius(spots, *center, 500)] == ["near"]


class _FailingStore(InMemoryDocumentStore):
    def __init__(self, fail_on: str | None = None) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    async def range_query(self, collection, order_key, start, end, limit):
        self.calls += 1
        if self.fail_on is None or start == self.fail_on:
            raise ConnectionError("store unavailable")
        return await super().range_query(collection, order_key, start, end, limit)


@pytest.mark.asyncio
async def test_execute_query_fails_whole_call_on_any_interval():
    intervals = plan_query(-6.2, 106.816666, 2000)
    store = _FailingStore(fail_on=intervals[-1][0])
    with pytest.raises(QueryFailure):
        await execute_query(store, intervals)
    assert store.calls == len(intervals)


@pytest.mark.asyncio
async def test_fetch_spots_hides_spot_after_ttl():
    store = InMemoryDocumentStore()
    spot = await create_spot(store, lat=-6.2, lng=106.816666, location_name="Es Buah", created_by="u1", now=0)
    assert spot.expires_at == 7_200_000

    clock = {"now": 1000}
    cache = SpotCache(MemoryKeyValueStorage(), clock=lambda: clock["now"])
    discovery = SpotDiscovery(store, cache, clock=lambda: clock["now"])

    found = await discovery.fetch_spots(-6.2, 106.816666, 500)
    assert [s.id for s in found] == [spot.id]

    clock["now"] = 7_200_001
    assert await discovery.fetch_spots(-6.2, 106.816666, 500) == []
    assert await discovery.fetch_spots(-6.2, 106.816666, 500, force_refresh=True) == []


@pytest.mark.asyncio
async def test_fetch_spots_serves_cached_bucket():
    store = InMemoryDocumentStore()
    spot = await create_spot(store, lat=-6.2, lng=106.816666, location_name="Kolak", created_by="u1", now=0)
    cache = SpotCache(MemoryKeyValueStorage(), clock=lambda: 1000)
    discovery = SpotDiscovery(store, cache, clock=lambda: 1000)

    await discovery.fetch_spots(-6.2, 106.816666)

    failing = _FailingStore()
    cached_discovery = SpotDiscovery(failing, cache, clock=lambda: 1000)
    # A nearby center in the same precision-5 cell hits the same entry.
    again = await cached_discovery.fetch_spots(-6.2001, 106.8167)
    assert [s.id for s in again] == [spot.id]
    assert failing.calls == 0

    with pytest.raises(QueryFailure):
        await cached_discovery.fetch_spots(-6.2, 106.816666, force_refresh=True)


@pytest.mark.asyncio
async def test_fetch_spots_does_not_cache_on_failure():
    cache = SpotCache(MemoryKeyValueStorage())
    with pytest.raises(QueryFailure):
        await SpotDiscovery(_FailingStore(), cache).fetch_spots(-6.2, 106.816666)
    assert await cache.storage.list_keys() == []


@pytest.mark.asyncio
async def test_fetch_spots_requeries_when_cached_payload_is_unreadable():
    store = InMemoryDocumentStore()
    spot = await create_spot(store, lat=-6.2, lng=106.816666, location_name="Es Buah", created_by="u1", now=0)
    cache = SpotCache(MemoryKeyValueStorage(), clock=lambda: 1000)
    key = spot_cache_key(-6.2, 106.816666)
    await cache.set(key, [{"id": "bad"}])

    found = await SpotDiscovery(store, cache, clock=lambda: 1000).fetch_spots(-6.2, 106.816666)
    assert [s.id for s in found] == [spot.id]
    # The unreadable entry was replaced by the fresh result.
    assert [d["id"] for d in await cache.get(key)] == [spot.id]


@pytest.mark.asyncio
async def test_fetch_spots_cache_entry_ignores_radius():
    store = InMemoryDocumentStore()
    near = await create_spot(store, lat=-6.2, lng=106.816666, location_name="Kolak", created_by="u1", now=0)
    cache = SpotCache(MemoryKeyValueStorage(), clock=lambda: 1000)
    discovery = SpotDiscovery(store, cache, clock=lambda: 1000)

    assert [s.id for s in await discovery.fetch_spots(-6.2, 106.816666, 100)] == [near.id]
    far = await create_spot(store, lat=-6.2, lng=106.906666, location_name="Es Teler", created_by="u1", now=0)

    # Same center cell, so the 100 m result answers the 50 km query.
    assert [s.id for s in await discovery.fetch_spots(-6.2, 106.816666, 50000)] == [near.id]
    refreshed = await discovery.fetch_spots(-6.2, 106.816666, 50000, force_refresh=True)
    assert {s.id for s in refreshed} == {near.id, far.id}

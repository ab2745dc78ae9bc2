from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Optional

from pydantic import ValidationError

from document_store import DocumentStore
from geohash_codec import (
    BITS_PER_CHAR,
    base32_char,
    base32_index,
    distance_km,
    geohash_decode_bounds,
    geohash_encode,
    validate_coordinate,
)
from models import Spot
from spot_cache import SpotCache, spot_cache_key
from spot_time import now_ms

"""
Radius discovery over a geohash-ordered index.

Three stages, each testable on its own:
  plan_query     center + radius -> covering set of [start, end] geohash ranges
  execute_query  one range query per interval, issued concurrently
  filter_results flatten, drop expired, dedupe by id

The covering set is a superset of the circle. No exact-radius filter is applied
by default; `within_radius` is available to callers that want one.
"""

logger = logging.getLogger(__name__)

SPOTS_COLLECTION = "spots"
GEOHASH_ORDER_KEY = "location.geohash"
DEFAULT_RADIUS_M = 2000
QUERY_LIMIT = 30

METERS_PER_DEGREE_LATITUDE = 110574.0
EARTH_MERIDIONAL_CIRCUMFERENCE_M = 40007860.0
EARTH_EQUATORIAL_RADIUS_M = 6378137.0
EARTH_E2 = 0.00669447819799
EPSILON = 1e-12
MAXIMUM_BITS_PRECISION = 22 * BITS_PER_CHAR
# Circles that reach a pole are covered one whole latitude band at a time.
POLAR_MAXIMUM_BITS = 2 * BITS_PER_CHAR


class QueryFailure(RuntimeError):
    pass


def _wrap_longitude(lng: float) -> float:
    if -180.0 <= lng <= 180.0:
        return lng
    adjusted = lng + 180.0
    if adjusted > 0:
        return (adjusted % 360.0) - 180.0
    return 180.0 - (-adjusted % 360.0)


def meters_to_longitude_degrees(distance_m: float, lat: float) -> float:
    radians = math.radians(lat)
    num = math.cos(radians) * EARTH_EQUATORIAL_RADIUS_M * math.pi / 180.0
    denom = 1.0 / math.sqrt(1.0 - EARTH_E2 * math.sin(radians) * math.sin(radians))
    delta_deg = num * denom
    if delta_deg < EPSILON:
        return 360.0 if distance_m > 0 else 0.0
    return min(360.0, distance_m / delta_deg)


def _longitude_bits_for_resolution(resolution_m: float, lat: float) -> float:
    degs = meters_to_longitude_degrees(resolution_m, lat)
    return max(1.0, math.log2(360.0 / degs)) if abs(degs) > 0.000001 else 1.0


def _latitude_bits_for_resolution(resolution_m: float) -> float:
    return min(math.log2(EARTH_MERIDIONAL_CIRCUMFERENCE_M / 2.0 / resolution_m), MAXIMUM_BITS_PRECISION)


def bounding_box_bits(lat: float, lng: float, radius_m: float) -> int:
    """
    Number of geohash bits whose cell is at least as large as the search area.
    """
    lat_delta = radius_m / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, lat + lat_delta)
    lat_south = max(-90.0, lat - lat_delta)
    bits_lat = math.floor(_latitude_bits_for_resolution(radius_m)) * 2
    bits_lng_north = math.floor(_longitude_bits_for_resolution(radius_m, lat_north)) * 2 - 1
    bits_lng_south = math.floor(_longitude_bits_for_resolution(radius_m, lat_south)) * 2 - 1
    return int(min(bits_lat, bits_lng_north, bits_lng_south, MAXIMUM_BITS_PRECISION))


def bounding_box_points(lat: float, lng: float, radius_m: float) -> list[tuple[float, float]]:
    """
    Center plus the eight corners and edge midpoints of the radius bounding box.
    """
    lat_degrees = radius_m / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, lat + lat_degrees)
    lat_south = max(-90.0, lat - lat_degrees)
    lng_degrees = max(
        meters_to_longitude_degrees(radius_m, lat_north),
        meters_to_longitude_degrees(radius_m, lat_south),
    )
    west = _wrap_longitude(lng - lng_degrees)
    east = _wrap_longitude(lng + lng_degrees)
    return [
        (lat, lng),
        (lat, west),
        (lat, east),
        (lat_north, lng),
        (lat_north, west),
        (lat_north, east),
        (lat_south, lng),
        (lat_south, west),
        (lat_south, east),
    ]


def spans_all_longitudes(lat: float, radius_m: float) -> bool:
    """
    True when the radius box touches a pole or is at least half the globe wide.
    Wrapping the box edges stops working there: at the pole the longitude
    extent is 360 degrees and both edges land back on the center longitude.
    """
    lat_degrees = radius_m / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, lat + lat_degrees)
    lat_south = max(-90.0, lat - lat_degrees)
    if lat_north >= 90.0 or lat_south <= -90.0:
        return True
    lng_degrees = max(
        meters_to_longitude_degrees(radius_m, lat_north),
        meters_to_longitude_degrees(radius_m, lat_south),
    )
    return lng_degrees >= 180.0


def polar_band_bits(radius_m: float) -> int:
    bits_lat = math.floor(_latitude_bits_for_resolution(radius_m)) * 2
    return max(1, min(bits_lat, POLAR_MAXIMUM_BITS))


def polar_band_points(lat: float, lng: float, radius_m: float, precision: int) -> list[tuple[float, float]]:
    """
    One sample per `precision` cell across every longitude of the latitude band
    the circle spans.
    """
    lat_degrees = radius_m / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, lat + lat_degrees)
    lat_south = max(-90.0, lat - lat_degrees)
    cell_lat_min, cell_lat_max, cell_lng_min, cell_lng_max = geohash_decode_bounds(
        geohash_encode(lat, lng, precision=precision)
    )
    cell_height = cell_lat_max - cell_lat_min
    cell_width = cell_lng_max - cell_lng_min

    rows = [lat_south + i * cell_height for i in range(int((lat_north - lat_south) / cell_height) + 1)]
    rows.append(lat_north)
    columns = [-180.0 + (i + 0.5) * cell_width for i in range(round(360.0 / cell_width))]
    return [(p_lat, p_lng) for p_lat in rows for p_lng in columns]


def geohash_range(geohash: str, bits: int) -> tuple[str, str]:
    """
    The [start, end] string range holding every geohash inside the `bits`-bit
    cell that contains `geohash`. "~" sorts after every base-32 character.
    """
    precision = math.ceil(bits / BITS_PER_CHAR)
    if len(geohash) < precision:
        return geohash, geohash + "~"
    ghash = geohash[:precision]
    base = ghash[:-1]
    last_value = base32_index(ghash[-1])
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits
    start_value = (last_value >> unused_bits) << unused_bits
    end_value = start_value + (1 << unused_bits)
    if end_value > 31:
        return base + base32_char(start_value), base + "~"
    return base + base32_char(start_value), base + base32_char(end_value)


def plan_query(lat: float, lng: float, radius_m: float = DEFAULT_RADIUS_M) -> list[tuple[str, str]]:
    """
    Covering set of geohash ranges for a circle, sorted and without duplicates.

    Every point within `radius_m` of the center hashes into one of the ranges;
    points outside the circle may too.
    """
    lat, lng = validate_coordinate(lat, lng)
    radius_m = float(radius_m)
    if not radius_m > 0:
        raise ValueError("Search radius must be positive.")

    if spans_all_longitudes(lat, radius_m):
        query_bits = polar_band_bits(radius_m)
        precision = math.ceil(query_bits / BITS_PER_CHAR)
        points = polar_band_points(lat, lng, radius_m, precision)
    else:
        query_bits = max(1, bounding_box_bits(lat, lng, radius_m))
        precision = math.ceil(query_bits / BITS_PER_CHAR)
        points = bounding_box_points(lat, lng, radius_m)

    ranges = {
        geohash_range(geohash_encode(p_lat, p_lng, precision=precision), query_bits)
        for p_lat, p_lng in points
    }
    return sorted(ranges)


async def execute_query(
    store: DocumentStore,
    intervals: Sequence[tuple[str, str]],
    *,
    limit: int = QUERY_LIMIT,
) -> list[list[dict[str, Any]]]:
    """
    Issue one range query per interval concurrently and wait for all of them.
    Any failing interval fails the whole call; there is no partial merge.
    """
    queries = [
        store.range_query(SPOTS_COLLECTION, GEOHASH_ORDER_KEY, start, end, limit)
        for start, end in intervals
    ]
    try:
        return list(await asyncio.gather(*queries))
    except Exception as e:
        raise QueryFailure(f"Range query failed: {e}") from e


def filter_results(batches: Iterable[Iterable[dict[str, Any]]], *, now: Optional[int] = None) -> list[Spot]:
    current = now_ms() if now is None else int(now)
    seen: set[str] = set()
    out: list[Spot] = []
    for batch in batches:
        for doc in batch:
            spot = Spot.model_validate(doc)
            if spot.expires_at <= current:
                continue
            if spot.id in seen:
                continue
            seen.add(spot.id)
            out.append(spot)
    return out


def within_radius(spots: Iterable[Spot], lat: float, lng: float, radius_m: float) -> list[Spot]:
    radius_km = float(radius_m) / 1000.0
    return [
        s for s in spots if distance_km(lat, lng, s.location.latitude, s.location.longitude) <= radius_km
    ]


class SpotDiscovery:
    """
    Cache-aside discovery: read the coarse-bucket cache, otherwise plan, fetch
    and filter, then write the result back to the cache.
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: SpotCache,
        *,
        query_limit: int = QUERY_LIMIT,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.cache = cache
        self.query_limit = int(query_limit)
        self._clock = clock

    async def fetch_spots(
        self,
        lat: float,
        lng: float,
        radius_m: float = DEFAULT_RADIUS_M,
        *,
        force_refresh: bool = False,
    ) -> list[Spot]:
        """
        Spots whose geohash falls in the cells covering the circle.

        The cache key is the center's precision-5 cell alone. A result stored
        for a small radius is returned for any radius queried from the same
        cell until it expires; `force_refresh` skips the cache read.
        """
        intervals = plan_query(lat, lng, radius_m)
        key = spot_cache_key(lat, lng)

        if not force_refresh:
            cached = await self.cache.get(key)
            if cached:
                try:
                    # Cached copies may have expired since they were written.
                    return filter_results([cached], now=self._clock())
                except (ValidationError, TypeError):
                    logger.warning("Discarding unreadable cached spots for %s", key, exc_info=True)
                    await self.cache.delete(key)

        batches = await execute_query(self.store, intervals, limit=self.query_limit)
        spots = filter_results(batches, now=self._clock())
        logger.debug(
            "Fetched %d spots near (%.5f, %.5f) r=%sm over %d ranges",
            len(spots), lat, lng, radius_m, len(intervals),
        )
        await self.cache.set(key, [s.model_dump() for s in spots])
        return spots

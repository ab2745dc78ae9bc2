from __future__ import annotations

import math

"""
Geohash encoding and great-circle distance for spot discovery.

Spots are indexed by a precision-9 geohash so that a radius search can be
expressed as a handful of string-range queries over that key.
"""

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BITS_PER_CHAR = 5

EARTH_RADIUS_KM = 6371.0


class InvalidCoordinate(ValueError):
    pass


def validate_coordinate(lat: float, lng: float) -> tuple[float, float]:
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"Coordinates must be numbers, got ({lat!r}, {lng!r}).")
    if math.isnan(lat_f) or not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinate(f"Latitude {lat!r} is outside [-90, 90].")
    if math.isnan(lng_f) or not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinate(f"Longitude {lng!r} is outside [-180, 180].")
    return lat_f, lng_f


def geohash_encode(lat: float, lng: float, *, precision: int = 9) -> str:
    """
    Encode lat/lng into a geohash string.
    Precision 9 is a few meters (spot location); precision 5 is ~4.9km (cache bucket).
    """
    lat, lng = validate_coordinate(lat, lng)
    if int(precision) < 1:
        raise ValueError("Geohash precision must be at least 1.")

    lat_min, lat_max = -90.0, 90.0
    lng_min, lng_max = -180.0, 180.0

    out = []
    val = 0
    nbits = 0
    even = True
    while len(out) < precision:
        if even:
            mid = (lng_min + lng_max) / 2.0
            if lng >= mid:
                val = (val << 1) | 1
                lng_min = mid
            else:
                val = val << 1
                lng_max = mid
        else:
            mid = (lat_min + lat_max) / 2.0
            if lat >= mid:
                val = (val << 1) | 1
                lat_min = mid
            else:
                val = val << 1
                lat_max = mid
        even = not even
        nbits += 1
        if nbits == BITS_PER_CHAR:
            out.append(_BASE32[val])
            val = 0
            nbits = 0
    return "".join(out)


def geohash_decode_bounds(geohash: str) -> tuple[float, float, float, float]:
    """
    Return the cell of a geohash as (lat_min, lat_max, lng_min, lng_max).
    """
    lat_min, lat_max = -90.0, 90.0
    lng_min, lng_max = -180.0, 180.0
    even = True
    for ch in geohash:
        idx = _BASE32.find(ch)
        if idx < 0:
            raise ValueError(f"Invalid geohash character {ch!r} in {geohash!r}.")
        for shift in range(BITS_PER_CHAR - 1, -1, -1):
            bit = (idx >> shift) & 1
            if even:
                mid = (lng_min + lng_max) / 2.0
                if bit:
                    lng_min = mid
                else:
                    lng_max = mid
            else:
                mid = (lat_min + lat_max) / 2.0
                if bit:
                    lat_min = mid
                else:
                    lat_max = mid
            even = not even
    return lat_min, lat_max, lng_min, lng_max


def base32_index(ch: str) -> int:
    return _BASE32.index(ch)


def base32_char(idx: int) -> str:
    return _BASE32[idx]


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    # haversine
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    a = min(1.0, a)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_distance(km: float) -> str:
    if km < 1:
        return f"{round(km * 1000)}m"
    return f"{km:.1f}km"

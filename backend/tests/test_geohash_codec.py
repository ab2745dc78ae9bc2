from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from geohash_codec import InvalidCoordinate, distance_km, format_distance, geohash_decode_bounds, geohash_encode


def test_encode_known_value():
    assert geohash_encode(57.64911, 10.40744, precision=11) == "u4pruydqqvj"
    assert geohash_encode(37.7749, -122.4194, precision=5) == "9q8yy"


def test_encode_is_deterministic_and_prefix_ordered():
    a = geohash_encode(-6.2, 106.816666, precision=9)
    assert a == geohash_encode(-6.2, 106.816666, precision=9)
    assert len(a) == 9
    assert geohash_encode(-6.2, 106.816666, precision=5) == a[:5]


@pytest.mark.parametrize("lat,lng", [(90.5, 0), (-91, 10), (0, 180.01), (0, -200), (float("nan"), 0), ("x", 1)])
def test_encode_rejects_invalid_coordinates(lat, lng):
    with pytest.raises(InvalidCoordinate):
        geohash_encode(lat, lng)


def test_encode_accepts_range_edges():
    for lat, lng in [(90, 180), (-90, -180), (0, 0)]:
        assert len(geohash_encode(lat, lng, precision=6)) == 6


def test_decode_bounds_contain_point():
    lat, lng = 51.5074, -0.1278
    lat_min, lat_max, lng_min, lng_max = geohash_decode_bounds(geohash_encode(lat, lng, precision=7))
    assert lat_min <= lat <= lat_max
    assert lng_min <= lng <= lng_max


def test_distance_symmetric_and_zero():
    paris = (48.8566, 2.3522)
    london = (51.5074, -0.1278)
    d1 = distance_km(*paris, *london)
    d2 = distance_km(*london, *paris)
    assert d1 == pytest.approx(d2)
    assert 340 < d1 < 347
    assert distance_km(*paris, *paris) == 0


def test_format_distance():
    assert format_distance(0.5) == "500m"
    assert format_distance(0.0424) == "42m"
    assert format_distance(1.234) == "1.2km"

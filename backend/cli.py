from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import main as api  # reuse the API server's store and cache
from geohash_codec import InvalidCoordinate, distance_km, format_distance
from models import Spot
from spot_query import DEFAULT_RADIUS_M, QueryFailure


def _print_spots(spots: list[Spot], lat: float, lng: float, limit: int = 20) -> None:
    if not spots:
        print("No spots nearby.")
        return
    ranked = sorted(spots, key=lambda s: distance_km(lat, lng, s.location.latitude, s.location.longitude))
    for s in ranked[:limit]:
        km = distance_km(lat, lng, s.location.latitude, s.location.longitude)
        print(f"- {s.location_name or s.id} [{s.status}] {format_distance(km)}".strip())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spots", description="Spot discovery tools")
    sub = parser.add_subparsers(dest="command", required=True)

    nearby = sub.add_parser("nearby", help="List live spots around a point")
    nearby.add_argument("lat", type=float)
    nearby.add_argument("lng", type=float)
    nearby.add_argument("--radius", type=int, default=DEFAULT_RADIUS_M, help="meters")
    nearby.add_argument("--refresh", action="store_true", help="bypass the local cache")

    sub.add_parser("sweep-cache", help="Evict stale cache entries")
    sub.add_parser("clear-cache", help="Drop every cache entry")
    return parser


async def _run(args: argparse.Namespace) -> int:
    if args.command == "nearby":
        try:
            spots = await api._discovery().fetch_spots(args.lat, args.lng, args.radius, force_refresh=args.refresh)
        except (InvalidCoordinate, QueryFailure) as e:
            print(f"Could not load nearby results: {e}", file=sys.stderr)
            return 1
        _print_spots(spots, args.lat, args.lng)
        return 0

    if args.command == "sweep-cache":
        evicted = await api._CACHE.sweep()
        print(f"Evicted {evicted} stale cache entries.")
        return 0

    await api._CACHE.clear()
    print("Cache cleared.")
    return 0


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())

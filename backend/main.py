from __future__ import annotations

import logging
import os
from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from document_store import InMemoryDocumentStore
from geohash_codec import InvalidCoordinate, distance_km, format_distance
from models import AbuseReportReason, AbuseReportResult, Comment, Report, ReportImage, Spot, SpotImage, SpotStatus
from spot_cache import SpotCache, SqliteKeyValueStorage
from spot_moderation import (
    CommentNotFound,
    SpotNotFound,
    StaleValueConflict,
    add_comment,
    add_report,
    create_spot,
    delete_comment,
    get_spot,
    get_spot_reports,
    submit_abuse_report,
    update_comment,
    update_spot,
)
from spot_query import DEFAULT_RADIUS_M, QUERY_LIMIT, QueryFailure, SpotDiscovery, within_radius
from spot_time import CACHE_TTL_MS


def _load_env_file(path: str) -> None:
    """
    Minimal dotenv loader (no extra dependency).
    Loads KEY=VALUE lines into os.environ without overriding already-set vars.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if key:
                    os.environ.setdefault(key, value.strip().strip("'").strip('"'))
    except FileNotFoundError:
        return


# Auto-load backend/.env if present (useful for local dev).
_load_env_file(os.path.join(os.path.dirname(__file__), ".env"))

logger = logging.getLogger("uvicorn.error")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _cors_origins() -> list[str]:
    raw = os.getenv("SPOT_CORS_ORIGINS") or "http://localhost:3000,http://127.0.0.1:3000"
    return [o.strip() for o in raw.split(",") if o.strip()]


class CreateSpotRequest(BaseModel):
    lat: float
    lng: float
    location_name: str = Field(min_length=1)
    status: SpotStatus = "available"
    address: Optional[str] = None
    description: Optional[str] = None
    price_range: Optional[Literal["under_10k", "10k_20k", "above_20k"]] = None
    images: list[SpotImage] = Field(default_factory=list)
    is_seller_managed: bool = False
    seller_contact: Optional[str] = None


class StatusReportRequest(BaseModel):
    status: SpotStatus
    note: Optional[str] = None
    images: list[ReportImage] = Field(default_factory=list)
    is_verified: bool = False
    reported_at: Optional[int] = None


class AbuseReportRequest(BaseModel):
    reason: AbuseReportReason
    note: Optional[str] = None


class CommentRequest(BaseModel):
    text: str = Field(min_length=1)


class NearbySpot(BaseModel):
    spot: Spot
    distance_km: float
    distance_label: str


class NearbyResponse(BaseModel):
    items: list[NearbySpot] = Field(default_factory=list)
    count: int = 0


app = FastAPI(title="Spot Discovery API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# The hosted document store is external; the dev server runs against the in-memory one.
_STORE = InMemoryDocumentStore()
_CACHE = SpotCache(
    SqliteKeyValueStorage(os.getenv("SPOT_CACHE_DB") or os.path.join(os.path.dirname(__file__), ".spot_cache.sqlite3")),
    ttl_ms=_env_int("SPOT_CACHE_TTL_SECONDS", CACHE_TTL_MS // 1000) * 1000,
)


def _discovery() -> SpotDiscovery:
    return SpotDiscovery(_STORE, _CACHE, query_limit=_env_int("SPOT_QUERY_LIMIT", QUERY_LIMIT))


def _require_user(user_id: Optional[str]) -> str:
    uid = (user_id or "").strip()
    if not uid:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    return uid


async def _live_spot(spot_id: str) -> Spot:
    spot = await get_spot(_STORE, spot_id)
    if spot is None:
        raise HTTPException(status_code=404, detail="Spot not found.")
    return spot


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/spots/nearby", response_model=NearbyResponse)
async def spots_nearby(
    lat: float = Query(...),
    lng: float = Query(...),
    radius: int = Query(DEFAULT_RADIUS_M, ge=1, le=50000),
    status: Literal["all", "available", "low_stock", "sold_out"] = "all",
    exact: bool = False,
    refresh: bool = False,
) -> NearbyResponse:
    """
    Spots around a point. Results come from geohash cells covering the circle,
    so some may lie slightly outside `radius` unless `exact` is set.

    The local cache is keyed by the ~4.9km cell of the center only, not by
    `radius`. A cached result for a small radius is served to a later, larger
    query in the same cell until it expires; pass `refresh=true` to query the
    store for the radius asked.
    """
    try:
        spots = await _discovery().fetch_spots(lat, lng, radius, force_refresh=refresh)
    except InvalidCoordinate as e:
        raise HTTPException(status_code=422, detail=str(e))
    except QueryFailure:
        logger.exception("nearby spot discovery failed")
        raise HTTPException(status_code=502, detail="Could not load nearby results")

    if exact:
        spots = within_radius(spots, lat, lng, radius)
    if status != "all":
        spots = [s for s in spots if s.status == status]

    items = []
    for s in spots:
        km = distance_km(lat, lng, s.location.latitude, s.location.longitude)
        items.append(NearbySpot(spot=s, distance_km=round(km, 3), distance_label=format_distance(km)))
    items.sort(key=lambda it: it.distance_km)
    return NearbyResponse(items=items, count=len(items))


@app.post("/spots", response_model=Spot, status_code=201)
async def spots_create(req: CreateSpotRequest, x_user_id: Optional[str] = Header(default=None)) -> Spot:
    user_id = _require_user(x_user_id)
    try:
        return await create_spot(
            _STORE,
            lat=req.lat,
            lng=req.lng,
            location_name=req.location_name,
            created_by=user_id,
            status=req.status,
            address=req.address,
            description=req.description,
            price_range=req.price_range,
            images=req.images,
            is_seller_managed=req.is_seller_managed,
            seller_contact=req.seller_contact,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.get("/spots/{spot_id}", response_model=Spot)
async def spots_get(spot_id: str) -> Spot:
    return await _live_spot(spot_id)


@app.patch("/spots/{spot_id}", response_model=Spot)
async def spots_patch(spot_id: str, patch: Dict[str, Any], x_user_id: Optional[str] = Header(default=None)) -> Spot:
    _require_user(x_user_id)
    await _live_spot(spot_id)
    try:
        return await update_spot(_STORE, spot_id, patch)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.post("/spots/{spot_id}/reports", response_model=Report, status_code=201)
async def spots_report_status(
    spot_id: str, req: StatusReportRequest, x_user_id: Optional[str] = Header(default=None)
) -> Report:
    user_id = _require_user(x_user_id)
    await _live_spot(spot_id)
    return await add_report(
        _STORE,
        spot_id,
        status=req.status,
        reported_by=user_id,
        note=req.note,
        images=req.images,
        is_verified=req.is_verified,
        reported_at=req.reported_at,
    )


@app.get("/spots/{spot_id}/reports", response_model=list[Report])
async def spots_reports(spot_id: str) -> list[Report]:
    await _live_spot(spot_id)
    return await get_spot_reports(_STORE, spot_id)


@app.post("/spots/{spot_id}/abuse-reports", response_model=AbuseReportResult, status_code=201)
async def spots_report_abuse(
    spot_id: str, req: AbuseReportRequest, x_user_id: Optional[str] = Header(default=None)
) -> AbuseReportResult:
    user_id = _require_user(x_user_id)
    spot = await _live_spot(spot_id)
    return await submit_abuse_report(
        _STORE,
        spot_id,
        spot,
        reason=req.reason,
        reported_by=user_id,
        note=req.note,
        cache=_CACHE,
    )


def _find_comment(spot: Spot, comment_id: str) -> Comment:
    for c in spot.comments:
        if c.id == comment_id:
            return c
    raise HTTPException(status_code=404, detail="Comment not found.")


@app.post("/spots/{spot_id}/comments", response_model=Comment, status_code=201)
async def spots_comment_add(
    spot_id: str,
    req: CommentRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_user_name: str = Header(default=""),
) -> Comment:
    user_id = _require_user(x_user_id)
    await _live_spot(spot_id)
    return await add_comment(_STORE, spot_id, user_id=user_id, user_name=x_user_name, text=req.text)


@app.put("/spots/{spot_id}/comments/{comment_id}", response_model=Comment)
async def spots_comment_update(
    spot_id: str, comment_id: str, req: CommentRequest, x_user_id: Optional[str] = Header(default=None)
) -> Comment:
    user_id = _require_user(x_user_id)
    comment = _find_comment(await _live_spot(spot_id), comment_id)
    if comment.user_id != user_id:
        raise HTTPException(status_code=403, detail="Only the author can edit this comment.")
    try:
        updated = await update_comment(_STORE, spot_id, comment, req.text)
    except (SpotNotFound, CommentNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StaleValueConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return updated


@app.delete("/spots/{spot_id}/comments/{comment_id}", status_code=204)
async def spots_comment_delete(
    spot_id: str, comment_id: str, x_user_id: Optional[str] = Header(default=None)
) -> None:
    user_id = _require_user(x_user_id)
    comment = _find_comment(await _live_spot(spot_id), comment_id)
    if comment.user_id != user_id:
        raise HTTPException(status_code=403, detail="Only the author can delete this comment.")
    try:
        await delete_comment(_STORE, spot_id, comment)
    except (SpotNotFound, CommentNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StaleValueConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/cache/sweep")
async def cache_sweep() -> Dict[str, int]:
    return {"evicted": await _CACHE.sweep()}


@app.delete("/cache", status_code=204)
async def cache_clear() -> None:
    await _CACHE.clear()

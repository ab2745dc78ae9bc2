from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from typing import Any, Optional

from document_store import DocumentStore, get_path
from geohash_codec import geohash_encode, validate_coordinate
from models import (
    MAX_IMAGES_PER_SPOT,
    AbuseReport,
    AbuseReportReason,
    AbuseReportResult,
    Comment,
    Report,
    ReportImage,
    Spot,
    SpotImage,
    SpotStatus,
)
from spot_cache import SpotCache
from spot_query import SPOTS_COLLECTION
from spot_time import SPOT_TTL_MS, calculate_expiry, is_expired, now_ms

"""
Spot lifecycle and abuse moderation.

Counters are read-modify-write. When the store exposes `increment_field` the
increment happens there; otherwise the new value is derived from the snapshot
the caller holds, and concurrent reporters can under-count. That race is
cross-process and is not guarded here.
"""

logger = logging.getLogger(__name__)

SPOT_GEOHASH_PRECISION = 9
ABUSE_REMOVAL_THRESHOLD = 10
COMMENT_WRITE_ATTEMPTS = 5

EDITABLE_SPOT_FIELDS = frozenset(
    {"location_name", "address", "description", "price_range", "seller_contact", "is_seller_managed", "images"}
)


class SpotNotFound(LookupError):
    pass


class StaleValueConflict(RuntimeError):
    pass


class CommentNotFound(StaleValueConflict):
    pass


def _reports_collection(spot_id: str) -> str:
    return f"{SPOTS_COLLECTION}/{spot_id}/reports"


def _abuse_reports_collection(spot_id: str) -> str:
    return f"{SPOTS_COLLECTION}/{spot_id}/abuseReports"


async def _require_spot_doc(store: DocumentStore, spot_id: str) -> dict[str, Any]:
    doc = await store.get_by_id(SPOTS_COLLECTION, spot_id)
    if doc is None:
        raise SpotNotFound(f"Spot {spot_id} does not exist.")
    return doc


async def _increment(store: DocumentStore, spot_id: str, path: str, snapshot_value: int) -> int:
    increment = getattr(store, "increment_field", None)
    if increment is not None:
        return int(await increment(SPOTS_COLLECTION, spot_id, path, 1))
    new_value = int(snapshot_value or 0) + 1
    await store.update_fields(SPOTS_COLLECTION, spot_id, {path: new_value})
    return new_value


async def create_spot(
    store: DocumentStore,
    *,
    lat: float,
    lng: float,
    location_name: str,
    created_by: str,
    status: SpotStatus = "available",
    address: Optional[str] = None,
    description: Optional[str] = None,
    price_range: Optional[str] = None,
    images: Iterable[SpotImage | dict[str, Any]] = (),
    is_seller_managed: bool = False,
    seller_contact: Optional[str] = None,
    now: Optional[int] = None,
) -> Spot:
    lat, lng = validate_coordinate(lat, lng)
    created_at = now_ms() if now is None else int(now)
    images = [SpotImage.model_validate(i) for i in images]
    if len(images) > MAX_IMAGES_PER_SPOT:
        raise ValueError(f"A spot can have at most {MAX_IMAGES_PER_SPOT} images.")

    data = {
        "location": {
            "latitude": lat,
            "longitude": lng,
            "geohash": geohash_encode(lat, lng, precision=SPOT_GEOHASH_PRECISION),
        },
        "location_name": location_name,
        "address": address,
        "status": status,
        "last_status_update": created_at,
        "description": description,
        "price_range": price_range,
        "images": [i.model_dump() for i in images],
        "created_at": created_at,
        "created_by": created_by,
        "report_count": 0,
        "last_reported_at": 0,
        "is_seller_managed": bool(is_seller_managed),
        "seller_contact": seller_contact,
        "expires_at": calculate_expiry(created_at, ttl_ms=SPOT_TTL_MS),
        "abuse_reports_count": {},
        "comments": [],
    }
    # Fail before anything is written.
    Spot.model_validate({**data, "id": "pending"})
    spot_id = await store.add(SPOTS_COLLECTION, data)
    logger.info("Created spot %s at %s by %s", spot_id, data["location"]["geohash"], created_by)
    return Spot.model_validate({**data, "id": spot_id})


async def get_spot(store: DocumentStore, spot_id: str, *, now: Optional[int] = None) -> Optional[Spot]:
    """
    Return the spot while it is live, otherwise None.
    """
    doc = await store.get_by_id(SPOTS_COLLECTION, spot_id)
    if doc is None:
        return None
    spot = Spot.model_validate(doc)
    if is_expired(spot.expires_at, now=now):
        return None
    return spot


async def update_spot(store: DocumentStore, spot_id: str, updates: dict[str, Any]) -> Spot:
    unknown = set(updates) - EDITABLE_SPOT_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    doc = await _require_spot_doc(store, spot_id)
    merged = Spot.model_validate({**doc, **updates})
    clean = {k: v for k, v in merged.model_dump().items() if k in updates}
    await store.update_fields(SPOTS_COLLECTION, spot_id, clean)
    return merged


async def add_report(
    store: DocumentStore,
    spot_id: str,
    *,
    status: SpotStatus,
    reported_by: str,
    note: Optional[str] = None,
    images: Iterable[ReportImage | dict[str, Any]] = (),
    is_verified: bool = False,
    reported_at: Optional[int] = None,
) -> Report:
    """
    Record a status report and apply it to the spot.

    The report's timestamp is trusted as given; the latest write wins. The
    spot's expires_at is left alone.
    """
    doc = await _require_spot_doc(store, spot_id)
    at = now_ms() if reported_at is None else int(reported_at)
    data = {
        "spot_id": spot_id,
        "status": status,
        "note": note,
        "images": [ReportImage.model_validate(i).model_dump() for i in images],
        "reported_by": reported_by,
        "reported_at": at,
        "is_verified": bool(is_verified),
        "expires_at": calculate_expiry(at, ttl_ms=SPOT_TTL_MS),
    }
    Report.model_validate({**data, "id": "pending"})
    report_id = await store.add(_reports_collection(spot_id), data)

    await store.update_fields(
        SPOTS_COLLECTION,
        spot_id,
        {"status": status, "last_status_update": at, "last_reported_at": at},
    )
    await _increment(store, spot_id, "report_count", int(doc.get("report_count") or 0))
    return Report.model_validate({**data, "id": report_id})


async def get_spot_reports(store: DocumentStore, spot_id: str) -> list[Report]:
    docs = await store.list_documents(_reports_collection(spot_id), "reported_at", descending=True)
    return [Report.model_validate(d) for d in docs]


async def submit_abuse_report(
    store: DocumentStore,
    spot_id: str,
    current_spot: Spot,
    *,
    reason: AbuseReportReason,
    reported_by: str,
    note: Optional[str] = None,
    reported_at: Optional[int] = None,
    cache: Optional[SpotCache] = None,
) -> AbuseReportResult:
    """
    Record an abuse report and bump the per-reason counter.

    Reaching ABUSE_REMOVAL_THRESHOLD reports for one reason forces
    expires_at to 0, which hides the spot from discovery for good.
    """
    await _require_spot_doc(store, spot_id)
    data = {
        "spot_id": spot_id,
        "reason": reason,
        "note": note,
        "reported_by": reported_by,
        "reported_at": now_ms() if reported_at is None else int(reported_at),
    }
    AbuseReport.model_validate({**data, "id": "pending"})
    report_id = await store.add(_abuse_reports_collection(spot_id), data)

    snapshot_count = current_spot.abuse_reports_count.get(reason, 0)
    new_count = await _increment(store, spot_id, f"abuse_reports_count.{reason}", snapshot_count)

    removed = new_count >= ABUSE_REMOVAL_THRESHOLD
    if removed:
        await store.update_fields(SPOTS_COLLECTION, spot_id, {"expires_at": 0})
        logger.warning("Spot %s removed after %d %r abuse reports", spot_id, new_count, reason)
        if cache is not None:
            await cache.clear()

    return AbuseReportResult(removed=removed, report_id=report_id)


async def add_comment(
    store: DocumentStore,
    spot_id: str,
    *,
    user_id: str,
    text: str,
    user_name: str = "",
    now: Optional[int] = None,
) -> Comment:
    await _require_spot_doc(store, spot_id)
    comment = Comment(
        id=uuid.uuid4().hex,
        user_id=user_id,
        user_name=user_name,
        text=text,
        created_at=now_ms() if now is None else int(now),
    )
    await store.append_to_array_field(SPOTS_COLLECTION, spot_id, "comments", comment.model_dump())
    return comment


async def _legacy_stored_comment(store: DocumentStore, spot_id: str, comment: Comment) -> Optional[dict[str, Any]]:
    doc = await _require_spot_doc(store, spot_id)
    wanted = comment.model_dump()
    return wanted if wanted in (get_path(doc, "comments") or []) else None


async def _rewrite_comment(
    store: DocumentStore,
    spot_id: str,
    comment_id: str,
    change: Callable[[dict[str, Any]], Optional[dict[str, Any]]],
) -> dict[str, Any]:
    """
    Replace the comment with `comment_id` by `change(current)` (None drops it)
    and write the whole list back, conditional on it being unchanged since the
    read. Every entry carrying that id is replaced, so concurrent edits of one
    comment leave exactly one copy.
    """
    for _ in range(COMMENT_WRITE_ATTEMPTS):
        doc = await _require_spot_doc(store, spot_id)
        stored = get_path(doc, "comments")
        current = next((c for c in stored or [] if c.get("id") == comment_id), None)
        if current is None:
            raise CommentNotFound(f"Comment {comment_id} not found on spot {spot_id}.")
        replacement = change(current)
        comments = [c for c in stored if c.get("id") != comment_id]
        if replacement is not None:
            comments.append(replacement)
        if await store.compare_and_set_field(SPOTS_COLLECTION, spot_id, "comments", stored, comments):
            return replacement if replacement is not None else current
        logger.debug("Comments on spot %s changed during write; retrying", spot_id)
    raise StaleValueConflict(f"Comments on spot {spot_id} kept changing; comment {comment_id} was not written.")


async def update_comment(
    store: DocumentStore,
    spot_id: str,
    old_comment: Comment,
    text: str,
    *,
    legacy_value_match: bool = False,
    now: Optional[int] = None,
) -> Optional[Comment]:
    """
    Replace a comment's text, keeping its id and creation time.

    By default the comment is located by id. With legacy_value_match the exact
    prior value must still be stored; otherwise nothing changes and None is
    returned.
    """
    updated_at = now_ms() if now is None else int(now)

    def edit(current: dict[str, Any]) -> dict[str, Any]:
        return Comment.model_validate({**current, "text": text, "updated_at": updated_at}).model_dump()

    if not legacy_value_match:
        return Comment.model_validate(await _rewrite_comment(store, spot_id, old_comment.id, edit))

    current = await _legacy_stored_comment(store, spot_id, old_comment)
    if current is None:
        logger.info("Comment %s on spot %s changed underneath; update skipped", old_comment.id, spot_id)
        return None
    updated = edit(current)
    await store.remove_from_array_field(SPOTS_COLLECTION, spot_id, "comments", current)
    await store.append_to_array_field(SPOTS_COLLECTION, spot_id, "comments", updated)
    return Comment.model_validate(updated)


async def delete_comment(
    store: DocumentStore,
    spot_id: str,
    comment: Comment,
    *,
    legacy_value_match: bool = False,
) -> bool:
    if not legacy_value_match:
        await _rewrite_comment(store, spot_id, comment.id, lambda current: None)
        return True
    current = await _legacy_stored_comment(store, spot_id, comment)
    if current is None:
        return False
    await store.remove_from_array_field(SPOTS_COLLECTION, spot_id, "comments", current)
    return True

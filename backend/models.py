from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

MAX_IMAGES_PER_SPOT = 3

SpotStatus = Literal["available", "low_stock", "sold_out"]
AbuseReportReason = Literal["fraud", "misinformation", "inappropriate_image", "closed_permanently", "other"]
PriceRange = Literal["under_10k", "10k_20k", "above_20k"]


class SpotLocation(BaseModel):
    latitude: float
    longitude: float
    geohash: str


class SpotImage(BaseModel):
    url: str
    thumbnail_url: str
    # Opaque id assigned by the media host.
    public_id: str
    uploaded_at: int = 0
    uploaded_by: str = ""
    type: Literal["booth", "menu"] = "booth"


class ReportImage(BaseModel):
    url: str
    thumbnail_url: str
    public_id: str


class Comment(BaseModel):
    id: str
    user_id: str
    user_name: str = ""
    text: str
    created_at: int
    updated_at: Optional[int] = None


class Spot(BaseModel):
    id: str
    location: SpotLocation
    location_name: str = ""
    address: Optional[str] = None

    status: SpotStatus = "available"
    last_status_update: int = 0

    description: Optional[str] = None
    price_range: Optional[PriceRange] = None

    images: list[SpotImage] = Field(default_factory=list, max_length=MAX_IMAGES_PER_SPOT)

    created_at: int
    created_by: str
    report_count: int = 0
    last_reported_at: int = 0

    is_seller_managed: bool = False
    seller_contact: Optional[str] = None

    # A spot is discoverable only while expires_at > now.
    expires_at: int

    # Absent reasons count as 0.
    abuse_reports_count: dict[AbuseReportReason, int] = Field(default_factory=dict)
    comments: list[Comment] = Field(default_factory=list)


class Report(BaseModel):
    id: str
    spot_id: str
    status: SpotStatus
    note: Optional[str] = None
    images: list[ReportImage] = Field(default_factory=list)
    reported_by: str
    reported_at: int
    is_verified: bool = False
    expires_at: int


class AbuseReport(BaseModel):
    id: str
    spot_id: str
    reason: AbuseReportReason
    note: Optional[str] = None
    reported_by: str
    reported_at: int


class AbuseReportResult(BaseModel):
    removed: bool
    report_id: str


class CacheEntry(BaseModel):
    data: Any = None
    # Epoch ms of the write.
    timestamp: int

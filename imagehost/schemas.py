from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InitUploadRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    mime_type: str = Field(min_length=1)
    file_size: int = Field(gt=0)


class InitUploadResponse(BaseModel):
    upload_id: str
    part_size: int
    total_parts: int
    status: str
    expires_at: datetime


class UploadPartResponse(BaseModel):
    upload_id: str
    part_number: int
    progress_percent: int
    status: str


class ProgressResponse(BaseModel):
    upload_id: str
    progress_percent: int
    status: str
    uploaded_parts: int
    total_parts: int


class MissingPartsResponse(BaseModel):
    upload_id: str
    missing_part_numbers: list[int]
    status: str


class CompleteUploadResponse(BaseModel):
    upload_id: str
    short_code: str
    asset_url: str
    share_url: str
    status: str


class AbortUploadResponse(BaseModel):
    upload_id: str
    status: str


class ImageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    short_code: str
    file_name: str
    mime_type: str
    size: int
    batch_id: str | None = None
    created_at: datetime
    asset_url: str
    share_url: str


class ImageListResponse(BaseModel):
    count: int
    images: list[ImageResponse]


class BatchUploadResponse(BaseModel):
    batch_id: str
    batch_url: str
    qr_code: str
    count: int
    images: list[ImageResponse]


class CountEntry(BaseModel):
    key: str
    count: int


class VisitStatsResponse(BaseModel):
    short_code: str
    total_visits: int
    unique_visitors: int
    referrers: list[CountEntry]
    devices: list[CountEntry]
    countries: list[CountEntry]
    daily: list[CountEntry]
    last_visit: datetime | None = None


class SweepResponse(BaseModel):
    status: str
    requested_by: str
    expired_sessions_removed: int
    orphan_sessions_cleaned: int
    orphan_parts_deleted: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None
    progress_percent: int | None = None
    missing_part_numbers: list[int] | None = None

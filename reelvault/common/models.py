"""Pydantic models shared by the ReelVault server and client."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class InitUploadRequest(BaseModel):
    """Request to reserve capacity and open a multi-part upload."""

    file_name: str = Field(..., description="Original file name (extension is validated)")
    size: int = Field(..., description="Declared size in bytes")
    fingerprint: str = Field(..., min_length=1, description="Client-side content fingerprint")
    content_type: str = Field("application/octet-stream", description="MIME type")


class InitUploadResponse(BaseModel):
    """Session handle returned by a successful init."""

    video_id: str
    key: str
    bucket: str
    upload_id: str
    expires_at: datetime
    duplicate: bool = False


class PartTargetRequest(BaseModel):
    key: str
    upload_id: str
    part_number: int


class PartTarget(BaseModel):
    """Short-lived signed URL for exactly one part of one session."""

    url: str
    method: str = "PUT"
    part_number: int
    expires_at: datetime


class UploadedPart(BaseModel):
    part_number: int
    etag: str


class CompleteUploadRequest(BaseModel):
    key: str
    upload_id: str
    parts: list[UploadedPart] = Field(default_factory=list)


class AbortUploadRequest(BaseModel):
    key: str
    upload_id: str


class FinalizeUploadRequest(BaseModel):
    key: str
    fingerprint: str = Field(..., min_length=1)
    original_name: Optional[str] = None
    content_type: Optional[str] = None


class FinalizeUploadResponse(BaseModel):
    ok: bool = True
    video_id: str
    duplicate: bool = False


class DuplicateCheckResponse(BaseModel):
    duplicate: bool
    video_id: Optional[str] = None


class DeleteVideosRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_id: Optional[str] = Field(None, alias="videoId")
    video_ids: list[str] = Field(default_factory=list, alias="videoIds")

    def unique_ids(self) -> list[str]:
        """Requested ids, trimmed and de-duplicated in request order."""
        raw = list(self.video_ids)
        if self.video_id:
            raw.append(self.video_id)
        seen: dict[str, None] = {}
        for vid in raw:
            vid = str(vid).strip()
            if vid:
                seen.setdefault(vid, None)
        return list(seen)


class DeleteVideosResponse(BaseModel):
    ok: bool = True
    count: int = Field(0, description="Number of distinct ids requested")
    accepted: list[str] = Field(default_factory=list, description="Transitioned to DELETING and enqueued")
    already_deleting: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class QuotaInfo(BaseModel):
    """Quota profile as shown to the user."""

    quota_bytes: int
    used_bytes: int
    reserved_bytes: int
    videos_count: int
    available_bytes: int
    usage_percent: float
    created_at: Optional[datetime] = None


class MetadataUpdateRequest(BaseModel):
    """Enrichment callback payload (capture/technical metadata, thumbnail)."""

    metadata: dict[str, Any] = Field(default_factory=dict)
    thumbnail_bucket: Optional[str] = None
    thumbnail_key: Optional[str] = None


class ReconcileReport(BaseModel):
    """Outcome of one reconciler pass."""

    expired_reservations: int = 0
    released_bytes: int = 0
    scanned: int = 0
    deleted: int = 0
    skipped: int = 0
    truncated: bool = False
    ledger_corrections: int = 0
    requeued_deletions: int = 0


class ServerInfo(BaseModel):
    version: str
    state_backend: str
    object_store: str
    max_upload_bytes: int
    allowed_extensions: list[str]
    part_url_ttl: int


class ErrorResponse(BaseModel):
    error: str
    message: str
    duplicate: bool = False

"""Records kept in the transactional key-value store."""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from reelvault.common.constants import FINGERPRINT_PATTERN
from reelvault.server.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoStatus(str, Enum):
    """Lifecycle of a committed video."""

    READY = "READY"
    DELETING = "DELETING"


class StateRecord(BaseModel):
    """Base for records serialised as JSON documents."""

    def to_state_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_state(self) -> str:
        return json.dumps(self.to_state_dict())

    @classmethod
    def from_state(cls, raw: str):  # type: ignore[no-untyped-def]
        return cls.model_validate_json(raw)


class UserQuotaProfile(StateRecord):
    """Per-user ledger. Invariant: used + reserved <= quota + GRACE."""

    user_id: str
    quota_bytes: int = Field(..., ge=0)
    used_bytes: int = Field(0, ge=0)
    reserved_bytes: int = Field(0, ge=0)
    videos_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def available_bytes(self) -> int:
        return max(0, self.quota_bytes - self.used_bytes - self.reserved_bytes)

    @property
    def usage_percent(self) -> float:
        if self.quota_bytes <= 0:
            return 100.0
        return round((self.used_bytes + self.reserved_bytes) * 100.0 / self.quota_bytes, 2)


class UploadReservation(StateRecord):
    """Capacity held by one in-flight upload session."""

    video_id: str
    object_key: str
    upload_id: str
    size_bytes: int = Field(..., gt=0)
    file_name: str
    content_type: str = "application/octet-stream"
    fingerprint: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class ContentHashLock(StateRecord):
    """At most one per (user, fingerprint); created only by the commit transaction."""

    fingerprint: str
    video_id: str
    created_at: datetime = Field(default_factory=utcnow)


class VideoRecord(StateRecord):
    """A committed video in the user's library."""

    video_id: str
    user_id: str
    object_key: str
    object_bucket: str
    original_name: str
    content_type: str = "application/octet-stream"
    size: int = Field(..., ge=0)
    fingerprint: str
    status: VideoStatus = VideoStatus.READY
    thumbnail_bucket: Optional[str] = None
    thumbnail_key: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict, description="Capture and technical metadata")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


# Key separators and characters that cannot be quoted in every backend's scan glob
_RESERVED_USER_CHARS = (":", "/", "*", "\\")


def normalize_user_id(user_id: str) -> str:
    """Canonical user namespace: trimmed, lower-cased, no key separators."""
    normalized = (user_id or "").strip().lower()
    if not normalized or any(c in normalized for c in _RESERVED_USER_CHARS):
        raise ValidationError("Invalid user id")
    return normalized


_FINGERPRINT_RE = re.compile(FINGERPRINT_PATTERN)


def validate_fingerprint(fingerprint: str) -> str:
    """Fingerprints become key segments, so only plain tokens are accepted."""
    if not fingerprint:
        raise ValidationError("Missing content fingerprint")
    if not _FINGERPRINT_RE.fullmatch(fingerprint):
        raise ValidationError("Invalid content fingerprint")
    return fingerprint

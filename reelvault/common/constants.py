"""Constants for ReelVault."""

from typing import Optional

# Upload validation
ALLOWED_EXTENSIONS = ["mov", "mp4", "hevc", "m4v"]

# Largest single upload accepted: 1GB
MAX_UPLOAD_BYTES = 1024 * 1024 * 1024

# Quota defaults for lazily created profiles
DEFAULT_QUOTA_BYTES = 256 * 1024 * 1024 * 1024  # 256GB

# Overshoot tolerated by the ledger invariant: used + reserved <= quota + GRACE
GRACE_BYTES = 1024 * 1024 * 1024  # 1GB

# Reservation lifetime before the reconciler may reclaim it (seconds) - 1 day
RESERVATION_TTL_SECONDS = 24 * 60 * 60

# Signed part URL lifetime (seconds)
PART_URL_TTL_SECONDS = 900

# Multi-part limits (S3 compatible)
MAX_PART_NUMBER = 10000
DEFAULT_PART_SIZE = 16 * 1024 * 1024  # 16MB
MIN_PART_SIZE = 5 * 1024 * 1024  # 5MB

# Compare-and-swap attempts for ledger reservation
RESERVE_MAX_ATTEMPTS = 3

# Items per underlying batch primitive (queue send / delete fan-out)
BATCH_CHUNK_SIZE = 10

# Leading bytes hashed into a content fingerprint: 4MB
FINGERPRINT_CHUNK_SIZE = 4 * 1024 * 1024

# Accepted fingerprint tokens; the client sends a SHA-256 hex digest
FINGERPRINT_PATTERN = r"^[A-Za-z0-9._-]{1,128}$"

# Object layout
UPLOAD_PREFIX = "video/"
THUMBNAIL_SUFFIX = ".jpg"
MAX_SAFE_NAME_LENGTH = 180

# Default server port
DEFAULT_SERVER_PORT = 8780

# Default Redis URL
DEFAULT_REDIS_URL = "redis://localhost:6379/0"

# Header names
AUTH_HEADER = "X-API-Token"
USER_HEADER = "X-User-Id"

# Deletion queue
DELETE_QUEUE_NAME = "delete-video"
QUEUE_VISIBILITY_TIMEOUT = 60  # seconds
QUEUE_MAX_RECEIVES = 5


class StateKeys:
    """Key layout in the transactional key-value store."""

    USER_PREFIX = "rv:user:"
    QUEUE_PREFIX = "rv:queue:"
    DEAD_LETTER_PREFIX = "rv:dlq:"

    PROFILE = "profile"
    RESERVE = "reserve"
    HASH = "hash"
    VIDEO = "video"

    @classmethod
    def user(cls, user_id: str, record_type: str, suffix: str = "") -> str:
        key = f"{cls.USER_PREFIX}{user_id}:{record_type}"
        return f"{key}:{suffix}" if suffix else key

    @classmethod
    def profile(cls, user_id: str) -> str:
        return cls.user(user_id, cls.PROFILE)

    @classmethod
    def reservation(cls, user_id: str, video_id: str) -> str:
        return cls.user(user_id, cls.RESERVE, video_id)

    @classmethod
    def content_hash(cls, user_id: str, fingerprint: str) -> str:
        return cls.user(user_id, cls.HASH, fingerprint)

    @classmethod
    def video(cls, user_id: str, video_id: str) -> str:
        return cls.user(user_id, cls.VIDEO, video_id)

    @staticmethod
    def escape(segment: str) -> str:
        """Quote glob metacharacters so ``segment`` only matches itself in a scan."""
        return "".join(f"[{c}]" if c in "*?[" else c for c in segment)

    @classmethod
    def scan_pattern(cls, user_id: str, record_type: str) -> str:
        """Pattern for every ``record_type`` key of one user, or of all users with ``"*"``."""
        owner = "*" if user_id == "*" else cls.escape(user_id)
        return f"{cls.USER_PREFIX}{owner}:{record_type}:*"

    @classmethod
    def parse(cls, key: str) -> Optional[tuple[str, str, str]]:
        """Split a user key into ``(user_id, record_type, suffix)``; None if it is not one."""
        if not key.startswith(cls.USER_PREFIX):
            return None
        parts = key[len(cls.USER_PREFIX) :].split(":", 2)
        if len(parts) == 2:
            parts.append("")
        return (parts[0], parts[1], parts[2]) if len(parts) == 3 else None

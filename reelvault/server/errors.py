"""Error taxonomy for the upload-lifecycle core.

Every error carries the HTTP status it maps to; a single FastAPI exception
handler turns them into JSON responses.
"""

from typing import Any


class ReelVaultError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(ReelVaultError):
    """Bad extension, size out of bounds, malformed parts. Never retried."""

    status_code = 400
    code = "validation_error"


class ForbiddenKeyError(ReelVaultError):
    """Object key outside the caller's user namespace."""

    status_code = 403
    code = "forbidden"


class VideoNotFoundError(ReelVaultError):
    status_code = 404
    code = "video_not_found"


class QuotaExceededError(ReelVaultError):
    """Not enough capacity (or ledger contention exhausted the retry bound)."""

    status_code = 507
    code = "quota_exceeded"


class DuplicateContentError(ReelVaultError):
    """Normal outcome: the content is already in the library, skip the transfer."""

    status_code = 409
    code = "duplicate_content"

    def __init__(self, message: str = "Duplicate content", video_id: str = "") -> None:
        super().__init__(message, duplicate=True, video_id=video_id)
        self.video_id = video_id


class ReservationNotFoundError(ReelVaultError):
    """Session already finalized or aborted (lost race or stale session)."""

    status_code = 409
    code = "reservation_not_found"


class TransactionConflictError(ReelVaultError):
    """Optimistic write kept conflicting after the bounded retries."""

    status_code = 409
    code = "transaction_conflict"


class UpstreamStorageError(ReelVaultError):
    """Object store or key-value store failure. Not auto-retried by the core."""

    status_code = 502
    code = "upstream_storage_error"

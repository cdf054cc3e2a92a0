"""Upload session handle and its state machine."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UploadState(str, Enum):
    """Lifecycle of one upload session.

    PENDING -> RESERVED -> TRANSFERRING -> FINALIZING -> one terminal state.

    Parts go straight to the object store, so TRANSFERRING is only observed
    at finalize, once the assembled object is confirmed to exist.
    """

    PENDING = "PENDING"
    RESERVED = "RESERVED"
    TRANSFERRING = "TRANSFERRING"
    FINALIZING = "FINALIZING"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"
    DUPLICATE = "DUPLICATE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({UploadState.COMMITTED, UploadState.ABORTED, UploadState.DUPLICATE, UploadState.FAILED})

_TRANSITIONS: dict[UploadState, frozenset[UploadState]] = {
    UploadState.PENDING: frozenset({UploadState.RESERVED, UploadState.DUPLICATE, UploadState.FAILED}),
    UploadState.RESERVED: frozenset({UploadState.TRANSFERRING, UploadState.FINALIZING, UploadState.ABORTED}),
    UploadState.TRANSFERRING: frozenset({UploadState.FINALIZING, UploadState.ABORTED, UploadState.FAILED}),
    UploadState.FINALIZING: frozenset(
        {UploadState.COMMITTED, UploadState.DUPLICATE, UploadState.FAILED, UploadState.ABORTED}
    ),
}


class InvalidTransition(Exception):
    pass


class UploadSession(BaseModel):
    """What the caller holds while an upload is in flight."""

    user_id: str
    video_id: str = ""
    object_key: str = ""
    bucket: str = ""
    upload_id: str = ""
    size_bytes: int = 0
    fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None
    state: UploadState = UploadState.PENDING
    error: Optional[str] = Field(None, description="Reason for FAILED / DUPLICATE")

    def advance(self, target: UploadState, error: Optional[str] = None) -> "UploadSession":
        if self.state == target:
            return self
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target
        if error:
            self.error = error
        return self

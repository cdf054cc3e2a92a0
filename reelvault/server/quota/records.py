"""Video record store."""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from reelvault.common.constants import THUMBNAIL_SUFFIX, UPLOAD_PREFIX, StateKeys
from reelvault.server.errors import TransactionConflictError, VideoNotFoundError
from reelvault.server.quota.models import VideoRecord, VideoStatus, utcnow
from reelvault.server.services.transaction import (
    CompareAndSwap,
    ConditionalUpdate,
    Delete,
    Insert,
    RetriesExhausted,
    Transaction,
    TransactionCanceled,
)

if TYPE_CHECKING:
    from reelvault.server.services.state import StateManager

logger = logging.getLogger("reelvault.server.records")


class DeleteOutcome(str, Enum):
    """Result of requesting deletion of one video."""

    ACCEPTED = "accepted"
    ALREADY_DELETING = "already_deleting"
    MISSING = "missing"


def thumbnail_key_for(user_id: str, video_id: str) -> str:
    """Derived thumbnail location in the thumbnail bucket."""
    return f"{UPLOAD_PREFIX}{user_id}/{video_id}{THUMBNAIL_SUFFIX}"


class VideoRecordStore:
    """CRUD on ``VideoRecord`` documents.

    Records are only ever created by the finalize transaction (``create_op``)
    and only removed by the deletion worker (``remove_op``).
    """

    def __init__(self, state: "StateManager") -> None:
        self.state = state

    @staticmethod
    def key(user_id: str, video_id: str) -> str:
        return StateKeys.video(user_id, video_id)

    async def get(self, user_id: str, video_id: str) -> Optional[VideoRecord]:
        raw = await self.state.get(self.key(user_id, video_id))
        return VideoRecord.from_state(raw) if raw else None

    async def require(self, user_id: str, video_id: str) -> VideoRecord:
        record = await self.get(user_id, video_id)
        if record is None:
            raise VideoNotFoundError(f"Video not found: {video_id}", video_id=video_id)
        return record

    async def list_videos(self, user_id: str, status: Optional[VideoStatus] = None) -> list[VideoRecord]:
        """All records of a user, newest first."""
        records = []
        for key in await self.state.scan_keys(StateKeys.scan_pattern(user_id, StateKeys.VIDEO)):
            parsed = StateKeys.parse(key)
            if parsed is None or parsed[:2] != (user_id, StateKeys.VIDEO):
                continue
            raw = await self.state.get(key)
            if not raw:
                continue
            record = VideoRecord.from_state(raw)
            if status is None or record.status == status:
                records.append(record)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def create_op(self, record: VideoRecord) -> Insert:
        return Insert(self.key(record.user_id, record.video_id), record.to_state())

    def remove_op(self, user_id: str, video_id: str) -> Delete:
        """Remove a record that is being deleted; cancels if it is gone already."""
        return Delete(self.key(user_id, video_id), must_exist=True, expect={"status": VideoStatus.DELETING.value})

    async def mark_deleting(self, user_id: str, video_id: str) -> DeleteOutcome:
        """Conditionally move one record READY -> DELETING."""
        now = utcnow().isoformat()
        transition = ConditionalUpdate(
            self.key(user_id, video_id),
            expect={"status": VideoStatus.READY.value},
            assign={"status": VideoStatus.DELETING.value, "deleted_at": now, "updated_at": now},
        )
        try:
            await self.state.transact(Transaction([transition]))
            logger.info("Video %s of %s marked for deletion", video_id, user_id)
            return DeleteOutcome.ACCEPTED
        except TransactionCanceled:
            pass

        record = await self.get(user_id, video_id)
        if record is None:
            return DeleteOutcome.MISSING
        if record.status == VideoStatus.DELETING:
            return DeleteOutcome.ALREADY_DELETING
        raise TransactionConflictError(f"Video {video_id} changed while marking it for deletion")

    async def update_metadata(
        self,
        user_id: str,
        video_id: str,
        metadata: dict[str, Any],
        thumbnail_bucket: Optional[str] = None,
        thumbnail_key: Optional[str] = None,
    ) -> VideoRecord:
        """Merge enrichment results into a READY record.

        Raises:
            VideoNotFoundError: no such record, or it is being deleted.
            TransactionConflictError: concurrent updates kept winning.
        """
        key = self.key(user_id, video_id)

        async def build(attempt: int) -> Transaction:
            doc = await self.state.get_json(key)
            if doc is None or doc.get("status") != VideoStatus.READY.value:
                raise VideoNotFoundError(f"Video not found: {video_id}", video_id=video_id)
            changes: dict[str, Any] = {
                "metadata": {**(doc.get("metadata") or {}), **metadata},
                "updated_at": utcnow().isoformat(),
            }
            if thumbnail_key:
                changes["thumbnail_key"] = thumbnail_key
                changes["thumbnail_bucket"] = thumbnail_bucket or doc.get("thumbnail_bucket")
            # Compare against the stored timestamp string, not a re-serialised one
            return Transaction(
                [
                    ConditionalUpdate(
                        key,
                        expect={"status": VideoStatus.READY.value, "updated_at": doc.get("updated_at")},
                        assign=changes,
                    )
                ]
            )

        try:
            await CompareAndSwap(self.state, name=f"metadata:{video_id}").run(build)
        except RetriesExhausted as e:
            raise TransactionConflictError(f"Video {video_id} is being updated concurrently") from e
        return await self.require(user_id, video_id)

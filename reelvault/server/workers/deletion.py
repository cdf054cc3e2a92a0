"""Video deletion: request side (mark + enqueue) and the queue worker."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from reelvault.common.constants import BATCH_CHUNK_SIZE
from reelvault.common.models import DeleteVideosResponse
from reelvault.server.errors import ValidationError, VideoNotFoundError
from reelvault.server.quota.models import VideoStatus, normalize_user_id
from reelvault.server.quota.records import DeleteOutcome, thumbnail_key_for
from reelvault.server.services.transaction import Transaction, TransactionCanceled

if TYPE_CHECKING:
    from reelvault.server.objectstore.interface import ObjectStore
    from reelvault.server.quota.dedup import DedupIndex
    from reelvault.server.quota.ledger import QuotaLedger
    from reelvault.server.quota.records import VideoRecordStore
    from reelvault.server.services.queue import TaskQueue
    from reelvault.server.services.state import StateManager

logger = logging.getLogger("reelvault.server.deletion")


def chunked(items: list, size: int = BATCH_CHUNK_SIZE) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class DeletionService:
    """Accepts delete requests.

    Each id is moved READY -> DELETING on its own, so one missing or
    already-deleting video never fails the rest of a batch. Only the ids
    this call transitioned are enqueued for the worker.
    """

    def __init__(self, records: "VideoRecordStore", queue: "TaskQueue") -> None:
        self.records = records
        self.queue = queue

    async def delete_videos(self, user_id: str, video_ids: list[str], single: bool = False) -> DeleteVideosResponse:
        """Mark videos for deletion and enqueue them.

        Args:
            user_id: Owner of the videos
            video_ids: Requested ids (duplicates are ignored)
            single: Single-video request; a missing id is an error

        Raises:
            ValidationError: no ids given.
            VideoNotFoundError: single mode and the video does not exist.
        """
        user_id = normalize_user_id(user_id)
        unique: dict[str, None] = {}
        for vid in video_ids:
            vid = str(vid).strip()
            if vid:
                unique.setdefault(vid, None)
        ids = list(unique)
        if not ids:
            raise ValidationError("Missing videoId")

        response = DeleteVideosResponse(count=len(ids))
        for video_id in ids:
            outcome = await self.records.mark_deleting(user_id, video_id)
            if outcome == DeleteOutcome.ACCEPTED:
                response.accepted.append(video_id)
            elif outcome == DeleteOutcome.ALREADY_DELETING:
                response.already_deleting.append(video_id)
            else:
                if single:
                    raise VideoNotFoundError(f"Video not found: {video_id}", video_id=video_id)
                response.missing.append(video_id)

        for chunk in chunked(response.accepted):
            await self.queue.send_batch([{"user_id": user_id, "video_id": vid} for vid in chunk])

        logger.info(
            "Delete request from %s: %d accepted, %d already deleting, %d missing",
            user_id,
            len(response.accepted),
            len(response.already_deleting),
            len(response.missing),
        )
        return response


class DeletionWorker:
    """Consumes deletion jobs: removes objects, then the record and its accounting.

    Processing is idempotent; a job for a record that is already gone is
    acknowledged without doing anything, so at-least-once delivery is safe.
    """

    def __init__(
        self,
        state: "StateManager",
        queue: "TaskQueue",
        store: "ObjectStore",
        records: "VideoRecordStore",
        dedup: "DedupIndex",
        ledger: "QuotaLedger",
    ) -> None:
        self.state = state
        self.queue = queue
        self.store = store
        self.records = records
        self.dedup = dedup
        self.ledger = ledger

    async def process(self, job: dict[str, Any]) -> bool:
        """Handle one job.

        Returns:
            True when the job is finished and may be acknowledged. Errors
            propagate so the job is redelivered.
        """
        user_id = job.get("user_id")
        video_id = job.get("video_id")
        if not user_id or not video_id:
            logger.warning("Dropping malformed deletion job: %s", job)
            return True

        record = await self.records.get(user_id, video_id)
        if record is None:
            logger.debug("Video %s of %s already removed", video_id, user_id)
            return True
        if record.status == VideoStatus.READY:
            logger.info("Ignoring deletion job for %s: video is not marked for deletion", video_id)
            return True

        await self.store.delete_object(record.object_key, record.object_bucket)
        thumbnail_key = record.thumbnail_key or thumbnail_key_for(user_id, video_id)
        await self.store.delete_object(thumbnail_key, record.thumbnail_bucket or self.store.thumbnail_bucket)

        txn = Transaction(
            [
                self.records.remove_op(user_id, video_id),
                self.dedup.release_op(user_id, record.fingerprint),
                self.ledger.debit_ops(user_id, record.size),
            ]
        )
        try:
            await self.state.transact(txn)
        except TransactionCanceled as e:
            # Another delivery of the same job finished first
            logger.info("Deletion of %s already completed elsewhere: %s", video_id, e.reason)
            return True

        logger.info("Deleted video %s of %s (%d bytes)", video_id, user_id, record.size)
        return True

    async def run_once(self, max_messages: int = BATCH_CHUNK_SIZE) -> int:
        """Receive and process one batch; return the number of acknowledged jobs."""
        messages = await self.queue.receive(max_messages)
        done = 0
        for message in messages:
            try:
                finished = await self.process(message.body)
            except Exception as e:
                logger.error("Deletion job %s failed (attempt %d): %s", message.message_id, message.receive_count, e)
                continue
            if finished and await self.queue.ack(message):
                done += 1
        return done

    async def run(self, poll_interval: float = 2.0) -> None:
        """Poll the queue until cancelled."""
        logger.info("Deletion worker started (queue %s)", self.queue.name)
        while True:
            try:
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Deletion worker error: %s", e)
                await asyncio.sleep(poll_interval)

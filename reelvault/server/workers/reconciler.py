"""Orphan reconciler: the backstop for everything the request paths leave behind.

- Expired reservations (crashed or abandoned clients) are aborted and released.
- Objects under the upload prefix with neither a video record nor a live
  reservation are deleted together with their derived thumbnail.
- Ledger counters are recomputed from records and reservations.
- Videos stuck in DELETING (lost queue message) are queued again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from reelvault.common.constants import UPLOAD_PREFIX
from reelvault.common.models import ReconcileReport
from reelvault.server.quota.models import VideoStatus, utcnow
from reelvault.server.quota.records import thumbnail_key_for
from reelvault.server.workers.deletion import chunked

if TYPE_CHECKING:
    from reelvault.server.config import ServerSettings
    from reelvault.server.objectstore.interface import ObjectStore
    from reelvault.server.quota.ledger import QuotaLedger
    from reelvault.server.quota.records import VideoRecordStore
    from reelvault.server.services.queue import TaskQueue

logger = logging.getLogger("reelvault.server.reconciler")


def parse_object_key(key: str) -> Optional[tuple[str, str]]:
    """``video/{user}/{videoId}`` -> ``(user, videoId)``, or None if malformed."""
    parts = key.split("/")
    if len(parts) != 3 or f"{parts[0]}/" != UPLOAD_PREFIX or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


class OrphanReconciler:
    """Periodic consistency pass over ledger, records and object store."""

    def __init__(
        self,
        store: "ObjectStore",
        ledger: "QuotaLedger",
        records: "VideoRecordStore",
        queue: "TaskQueue",
        settings: "ServerSettings",
        page_size: int = 1000,
        stuck_deletion_after: int = 3600,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.records = records
        self.queue = queue
        self.settings = settings
        self.page_size = page_size
        self.stuck_deletion_after = stuck_deletion_after

    async def sweep_expired_reservations(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """Abort and release every reservation past its deadline.

        Returns:
            ``(reservations_released, bytes_released)``
        """
        now = now or utcnow()
        released = 0
        released_bytes = 0
        for user_id, reservation in await self.ledger.list_reservations():
            if not reservation.is_expired(now):
                continue
            try:
                await self.store.abort_multipart_upload(reservation.object_key, reservation.upload_id)
            except Exception as e:
                logger.debug("Abort of expired upload %s failed: %s", reservation.upload_id, e)
            key = self.ledger.reservation_key(user_id, reservation.video_id)
            if await self.ledger.release(user_id, key, reservation.size_bytes):
                released += 1
                released_bytes += reservation.size_bytes
                logger.info(
                    "Released expired reservation %s of %s (%d bytes)",
                    reservation.video_id,
                    user_id,
                    reservation.size_bytes,
                )
        return released, released_bytes

    async def sweep_orphans(self, max_keys: Optional[int] = None) -> tuple[int, int, int, bool]:
        """Delete objects that no record or live reservation accounts for.

        Returns:
            ``(scanned, deleted, skipped, truncated)``; ``skipped`` counts
            malformed keys, ``truncated`` is set when ``max_keys`` stopped
            the scan early.
        """
        limit = max_keys if max_keys is not None else self.settings.reconcile_max_keys
        scanned = deleted = skipped = 0
        truncated = False

        async for page in self.store.list_objects(UPLOAD_PREFIX, self.page_size):
            for key in page:
                if scanned >= limit:
                    truncated = True
                    break
                scanned += 1
                parsed = parse_object_key(key)
                if parsed is None:
                    skipped += 1
                    continue
                user_id, video_id = parsed

                # Reservation first: a commit removes it and creates the record atomically
                if await self.ledger.get_reservation(user_id, video_id) is not None:
                    continue
                if await self.records.get(user_id, video_id) is not None:
                    continue

                await self.store.delete_object(key, self.store.bucket)
                await self.store.delete_object(thumbnail_key_for(user_id, video_id), self.store.thumbnail_bucket)
                deleted += 1
                logger.info("Deleted orphan object %s", key)
            if truncated:
                break

        return scanned, deleted, skipped, truncated

    async def reconcile_ledger(self, user_id: Optional[str] = None) -> int:
        """Recompute counters from records and reservations.

        DELETING records still count as used until the worker debits them.

        Returns:
            Number of profiles corrected
        """
        users = [user_id] if user_id else await self.ledger.list_users()
        corrections = 0
        for uid in users:
            profile = await self.ledger.get_profile(uid)
            if profile is None:
                continue
            videos = await self.records.list_videos(uid)
            reservations = await self.ledger.list_reservations(uid)
            used = sum(record.size for record in videos)
            reserved = sum(reservation.size_bytes for _, reservation in reservations)
            if await self.ledger.recalculate(
                uid, used=used, reserved=reserved, videos=len(videos), expected=profile
            ):
                corrections += 1
        return corrections

    async def requeue_stuck_deletions(self, now: Optional[datetime] = None) -> int:
        """Queue again videos that stayed in DELETING for too long."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.stuck_deletion_after)
        requeued = 0
        for uid in await self.ledger.list_users():
            stuck = [
                record.video_id
                for record in await self.records.list_videos(uid, status=VideoStatus.DELETING)
                if record.deleted_at is None or record.deleted_at < cutoff
            ]
            for chunk in chunked(stuck):
                await self.queue.send_batch([{"user_id": uid, "video_id": vid} for vid in chunk])
                requeued += len(chunk)
        if requeued:
            logger.warning("Re-queued %d video(s) stuck in DELETING", requeued)
        return requeued

    async def run(self) -> ReconcileReport:
        """One full pass."""
        report = ReconcileReport()
        report.expired_reservations, report.released_bytes = await self.sweep_expired_reservations()
        report.scanned, report.deleted, report.skipped, report.truncated = await self.sweep_orphans()
        report.ledger_corrections = await self.reconcile_ledger()
        report.requeued_deletions = await self.requeue_stuck_deletions()
        logger.info(
            "Reconcile pass: %d expired reservations (%d bytes), %d/%d orphans deleted, "
            "%d skipped, %d ledger corrections",
            report.expired_reservations,
            report.released_bytes,
            report.deleted,
            report.scanned,
            report.skipped,
            report.ledger_corrections,
        )
        return report

    async def run_forever(self, interval: int) -> None:
        """Background loop; one pass every ``interval`` seconds."""
        while True:
            try:
                await asyncio.sleep(interval)
                await self.run()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Reconcile error: %s", e)

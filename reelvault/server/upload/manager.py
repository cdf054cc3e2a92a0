"""Upload session manager: init, part targets, complete, finalize, abort.

The manager keeps no per-session state of its own. Everything that must
survive between calls lives in the reservation row written by ``init``,
so any API worker can serve any step of a session.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from reelvault.common.constants import MAX_PART_NUMBER, UPLOAD_PREFIX
from reelvault.common.fileutil import file_extension, sanitize_name
from reelvault.common.models import PartTarget, UploadedPart
from reelvault.server.errors import (
    DuplicateContentError,
    ForbiddenKeyError,
    QuotaExceededError,
    ReelVaultError,
    ReservationNotFoundError,
    TransactionConflictError,
    UpstreamStorageError,
    ValidationError,
)
from reelvault.server.quota.models import UploadReservation, VideoRecord, normalize_user_id, utcnow, validate_fingerprint
from reelvault.server.services.transaction import Compensations, Delete, Transaction, TransactionCanceled
from reelvault.server.upload.session import UploadSession, UploadState

if TYPE_CHECKING:
    from reelvault.server.config import ServerSettings
    from reelvault.server.objectstore.interface import ObjectStore
    from reelvault.server.quota.dedup import DedupIndex
    from reelvault.server.quota.ledger import QuotaLedger
    from reelvault.server.quota.records import VideoRecordStore
    from reelvault.server.services.state import StateManager

logger = logging.getLogger("reelvault.server.upload")

# Position of each operation inside the finalize transaction
_COMMIT_RESERVATION, _COMMIT_HASH_LOCK, _COMMIT_RECORD, _COMMIT_LEDGER = range(4)


def video_id_from_key(key: str) -> str:
    """The video id is the last path segment of the object key."""
    return key.rsplit("/", 1)[-1]


class UploadManager:
    """Drives one upload from reservation to committed video record."""

    def __init__(
        self,
        state: "StateManager",
        store: "ObjectStore",
        ledger: "QuotaLedger",
        dedup: "DedupIndex",
        records: "VideoRecordStore",
        settings: "ServerSettings",
    ) -> None:
        self.state = state
        self.store = store
        self.ledger = ledger
        self.dedup = dedup
        self.records = records
        self.settings = settings

    # ── Validation ─────────────────────────────────────────────

    def user_prefix(self, user_id: str) -> str:
        return f"{UPLOAD_PREFIX}{user_id}/"

    def check_key(self, user_id: str, key: str) -> str:
        """Ensure ``key`` lives in the caller's namespace; return its video id."""
        prefix = self.user_prefix(user_id)
        if not key.startswith(prefix):
            raise ForbiddenKeyError("Key is outside your namespace")
        video_id = key[len(prefix) :]
        if not video_id or "/" in video_id or video_id in (".", ".."):
            raise ValidationError("Invalid key format")
        return video_id

    def _validate_new_upload(self, file_name: str, size: int, fingerprint: str) -> str:
        ext = file_extension(file_name)
        if ext not in self.settings.allowed_extensions:
            raise ValidationError("Unsupported file type", allowed=list(self.settings.allowed_extensions))
        if size <= 0 or size > self.settings.max_upload_bytes:
            raise ValidationError(
                f"File size must be between 1 byte and {self.settings.max_upload_bytes} bytes",
                max_bytes=self.settings.max_upload_bytes,
            )
        validate_fingerprint(fingerprint)
        return ext

    # ── Operations ─────────────────────────────────────────────

    async def init_upload(
        self,
        user_id: str,
        file_name: str,
        declared_size: int,
        fingerprint: str,
        content_type: str = "application/octet-stream",
    ) -> UploadSession:
        """Reserve capacity and open a multi-part session.

        Raises:
            ValidationError: bad extension or size.
            DuplicateContentError: the content is already in the library.
            QuotaExceededError: not enough capacity.
            UpstreamStorageError: the object store refused the session.
        """
        user_id = normalize_user_id(user_id)
        session = UploadSession(user_id=user_id, size_bytes=declared_size, fingerprint=fingerprint)
        ext = self._validate_new_upload(file_name, declared_size, fingerprint)

        # Advisory only; the commit transaction is what guarantees uniqueness
        existing = await self.dedup.get(user_id, fingerprint)
        if existing is not None:
            session.advance(UploadState.DUPLICATE, error="duplicate content")
            logger.info("Init for %s skipped: content already stored as %s", user_id, existing.video_id)
            raise DuplicateContentError(video_id=existing.video_id)

        profile = await self.ledger.ensure_profile(user_id)
        if not self.ledger.has_capacity(profile, declared_size):
            raise QuotaExceededError(
                "Storage quota exceeded",
                quota_bytes=profile.quota_bytes,
                used_bytes=profile.used_bytes,
                reserved_bytes=profile.reserved_bytes,
                requested_bytes=declared_size,
            )

        safe_name = sanitize_name(file_name or f"upload.{ext}")
        video_id = f"{uuid.uuid4()}_{safe_name}"
        key = f"{self.user_prefix(user_id)}{video_id}"
        now = utcnow()
        expires_at = now + timedelta(seconds=self.settings.reservation_ttl)

        compensations = Compensations(f"init:{video_id}")
        try:
            try:
                upload_id = await self.store.create_multipart_upload(key, content_type)
            except OSError as e:
                raise UpstreamStorageError(f"Failed to initialize multipart upload: {e}") from e
            compensations.push("multipart session", lambda: self.store.abort_multipart_upload(key, upload_id))

            reservation = UploadReservation(
                video_id=video_id,
                object_key=key,
                upload_id=upload_id,
                size_bytes=declared_size,
                file_name=file_name,
                content_type=content_type,
                fingerprint=fingerprint,
                created_at=now,
                expires_at=expires_at,
            )
            await self.ledger.reserve(user_id, reservation)
        except Exception:
            await compensations.rollback()
            raise
        compensations.discard()

        session.video_id = video_id
        session.object_key = key
        session.bucket = self.store.bucket
        session.upload_id = upload_id
        session.expires_at = expires_at
        session.advance(UploadState.RESERVED)
        logger.info("Upload %s initialized for %s (%d bytes)", video_id, user_id, declared_size)
        return session

    async def get_part_upload_target(self, user_id: str, key: str, upload_id: str, part_number: int) -> PartTarget:
        """Signed URL accepting exactly one part of one live session."""
        user_id = normalize_user_id(user_id)
        video_id = self.check_key(user_id, key)
        if not upload_id:
            raise ValidationError("Missing uploadId")
        if part_number < 1 or part_number > MAX_PART_NUMBER:
            raise ValidationError(f"partNumber must be between 1 and {MAX_PART_NUMBER}")

        reservation = await self.ledger.get_reservation(user_id, video_id)
        if reservation is None or reservation.upload_id != upload_id:
            raise ReservationNotFoundError("Upload session not found or already finished")

        ttl = self.settings.part_url_ttl
        url = await self.store.presign_upload_part(key, upload_id, part_number, ttl)
        return PartTarget(url=url, part_number=part_number, expires_at=utcnow() + timedelta(seconds=ttl))

    async def complete_upload(self, user_id: str, key: str, upload_id: str, parts: list[UploadedPart]) -> str:
        """Assemble the uploaded parts into the final object.

        Does not touch the ledger; the bytes stay reserved until finalize.

        Returns:
            ETag of the assembled object
        """
        user_id = normalize_user_id(user_id)
        self.check_key(user_id, key)
        if not upload_id:
            raise ValidationError("Missing uploadId")
        if not parts:
            raise ValidationError("Missing parts")

        seen: set[int] = set()
        for part in parts:
            if part.part_number < 1 or part.part_number > MAX_PART_NUMBER or not part.etag:
                raise ValidationError("Invalid parts")
            if part.part_number in seen:
                raise ValidationError(f"Duplicate part number {part.part_number}")
            seen.add(part.part_number)

        ordered = sorted(((p.part_number, p.etag) for p in parts), key=lambda p: p[0])
        etag = await self.store.complete_multipart_upload(key, upload_id, ordered)
        logger.info("Upload %s assembled from %d parts", key, len(ordered))
        return etag

    async def finalize_upload(
        self,
        user_id: str,
        key: str,
        fingerprint: str,
        original_name: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> UploadSession:
        """Commit the upload: one transaction turns the reservation into a video.

        Raises:
            ReservationNotFoundError: the session was already finalized or aborted.
            ValidationError: the parts were never assembled into the object.
            DuplicateContentError: another upload of the same content won.
            TransactionConflictError: the commit was rejected for another reason.
        """
        user_id = normalize_user_id(user_id)
        video_id = self.check_key(user_id, key)
        validate_fingerprint(fingerprint)

        reservation = await self.ledger.get_reservation(user_id, video_id)
        if reservation is None or reservation.object_key != key:
            raise ReservationNotFoundError("Reservation not found")

        # The reservation is kept so the client can still complete and retry
        if not await self.store.object_exists(key):
            raise ValidationError("Upload not completed", video_id=video_id)

        session = UploadSession(
            user_id=user_id,
            video_id=video_id,
            object_key=key,
            bucket=self.store.bucket,
            upload_id=reservation.upload_id,
            size_bytes=reservation.size_bytes,
            fingerprint=fingerprint,
            expires_at=reservation.expires_at,
            state=UploadState.RESERVED,
        )
        session.advance(UploadState.TRANSFERRING)
        session.advance(UploadState.FINALIZING)

        if reservation.fingerprint and reservation.fingerprint != fingerprint:
            logger.info("Fingerprint of %s changed between init and finalize", video_id)

        record = VideoRecord(
            video_id=video_id,
            user_id=user_id,
            object_key=key,
            object_bucket=self.store.bucket,
            original_name=original_name or reservation.file_name,
            content_type=content_type or reservation.content_type,
            size=reservation.size_bytes,
            fingerprint=fingerprint,
        )
        reservation_key = self.ledger.reservation_key(user_id, video_id)
        txn = Transaction(
            [
                Delete(reservation_key, must_exist=True),
                self.dedup.claim_op(user_id, fingerprint, video_id),
                self.records.create_op(record),
                self.ledger.commit_ops(user_id, reservation.size_bytes),
            ]
        )

        compensations = Compensations(f"finalize:{video_id}")
        compensations.push(
            "reservation",
            lambda: self.ledger.release(user_id, reservation_key, reservation.size_bytes),
        )
        try:
            await self.state.transact(txn)
        except TransactionCanceled as e:
            await self._finalize_rejected(session, compensations, e)
        except Exception as e:
            # Release is guarded by the reservation row, so this is safe even
            # if the commit actually landed
            session.advance(UploadState.FAILED, error=str(e))
            await compensations.rollback()
            raise
        compensations.discard()

        session.advance(UploadState.COMMITTED)
        logger.info("Upload %s committed for %s (%d bytes)", video_id, user_id, reservation.size_bytes)
        return session

    async def _finalize_rejected(
        self, session: UploadSession, compensations: Compensations, error: TransactionCanceled
    ) -> None:
        if error.index == _COMMIT_RESERVATION:
            session.advance(UploadState.FAILED, error="reservation gone")
            raise ReservationNotFoundError("Reservation not found")

        if error.index == _COMMIT_HASH_LOCK:
            session.advance(UploadState.DUPLICATE, error="duplicate content")
            winner = await self.dedup.get(session.user_id, session.fingerprint or "")
            # The transferred copy is redundant
            compensations.push(
                "duplicate object", lambda: self.store.delete_object(session.object_key, self.store.bucket)
            )
            await compensations.rollback()
            logger.info("Upload %s lost the dedup race for %s", session.video_id, session.user_id)
            raise DuplicateContentError(video_id=winner.video_id if winner else "")

        session.advance(UploadState.FAILED, error=error.reason)
        await compensations.rollback()
        logger.warning("Commit of %s rejected: %s", session.video_id, error)
        raise TransactionConflictError(f"Commit rejected: {error.reason}")

    async def abort_upload(self, user_id: str, key: str, upload_id: str) -> UploadSession:
        """Cancel a session and give its bytes back. Safe to call repeatedly."""
        user_id = normalize_user_id(user_id)
        video_id = self.check_key(user_id, key)
        session = UploadSession(user_id=user_id, video_id=video_id, object_key=key, upload_id=upload_id)

        if upload_id:
            try:
                await self.store.abort_multipart_upload(key, upload_id)
            except ReelVaultError as e:
                logger.info("Abort of multipart %s ignored: %s", upload_id, e.message)
            except Exception as e:
                logger.warning("Abort of multipart %s failed: %s", upload_id, e)

        try:
            reservation = await self.ledger.get_reservation(user_id, video_id)
            if reservation is not None and reservation.object_key == key:
                reservation_key = self.ledger.reservation_key(user_id, video_id)
                await self.ledger.release(user_id, reservation_key, reservation.size_bytes)
                session.size_bytes = reservation.size_bytes
                logger.info("Upload %s aborted, released %d bytes", video_id, reservation.size_bytes)
        except Exception as e:
            # Left for the expiry sweep
            logger.warning("Release of reservation %s for %s failed: %s", video_id, user_id, e)

        session.state = UploadState.ABORTED
        return session

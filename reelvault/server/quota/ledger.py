"""Per-user quota ledger.

Bytes of an upload live in exactly one counter at a time: ``reserved_bytes``
from ``reserve`` until the session ends, then either nowhere (release) or
``used_bytes`` (commit). Every mutation is a conditional write against the
profile document, so there is no global lock; concurrent reservations for
the same user race on the counters they read and the losers re-read.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from reelvault.common.constants import RESERVE_MAX_ATTEMPTS, StateKeys
from reelvault.server.errors import QuotaExceededError
from reelvault.server.quota.models import UploadReservation, UserQuotaProfile, utcnow
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
    from reelvault.server.config import ServerSettings
    from reelvault.server.services.state import StateManager

logger = logging.getLogger("reelvault.server.ledger")


class QuotaLedger:
    """Reserve / commit / release accounting on ``UserQuotaProfile``.

    Reads ``default_quota_bytes`` and ``grace_bytes`` from the live settings
    object, so hot-reloaded values apply to the next call.
    """

    def __init__(
        self,
        state: "StateManager",
        settings: "ServerSettings",
        max_attempts: int = RESERVE_MAX_ATTEMPTS,
    ) -> None:
        self.state = state
        self.settings = settings
        self.max_attempts = max_attempts

    @staticmethod
    def reservation_key(user_id: str, video_id: str) -> str:
        return StateKeys.reservation(user_id, video_id)

    def _stamp(self) -> dict:
        return {"updated_at": utcnow().isoformat()}

    # ── Profile ────────────────────────────────────────────────

    async def get_profile(self, user_id: str) -> Optional[UserQuotaProfile]:
        raw = await self.state.get(StateKeys.profile(user_id))
        return UserQuotaProfile.from_state(raw) if raw else None

    async def ensure_profile(self, user_id: str) -> UserQuotaProfile:
        """Return the profile, creating it with the default quota if absent."""
        profile = await self.get_profile(user_id)
        if profile:
            return profile
        fresh = UserQuotaProfile(user_id=user_id, quota_bytes=self.settings.default_quota_bytes)
        if await self.state.set(StateKeys.profile(user_id), fresh.to_state(), nx=True):
            logger.info("Created quota profile for %s (%d bytes)", user_id, fresh.quota_bytes)
            return fresh
        # Lost the creation race; someone else's profile wins
        return await self.get_profile(user_id)  # type: ignore[return-value]

    async def set_quota(self, user_id: str, quota_bytes: int) -> UserQuotaProfile:
        """Change a user's quota (admin). Existing usage is left untouched."""
        await self.ensure_profile(user_id)
        await self.state.transact(
            Transaction(
                [ConditionalUpdate(StateKeys.profile(user_id), assign={"quota_bytes": quota_bytes, **self._stamp()})]
            )
        )
        return await self.get_profile(user_id)  # type: ignore[return-value]

    def has_capacity(self, profile: UserQuotaProfile, size: int) -> bool:
        limit = profile.quota_bytes + self.settings.grace_bytes
        return profile.used_bytes + profile.reserved_bytes + size <= limit

    # ── Reservation lifecycle ──────────────────────────────────

    async def reserve(self, user_id: str, reservation: UploadReservation) -> None:
        """Hold ``reservation.size_bytes`` and persist the reservation row.

        Both writes go through one conditional transaction on the counters
        that were just read. A concurrent change makes the transaction fail;
        the ledger re-reads and tries again, up to ``max_attempts`` times.

        Raises:
            QuotaExceededError: not enough capacity, or the retry bound was hit.
        """
        size = reservation.size_bytes
        profile_key = StateKeys.profile(user_id)
        reservation_key = self.reservation_key(user_id, reservation.video_id)

        async def build(attempt: int) -> Transaction:
            profile = await self.get_profile(user_id)
            if profile is None:
                profile = await self.ensure_profile(user_id)
            if not self.has_capacity(profile, size):
                logger.info(
                    "Quota exceeded for %s: used=%d reserved=%d requested=%d quota=%d",
                    user_id,
                    profile.used_bytes,
                    profile.reserved_bytes,
                    size,
                    profile.quota_bytes,
                )
                raise QuotaExceededError(
                    "Storage quota exceeded",
                    quota_bytes=profile.quota_bytes,
                    used_bytes=profile.used_bytes,
                    reserved_bytes=profile.reserved_bytes,
                    requested_bytes=size,
                )
            return Transaction(
                [
                    ConditionalUpdate(
                        profile_key,
                        expect={"used_bytes": profile.used_bytes, "reserved_bytes": profile.reserved_bytes},
                        increment={"reserved_bytes": size},
                        assign=self._stamp(),
                    ),
                    Insert(reservation_key, reservation.to_state()),
                ]
            )

        try:
            await CompareAndSwap(self.state, self.max_attempts, name=f"reserve:{user_id}").run(build)
        except RetriesExhausted as e:
            logger.warning("Reservation for %s gave up after %d attempts", user_id, e.attempts)
            raise QuotaExceededError("Storage quota is busy, try again", retry=True) from e

        logger.debug("Reserved %d bytes for %s (%s)", size, user_id, reservation.video_id)

    async def get_reservation(self, user_id: str, video_id: str) -> Optional[UploadReservation]:
        raw = await self.state.get(self.reservation_key(user_id, video_id))
        return UploadReservation.from_state(raw) if raw else None

    async def list_reservations(self, user_id: str = "*") -> list[tuple[str, UploadReservation]]:
        """``(user_id, reservation)`` pairs for one user or (default) everyone."""
        found = []
        for key in await self.state.scan_keys(StateKeys.scan_pattern(user_id, StateKeys.RESERVE)):
            parsed = StateKeys.parse(key)
            # "*" also spans ":", so other record types can match the pattern
            if parsed is None or parsed[1] != StateKeys.RESERVE or user_id not in ("*", parsed[0]):
                continue
            raw = await self.state.get(key)
            if not raw:
                continue
            owner = parsed[0]
            found.append((owner, UploadReservation.from_state(raw)))
        return found

    def commit_ops(self, user_id: str, size: int) -> ConditionalUpdate:
        """Ledger half of the commit transaction: move bytes reserved -> used."""
        return ConditionalUpdate(
            StateKeys.profile(user_id),
            at_least={"reserved_bytes": size},
            increment={"reserved_bytes": -size, "used_bytes": size, "videos_count": 1},
            assign=self._stamp(),
        )

    async def release(self, user_id: str, reservation_key: str, size: int) -> bool:
        """Drop a reservation row and give its bytes back.

        The row's existence is the idempotency guard: releasing twice finds
        no row the second time and changes nothing.

        Returns:
            True if this call released the reservation.
        """
        txn = Transaction(
            [
                Delete(reservation_key, must_exist=True),
                ConditionalUpdate(
                    StateKeys.profile(user_id),
                    increment={"reserved_bytes": -size},
                    assign=self._stamp(),
                    floor_zero=True,
                ),
            ]
        )
        try:
            await self.state.transact(txn)
        except TransactionCanceled as e:
            logger.debug("Release of %s was a no-op: %s", reservation_key, e.reason)
            return False
        logger.debug("Released %d bytes for %s", size, user_id)
        return True

    def debit_ops(self, user_id: str, size: int) -> ConditionalUpdate:
        """Ledger half of the deletion transaction."""
        return ConditionalUpdate(
            StateKeys.profile(user_id),
            increment={"used_bytes": -size, "videos_count": -1},
            assign=self._stamp(),
            floor_zero=True,
        )

    async def recalculate(
        self,
        user_id: str,
        used: int,
        reserved: int,
        videos: int,
        expected: Optional[UserQuotaProfile] = None,
    ) -> bool:
        """Overwrite counters with recomputed values if they drifted.

        Pass the profile read before recomputing as ``expected``; the write
        only lands if no ledger operation ran in between.

        Returns:
            True if a correction was written.
        """
        profile = expected or await self.get_profile(user_id)
        if profile is None:
            return False
        if (profile.used_bytes, profile.reserved_bytes, profile.videos_count) == (used, reserved, videos):
            return False
        try:
            await self.state.transact(
                Transaction(
                    [
                        ConditionalUpdate(
                            StateKeys.profile(user_id),
                            expect={
                                "used_bytes": profile.used_bytes,
                                "reserved_bytes": profile.reserved_bytes,
                                "videos_count": profile.videos_count,
                            },
                            assign={
                                "used_bytes": used,
                                "reserved_bytes": reserved,
                                "videos_count": videos,
                                **self._stamp(),
                            },
                        )
                    ]
                )
            )
        except TransactionCanceled:
            # Live traffic moved the counters; the next pass re-checks
            logger.info("Ledger of %s changed during recalculation, skipped", user_id)
            return False
        logger.warning(
            "Corrected ledger of %s: used %d -> %d, reserved %d -> %d, videos %d -> %d",
            user_id,
            profile.used_bytes,
            used,
            profile.reserved_bytes,
            reserved,
            profile.videos_count,
            videos,
        )
        return True

    async def list_users(self) -> list[str]:
        users = []
        for key in await self.state.scan_keys(StateKeys.profile("*")):
            parsed = StateKeys.parse(key)
            if parsed is not None and parsed[1:] == (StateKeys.PROFILE, ""):
                users.append(parsed[0])
        return sorted(users)

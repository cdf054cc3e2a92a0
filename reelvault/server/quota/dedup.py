"""Content dedup index: one hash lock per (user, fingerprint)."""

from typing import TYPE_CHECKING, Optional

from reelvault.common.constants import StateKeys
from reelvault.server.quota.models import ContentHashLock, validate_fingerprint
from reelvault.server.services.transaction import Delete, Insert

if TYPE_CHECKING:
    from reelvault.server.services.state import StateManager


class DedupIndex:
    """Advisory lookups plus the transaction operations that own the locks.

    ``exists`` is only a hint used to skip obviously duplicate transfers.
    The guarantee comes from ``claim_op``: an ``Insert`` inside the commit
    transaction, so of two racing commits for the same content exactly one
    succeeds.
    """

    def __init__(self, state: "StateManager") -> None:
        self.state = state

    @staticmethod
    def key(user_id: str, fingerprint: str) -> str:
        return StateKeys.content_hash(user_id, validate_fingerprint(fingerprint))

    async def exists(self, user_id: str, fingerprint: str) -> bool:
        return await self.state.exists(self.key(user_id, fingerprint))

    async def get(self, user_id: str, fingerprint: str) -> Optional[ContentHashLock]:
        raw = await self.state.get(self.key(user_id, fingerprint))
        return ContentHashLock.from_state(raw) if raw else None

    def claim_op(self, user_id: str, fingerprint: str, video_id: str) -> Insert:
        lock = ContentHashLock(fingerprint=fingerprint, video_id=video_id)
        return Insert(self.key(user_id, fingerprint), lock.to_state())

    def release_op(self, user_id: str, fingerprint: str) -> Delete:
        return Delete(self.key(user_id, fingerprint))

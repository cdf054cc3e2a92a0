"""Key/value state for ledgers, reservations, video records and queues.

Everything ReelVault persists outside the object store lives under ``rv:``
keys in one of three backends. Multi-key changes go through
:meth:`StateManager.transact`, which every backend applies atomically.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional

from reelvault.server.services.backends.file import FileStateBackend
from reelvault.server.services.backends.interface import StateBackend
from reelvault.server.services.backends.memory import MemoryStateBackend
from reelvault.server.services.transaction import Transaction

logger = logging.getLogger("reelvault.server.state")

SCAN_PAGE = 100


class BackendType(str, Enum):
    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


class StateManager:
    """Facade over the configured state backend.

    ``memory`` is for tests and a single dev process, ``file`` survives
    restarts of a single process, ``redis`` is required once more than one
    worker shares the ledger.

    Example:
        state = StateManager(BackendType.FILE, storage_path=Path("./data"))
        await state.connect()
        await state.transact(Transaction([Put("rv:user:alice:profile", doc)]))
    """

    def __init__(
        self,
        backend_type: BackendType = BackendType.MEMORY,
        storage_path: Optional[Path] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        self.backend_type = BackendType(backend_type)
        self._backend: Optional[StateBackend] = None
        self._storage_path = storage_path or Path("./reelvault_data")
        self._redis_url = redis_url or "redis://localhost:6379/0"

    def _create_backend(self) -> StateBackend:
        if self.backend_type is BackendType.MEMORY:
            return MemoryStateBackend()
        if self.backend_type is BackendType.FILE:
            return FileStateBackend(self._storage_path / "state")
        if self.backend_type is BackendType.REDIS:
            from reelvault.server.services.backends.redis import RedisStateBackend

            return RedisStateBackend(self._redis_url)
        raise ValueError(f"Unsupported state backend: {self.backend_type}")

    async def connect(self) -> None:
        if self._backend is not None:
            return
        backend = self._create_backend()
        await backend.connect()
        self._backend = backend
        logger.info("State backend ready: %s", backend.name)

    async def disconnect(self) -> None:
        backend, self._backend = self._backend, None
        if backend is not None:
            await backend.disconnect()

    @property
    def backend(self) -> StateBackend:
        if self._backend is None:
            raise RuntimeError("State backend is not connected")
        return self._backend

    async def get(self, key: str) -> Optional[str]:
        return await self.backend.get(key)

    async def get_json(self, key: str) -> Optional[dict]:
        """Decoded JSON document stored at ``key``, None when absent."""
        raw = await self.backend.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: str, nx: bool = False) -> bool:
        return await self.backend.set(key, value, nx=nx)

    async def delete(self, key: str) -> int:
        return await self.backend.delete(key)

    async def exists(self, key: str) -> bool:
        return await self.backend.exists(key)

    async def transact(self, txn: Transaction) -> None:
        """Apply every operation of ``txn`` or none of them.

        Raises:
            TransactionCanceled: a precondition did not hold; nothing was written.
            TransactionConflictError: the backend kept losing write races.
        """
        if not txn.operations:
            return
        await self.backend.transact(txn)

    async def iter_keys(self, pattern: str) -> AsyncIterator[str]:
        """Yield keys matching a glob ``pattern``, page by page."""
        cursor = 0
        while True:
            cursor, page = await self.backend.scan(cursor, match=pattern, count=SCAN_PAGE)
            for key in page:
                yield key
            if cursor == 0:
                return

    async def scan_keys(self, pattern: str) -> list[str]:
        return [key async for key in self.iter_keys(pattern)]

    async def ping(self) -> bool:
        return await self.backend.ping()


_state_manager: Optional[StateManager] = None


async def get_state_manager(
    backend_type: BackendType = BackendType.FILE,
    storage_path: Optional[Path] = None,
    redis_url: Optional[str] = None,
) -> StateManager:
    """Process-wide state manager, connected on first use."""
    global _state_manager
    if _state_manager is None:
        manager = StateManager(backend_type, storage_path=storage_path, redis_url=redis_url)
        await manager.connect()
        _state_manager = manager
    return _state_manager


async def close_state_manager() -> None:
    global _state_manager
    if _state_manager is not None:
        await _state_manager.disconnect()
        _state_manager = None

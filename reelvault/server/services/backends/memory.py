"""In-memory state storage backend."""

import asyncio
import fnmatch
import logging
from typing import Optional

from reelvault.server.services.backends.interface import StateBackend
from reelvault.server.services.transaction import Transaction, apply_transaction

logger = logging.getLogger("reelvault.server.state")


class MemoryStateBackend(StateBackend):
    """Dict-backed state for tests and single-process development.

    One asyncio lock serialises every call, so a transaction's snapshot,
    precondition check and writes can never interleave with another
    coroutine. Nothing survives a restart.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        logger.info("%s: Initialized (in-memory storage)", self.name)

    async def disconnect(self) -> None:
        self._data.clear()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str, nx: bool = False) -> bool:
        async with self._lock:
            if nx and key in self._data:
                return False
            self._data[key] = value
            return True

    async def delete(self, key: str) -> int:
        async with self._lock:
            if key in self._data:
                del self._data[key]
                return 1
            return 0

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return key in self._data

    async def scan(
        self,
        cursor: int,
        match: str = "*",
        count: int = 100,
    ) -> tuple[int, list[str]]:
        async with self._lock:
            all_keys = sorted(key for key in self._data if fnmatch.fnmatchcase(key, match))

            # Simulate cursor-based pagination
            start = cursor
            end = min(start + count, len(all_keys))
            keys = all_keys[start:end]

            next_cursor = end if end < len(all_keys) else 0
            return next_cursor, keys

    async def transact(self, txn: Transaction) -> None:
        async with self._lock:
            snapshot = {key: self._data.get(key) for key in txn.keys}
            writes = apply_transaction(snapshot, txn)
            for key, value in writes.items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value

"""File-based state storage backend with persistence."""

import asyncio
import fnmatch
import json
import logging
from pathlib import Path
from typing import Optional

import aiofiles  # type: ignore[import-untyped]
import aiofiles.os  # type: ignore[import-untyped]

from reelvault.server.services.backends.interface import StateBackend
from reelvault.server.services.transaction import Transaction, apply_transaction

logger = logging.getLogger("reelvault.server.state")


class FileStateBackend(StateBackend):
    """Default backend: the whole key space in memory, snapshotted to JSON.

    A dirty snapshot is written every ``flush_interval`` seconds and on
    disconnect, to a temp file renamed over ``state.json``. Ledger writes
    made after the last snapshot are lost on a hard crash; the startup
    ledger reconciliation repairs the totals from the video records.

    Single worker only. The server refuses ``workers > 1`` with this backend.
    """

    def __init__(self, storage_path: Path, flush_interval: float = 5.0) -> None:
        self.storage_path = Path(storage_path)
        self.state_file = self.storage_path / "state.json"
        self.flush_interval = flush_interval
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._dirty = False
        self._save_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Initialize the backend and load existing state."""
        self.storage_path.mkdir(parents=True, exist_ok=True)

        if self.state_file.exists():
            try:
                async with aiofiles.open(self.state_file, "r") as f:
                    content = await f.read()
                    self._data = json.loads(content) if content else {}
                logger.info("%s: Loaded %d keys from %s", self.name, len(self._data), self.state_file)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("%s: Error loading state: %s, starting fresh", self.name, e)
                self._data = {}
        else:
            logger.info("%s: Initialized (file storage at %s)", self.name, self.storage_path)

        self._save_task = asyncio.create_task(self._save_loop())

    async def disconnect(self) -> None:
        """Save state and cleanup."""
        if self._save_task:
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
            self._save_task = None

        await self.flush()

    async def _save_loop(self) -> None:
        """Periodically save state to disk."""
        while True:
            try:
                await asyncio.sleep(self.flush_interval)
                if self._dirty:
                    await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("%s: Error saving state: %s", self.name, e)

    async def flush(self) -> None:
        """Write the current snapshot to disk if anything changed."""
        async with self._lock:
            if not self._dirty:
                return
            tmp_file = self.state_file.with_suffix(".json.tmp")
            try:
                async with aiofiles.open(tmp_file, "w") as f:
                    await f.write(json.dumps(self._data, indent=2))
                await aiofiles.os.replace(tmp_file, self.state_file)
                self._dirty = False
            except OSError as e:
                logger.error("%s: Error writing state file: %s", self.name, e)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str, nx: bool = False) -> bool:
        async with self._lock:
            if nx and key in self._data:
                return False
            self._data[key] = value
            self._dirty = True
            return True

    async def delete(self, key: str) -> int:
        async with self._lock:
            if key in self._data:
                del self._data[key]
                self._dirty = True
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
            if writes:
                self._dirty = True

    async def ping(self) -> bool:
        return self.storage_path.exists()

"""Redis state storage backend."""

import logging
from typing import Optional

from reelvault.server.errors import TransactionConflictError
from reelvault.server.services.backends.interface import StateBackend
from reelvault.server.services.transaction import Transaction, apply_transaction

logger = logging.getLogger("reelvault.server.state")

# Redis is optional
try:
    import redis.asyncio as redis
    from redis.exceptions import WatchError

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    redis = None  # type: ignore[assignment]


class RedisStateBackend(StateBackend):
    """Redis state storage backend.

    Production-ready backend for multi-worker deployments. Transactions use
    optimistic ``WATCH``/``MULTI``/``EXEC``: the touched keys are watched,
    preconditions are evaluated client-side, and the writes are committed
    only if no other client modified a watched key in between. A lost race
    is retried transparently up to ``watch_retries`` times; precondition
    failures surface as ``TransactionCanceled``.

    Requirements:
    - Redis server running
    - `redis` package installed: pip install redis

    Usage:
        backend = RedisStateBackend("redis://localhost:6379/0")
        await backend.connect()
        await backend.set("key", "value")
        value = await backend.get("key")
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", watch_retries: int = 16) -> None:
        if not REDIS_AVAILABLE:
            raise ImportError("Redis package not installed. " "Install with: pip install redis")

        self.redis_url = redis_url
        self.watch_retries = watch_retries
        self._client: Optional[redis.Redis] = None
        self._pool: Optional[redis.ConnectionPool] = None

    async def connect(self) -> None:
        self._pool = redis.ConnectionPool.from_url(
            self.redis_url,
            decode_responses=True,
            max_connections=20,
        )
        self._client = redis.Redis(connection_pool=self._pool)

        await self._client.ping()  # type: ignore[misc]
        logger.info("%s: Connected to %s", self.name, self.redis_url)

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)  # type: ignore[no-any-return, union-attr]

    async def set(self, key: str, value: str, nx: bool = False) -> bool:
        result = await self._client.set(key, value, nx=nx)  # type: ignore[union-attr]
        return result is not None

    async def delete(self, key: str) -> int:
        return await self._client.delete(key)  # type: ignore[no-any-return, union-attr]

    async def exists(self, key: str) -> bool:
        return await self._client.exists(key) > 0  # type: ignore[no-any-return, union-attr]

    async def scan(
        self,
        cursor: int,
        match: str = "*",
        count: int = 100,
    ) -> tuple[int, list[str]]:
        return await self._client.scan(cursor, match=match, count=count)  # type: ignore[no-any-return, union-attr]

    async def transact(self, txn: Transaction) -> None:
        keys = txn.keys
        if not keys:
            return
        async with self._client.pipeline(transaction=True) as pipe:  # type: ignore[union-attr]
            for _ in range(self.watch_retries):
                try:
                    await pipe.watch(*keys)
                    snapshot = {}
                    for key in keys:
                        snapshot[key] = await pipe.get(key)
                    writes = apply_transaction(snapshot, txn)
                    pipe.multi()
                    for key, value in writes.items():
                        if value is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, value)
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug("%s: watched key changed, retrying transaction", self.name)
                    continue
                finally:
                    await pipe.reset()
        raise TransactionConflictError(f"Redis transaction on {keys} kept conflicting")

    async def ping(self) -> bool:
        try:
            await self._client.ping()  # type: ignore[misc, union-attr]
            return True
        except Exception:
            return False

"""At-least-once task queue stored in the state backend.

Each message is one JSON document under ``rv:queue:{queue}:{message_id}``.
Receiving a message claims it with a conditional update that pushes its
visibility deadline forward and hands out a fresh receipt; a consumer that
never acks lets the deadline pass and the message is delivered again.
Messages received ``max_receives`` times without an ack are moved to the
dead-letter prefix.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from reelvault.common.constants import (
    BATCH_CHUNK_SIZE,
    QUEUE_MAX_RECEIVES,
    QUEUE_VISIBILITY_TIMEOUT,
    StateKeys,
)
from reelvault.server.services.state import StateManager
from reelvault.server.services.transaction import (
    ConditionalUpdate,
    Delete,
    Insert,
    Put,
    Transaction,
    TransactionCanceled,
)

logger = logging.getLogger("reelvault.server.queue")


@dataclass
class QueueMessage:
    """A received message; ``receipt`` is needed to ack it."""

    message_id: str
    body: dict[str, Any]
    receipt: str
    receive_count: int


class TaskQueue:
    """Named queue with visibility timeout and dead-lettering."""

    def __init__(
        self,
        state: StateManager,
        name: str,
        visibility_timeout: int = QUEUE_VISIBILITY_TIMEOUT,
        max_receives: int = QUEUE_MAX_RECEIVES,
    ) -> None:
        self.state = state
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receives = max_receives

    def _key(self, message_id: str) -> str:
        return f"{StateKeys.QUEUE_PREFIX}{self.name}:{message_id}"

    def _dead_letter_key(self, message_id: str) -> str:
        return f"{StateKeys.DEAD_LETTER_PREFIX}{self.name}:{message_id}"

    @staticmethod
    def _new_id() -> str:
        # Millisecond prefix keeps scan order close to send order
        return f"{int(time.time() * 1000):013d}-{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _envelope(body: dict[str, Any]) -> str:
        return json.dumps(
            {
                "body": body,
                "receive_count": 0,
                "visible_at": 0.0,
                "receipt": "",
                "sent_at": time.time(),
            }
        )

    async def send(self, body: dict[str, Any]) -> str:
        """Enqueue one message; returns its id."""
        message_id = self._new_id()
        await self.state.transact(Transaction([Insert(self._key(message_id), self._envelope(body))]))
        return message_id

    async def send_batch(self, bodies: list[dict[str, Any]]) -> list[str]:
        """Enqueue up to ``BATCH_CHUNK_SIZE`` messages in one transaction."""
        if len(bodies) > BATCH_CHUNK_SIZE:
            raise ValueError(f"send_batch accepts at most {BATCH_CHUNK_SIZE} messages, got {len(bodies)}")
        ids = [self._new_id() for _ in bodies]
        txn = Transaction([Insert(self._key(mid), self._envelope(body)) for mid, body in zip(ids, bodies)])
        await self.state.transact(txn)
        return ids

    async def receive(self, max_messages: int = BATCH_CHUNK_SIZE) -> list[QueueMessage]:
        """Claim up to ``max_messages`` visible messages."""
        now = time.time()
        received: list[QueueMessage] = []
        for key in await self.state.scan_keys(self._key("*")):
            if len(received) >= max_messages:
                break
            raw = await self.state.get(key)
            if not raw:
                continue
            doc = json.loads(raw)
            if doc.get("visible_at", 0) > now:
                continue

            message_id = key.rsplit(":", 1)[-1]
            previous = {"receive_count": doc.get("receive_count", 0), "receipt": doc.get("receipt", "")}

            if previous["receive_count"] >= self.max_receives:
                await self._dead_letter(key, message_id, doc, previous)
                continue

            receipt = uuid.uuid4().hex
            claim = ConditionalUpdate(
                key,
                expect=previous,
                increment={"receive_count": 1},
                assign={"visible_at": now + self.visibility_timeout, "receipt": receipt},
            )
            try:
                await self.state.transact(Transaction([claim]))
            except TransactionCanceled:
                # Another consumer claimed it first
                continue

            received.append(
                QueueMessage(
                    message_id=message_id,
                    body=doc.get("body", {}),
                    receipt=receipt,
                    receive_count=previous["receive_count"] + 1,
                )
            )
        return received

    async def _dead_letter(self, key: str, message_id: str, doc: dict, previous: dict) -> None:
        txn = Transaction(
            [
                Delete(key, expect=previous),
                Put(self._dead_letter_key(message_id), json.dumps(doc)),
            ]
        )
        try:
            await self.state.transact(txn)
            logger.warning(
                "Queue %s: message %s dead-lettered after %d receives",
                self.name,
                message_id,
                previous["receive_count"],
            )
        except TransactionCanceled:
            pass

    async def ack(self, message: QueueMessage) -> bool:
        """Delete a processed message.

        Returns False when the receipt is stale (the message was redelivered
        to another consumer after its visibility timeout).
        """
        try:
            await self.state.transact(
                Transaction([Delete(self._key(message.message_id), expect={"receipt": message.receipt})])
            )
            return True
        except TransactionCanceled:
            logger.debug("Queue %s: stale receipt for %s", self.name, message.message_id)
            return False

    async def depth(self) -> int:
        return len(await self.state.scan_keys(self._key("*")))

    async def dead_letters(self) -> list[dict[str, Any]]:
        letters = []
        for key in await self.state.scan_keys(self._dead_letter_key("*")):
            doc = await self.state.get_json(key)
            if doc:
                letters.append(doc)
        return letters

    async def get(self, message_id: str) -> Optional[dict[str, Any]]:
        return await self.state.get_json(self._key(message_id))

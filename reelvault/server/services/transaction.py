"""All-or-nothing multi-item transactions over the state backend.

A :class:`Transaction` is a plain value: a list of typed operations, each with
its own precondition. Backends evaluate the whole list against a consistent
snapshot with :func:`apply_transaction` and either write every resulting
change or none of them.

Values touched by :class:`ConditionalUpdate` (and by ``Delete(expect=...)``)
must be JSON objects; ``Insert`` and ``Put`` store the given string as is.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from reelvault.common.constants import RESERVE_MAX_ATTEMPTS

if TYPE_CHECKING:
    from reelvault.server.services.state import StateManager

logger = logging.getLogger("reelvault.server.state")


@dataclass
class Insert:
    """Create ``key`` only if it does not exist yet."""

    key: str
    value: str


@dataclass
class Put:
    """Write ``key`` unconditionally."""

    key: str
    value: str


@dataclass
class ConditionalUpdate:
    """Update fields of an existing JSON document when its preconditions hold.

    ``expect`` requires exact field values, ``at_least`` requires numeric
    fields to be >= the given bound. ``increment`` adds deltas (optionally
    floored at zero), ``assign`` overwrites fields.
    """

    key: str
    expect: dict[str, Any] = field(default_factory=dict)
    at_least: dict[str, int] = field(default_factory=dict)
    increment: dict[str, int] = field(default_factory=dict)
    assign: dict[str, Any] = field(default_factory=dict)
    floor_zero: bool = False


@dataclass
class Delete:
    """Remove ``key``; optionally require it to exist and/or match fields."""

    key: str
    must_exist: bool = False
    expect: dict[str, Any] = field(default_factory=dict)


Operation = Union[Insert, Put, ConditionalUpdate, Delete]


@dataclass
class Transaction:
    """Ordered list of operations submitted atomically."""

    operations: list[Operation] = field(default_factory=list)

    def add(self, *ops: Operation) -> "Transaction":
        self.operations.extend(ops)
        return self

    @property
    def keys(self) -> list[str]:
        seen: dict[str, None] = {}
        for op in self.operations:
            seen.setdefault(op.key, None)
        return list(seen)

    def __len__(self) -> int:
        return len(self.operations)


class TransactionCanceled(Exception):
    """A precondition failed; nothing was written."""

    def __init__(self, index: int, operation: Operation, reason: str) -> None:
        self.index = index
        self.operation = operation
        self.reason = reason
        super().__init__(f"operation {index} ({type(operation).__name__} {operation.key}) failed: {reason}")


class RetriesExhausted(Exception):
    """Compare-and-swap gave up after its bounded number of attempts."""

    def __init__(self, attempts: int, last: Optional[TransactionCanceled]) -> None:
        self.attempts = attempts
        self.last = last
        super().__init__(f"gave up after {attempts} attempts: {last}")


def _load_doc(raw: Optional[str]) -> dict:
    doc = json.loads(raw) if raw else {}
    if not isinstance(doc, dict):
        raise ValueError("conditional operations need a JSON object value")
    return doc


def _fields_match(doc: dict, expect: dict[str, Any]) -> bool:
    return all(doc.get(name) == value for name, value in expect.items())


def apply_transaction(snapshot: dict[str, Optional[str]], txn: Transaction) -> dict[str, Optional[str]]:
    """Evaluate ``txn`` against ``snapshot`` (key -> value or None).

    Returns the writes to perform (value, or None for a delete).

    Raises:
        TransactionCanceled: on the first failing precondition.
    """
    working = dict(snapshot)
    writes: dict[str, Optional[str]] = {}

    for index, op in enumerate(txn.operations):
        current = working.get(op.key)

        if isinstance(op, Insert):
            if current is not None:
                raise TransactionCanceled(index, op, "already exists")
            new_value: Optional[str] = op.value

        elif isinstance(op, Put):
            new_value = op.value

        elif isinstance(op, Delete):
            if current is None:
                if op.must_exist or op.expect:
                    raise TransactionCanceled(index, op, "does not exist")
                continue
            if op.expect and not _fields_match(_load_doc(current), op.expect):
                raise TransactionCanceled(index, op, "condition not met")
            new_value = None

        elif isinstance(op, ConditionalUpdate):
            if current is None:
                raise TransactionCanceled(index, op, "does not exist")
            doc = _load_doc(current)
            if not _fields_match(doc, op.expect):
                raise TransactionCanceled(index, op, "condition not met")
            for name, bound in op.at_least.items():
                if int(doc.get(name) or 0) < bound:
                    raise TransactionCanceled(index, op, f"{name} below {bound}")
            for name, delta in op.increment.items():
                value = int(doc.get(name) or 0) + delta
                doc[name] = max(0, value) if op.floor_zero else value
            doc.update(op.assign)
            new_value = json.dumps(doc)

        else:
            raise TypeError(f"Unknown operation: {op!r}")

        working[op.key] = new_value
        writes[op.key] = new_value

    return writes


class CompareAndSwap:
    """Bounded optimistic retry loop around a read-then-write builder.

    The builder re-reads whatever it needs and returns the transaction to
    submit; it may raise to stop early (e.g. when capacity is gone).

    Usage:
        cas = CompareAndSwap(state, attempts=3)
        await cas.run(build_reserve_txn)
    """

    def __init__(self, state: "StateManager", attempts: int = RESERVE_MAX_ATTEMPTS, name: str = "cas") -> None:
        self.state = state
        self.attempts = attempts
        self.name = name

    async def run(self, build: Callable[[int], Awaitable[Transaction]]) -> Transaction:
        last: Optional[TransactionCanceled] = None
        for attempt in range(1, self.attempts + 1):
            txn = await build(attempt)
            try:
                await self.state.transact(txn)
                return txn
            except TransactionCanceled as e:
                last = e
                logger.debug("%s: attempt %d/%d conflicted: %s", self.name, attempt, self.attempts, e)
        raise RetriesExhausted(self.attempts, last)


class Compensations:
    """Rollback actions attached to forward steps, run newest first.

    A rollback that fails is logged and skipped; the reconciler is the
    safety net for anything left behind.
    """

    def __init__(self, context: str = "") -> None:
        self.context = context
        self._steps: list[tuple[str, Callable[[], Awaitable[Any]]]] = []

    def push(self, name: str, rollback: Callable[[], Awaitable[Any]]) -> None:
        self._steps.append((name, rollback))

    def discard(self) -> None:
        """Forward path finished; nothing to undo any more."""
        self._steps.clear()

    def __len__(self) -> int:
        return len(self._steps)

    async def rollback(self) -> list[str]:
        """Run all rollbacks; return the names of those that failed."""
        failed = []
        while self._steps:
            name, action = self._steps.pop()
            try:
                await action()
                logger.info("%s: rolled back %s", self.context or "compensation", name)
            except Exception as e:
                failed.append(name)
                logger.warning("%s: rollback %s failed: %s", self.context or "compensation", name, e)
        return failed

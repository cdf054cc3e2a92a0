"""Contract every state backend implements."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from reelvault.server.services.transaction import Transaction


class StateBackend(ABC):
    """Async string key/value store with atomic multi-key transactions.

    Values are opaque strings (JSON documents in practice). Single-key
    ``set(nx=True)`` is the only create-if-absent primitive outside
    :meth:`transact`; everything touching ledger totals goes through
    :meth:`transact` so preconditions and writes are evaluated together.
    """

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, nx: bool = False) -> bool:
        """Store ``value``; with ``nx`` only when ``key`` is absent.

        Returns False when ``nx`` is set and the key already existed.
        """

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Remove ``key``; 1 if it existed, else 0."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def scan(
        self,
        cursor: int,
        match: str = "*",
        count: int = 100,
    ) -> tuple[int, list[str]]:
        """One page of keys matching the glob ``match``.

        Start with ``cursor=0`` and pass back the returned cursor until it
        is 0 again. ``count`` is a page-size hint, not a guarantee.
        """

    @abstractmethod
    async def transact(self, txn: "Transaction") -> None:
        """Apply every operation of ``txn`` atomically, or none of them.

        Raises:
            TransactionCanceled: when any operation's precondition fails.
        """

    async def ping(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return self.__class__.__name__

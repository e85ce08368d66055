"""Remote cart document store contract.

The engine treats every call as fallible and asynchronous:
- queries and subscriptions raise GatewayUnavailable
- writes raise WriteRejected
No atomicity across keys is assumed.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from cartsync.cart.models import CartLine, LineKey


class ChangeKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    REPLACE = "replace"


@dataclass(frozen=True)
class CartChange:
    """
    One push notification for a user's cart.

    UPSERT carries ``line``, DELETE carries ``key``, REPLACE carries the full
    ``lines`` set.
    """
    kind: ChangeKind
    user_id: str
    key: Optional[LineKey] = None
    line: Optional[CartLine] = None
    lines: Tuple[CartLine, ...] = ()

    @classmethod
    def upserted(cls, line: CartLine) -> "CartChange":
        return cls(ChangeKind.UPSERT, line.user_id, key=line.key, line=line)

    @classmethod
    def deleted(cls, key: LineKey) -> "CartChange":
        return cls(ChangeKind.DELETE, key.user_id, key=key)

    @classmethod
    def replaced(cls, user_id: str, lines: List[CartLine]) -> "CartChange":
        return cls(ChangeKind.REPLACE, user_id, lines=tuple(lines))


class CartSubscription(ABC):
    """
    Cancellable stream of CartChange events for one user.

    Use as ``async with gateway.subscribe(uid) as sub: async for change in sub``.
    Leaving the block closes the subscription; iteration ends once closed.
    """

    def __init__(self, user_id: str):
        self.user_id = user_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._release()

    async def open(self) -> None:
        """Fix the stream position; every change made after this call is delivered. Idempotent."""

    async def _release(self) -> None:
        """Free gateway-side resources. Called once."""

    @abstractmethod
    async def _next_change(self) -> Optional[CartChange]:
        """Wait for the next change; None means the stream ended."""

    async def __aenter__(self) -> "CartSubscription":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __aiter__(self) -> "CartSubscription":
        return self

    async def __anext__(self) -> CartChange:
        if self._closed:
            raise StopAsyncIteration
        change = await self._next_change()
        if change is None or self._closed:
            raise StopAsyncIteration
        return change


class RemoteCartGateway(ABC):
    """Authoritative store of cart line documents."""

    @abstractmethod
    async def fetch_lines(self, user_id: str) -> List[CartLine]:
        """All lines for ``user_id`` (quantity >= 1), in first-add order."""

    @abstractmethod
    async def upsert_line(self, line: CartLine) -> None:
        """Write the full line document under ``line.key``."""

    @abstractmethod
    async def delete_line(self, key: LineKey) -> None:
        """Delete the document for ``key``; a missing document is not an error."""

    @abstractmethod
    def subscribe(self, user_id: str) -> CartSubscription:
        """Open a live change stream for ``user_id``."""

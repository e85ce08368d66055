"""In-process cart gateway for local development, demos and tests."""
import asyncio
from dataclasses import replace
from typing import Dict, List, Optional, Set

from cartsync.cart.models import CartLine, LineKey
from cartsync.errors import WriteRejected
from cartsync.gateway.base import CartChange, CartSubscription, RemoteCartGateway


class _QueueSubscription(CartSubscription):
    def __init__(self, gateway: "InMemoryCartGateway", user_id: str):
        super().__init__(user_id)
        self._gateway = gateway
        self._queue: "asyncio.Queue[Optional[CartChange]]" = asyncio.Queue()

    def push(self, change: CartChange) -> None:
        if not self.closed:
            self._queue.put_nowait(change)

    async def _next_change(self) -> Optional[CartChange]:
        return await self._queue.get()

    async def _release(self) -> None:
        self._gateway._subscribers.discard(self)
        # Wake a pending reader so its loop can exit
        self._queue.put_nowait(None)


class InMemoryCartGateway(RemoteCartGateway):
    """
    Dict-backed document store with per-write push notifications.

    Documents are keyed by ``LineKey.doc_id`` and keep first-add order.
    """

    def __init__(self):
        self._docs: Dict[str, CartLine] = {}
        self._subscribers: Set[_QueueSubscription] = set()

    def document(self, key: LineKey) -> Optional[CartLine]:
        """Current stored line, for inspection."""
        line = self._docs.get(key.doc_id)
        return replace(line) if line else None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def fetch_lines(self, user_id: str) -> List[CartLine]:
        return [replace(line) for line in self._docs.values() if line.user_id == user_id]

    async def upsert_line(self, line: CartLine) -> None:
        if line.quantity < 1:
            raise WriteRejected(f"Refusing to persist quantity {line.quantity}", doc_id=line.key.doc_id)
        stored = replace(line)
        self._docs[line.key.doc_id] = stored
        self._publish(CartChange.upserted(replace(stored)))

    async def delete_line(self, key: LineKey) -> None:
        if self._docs.pop(key.doc_id, None) is not None:
            self._publish(CartChange.deleted(key))

    def subscribe(self, user_id: str) -> CartSubscription:
        subscription = _QueueSubscription(self, user_id)
        self._subscribers.add(subscription)
        return subscription

    def _publish(self, change: CartChange) -> None:
        for subscription in list(self._subscribers):
            if subscription.user_id == change.user_id:
                subscription.push(change)

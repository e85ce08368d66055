"""Cart service: the single cart capability shared by every surface."""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from cartsync.cart.models import CartLine, CatalogItem, CheckoutPayload, LineKey, WriteResult
from cartsync.cart.pricing import effective_price, has_discount, line_total, lines_total
from cartsync.cart.sync import SyncEngine, SyncState
from cartsync.identity import IdentitySource
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.services.money import to_float

logger = get_logger(__name__)


class CheckoutHandler(Protocol):
    """Receives the selected lines; order creation is entirely its business."""

    async def submit(self, payload: CheckoutPayload) -> Any: ...


class CartService:
    """
    Cart operations for the feed, the catalog and the cart page.

    Features:
    - Optimistic quantity changes with rollback on remote failure
    - Catalog edits refresh the line snapshot; cart-page edits keep it
    - Partial checkout of selected lines
    """

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    @property
    def store(self):
        return self.engine.store

    @property
    def selection(self):
        return self.engine.selection

    @property
    def state(self) -> SyncState:
        return self.engine.state

    async def start(self, identity: IdentitySource) -> None:
        await self.engine.start(identity)

    async def stop(self) -> None:
        await self.engine.stop()

    async def refresh(self) -> List[CartLine]:
        return await self.engine.refresh()

    def _key(self, item_id: str) -> Optional[LineKey]:
        user_id = self.engine.user_id
        return LineKey(user_id, item_id) if user_id else None

    # ==================== CATALOG / FEED ====================

    async def set_quantity(self, item: CatalogItem, quantity: int) -> WriteResult:
        return await self.engine.set_quantity(item, quantity)

    async def add(self, item: CatalogItem, quantity: int = 1) -> WriteResult:
        """Add ``quantity`` units of a catalog item (snapshot taken now)."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValueError("quantity must be a positive integer")
        self.engine.require_synced()
        return await self.engine.set_quantity(item, self.quantity_of(item.item_id) + quantity)

    async def increment(self, item: CatalogItem) -> WriteResult:
        return await self.add(item, 1)

    async def decrement(self, item: CatalogItem) -> WriteResult:
        """One unit less; the line is deleted at zero. No-op for items not in the cart."""
        self.engine.require_synced()
        current = self.quantity_of(item.item_id)
        if current <= 0:
            return WriteResult.success(self._key(item.item_id))
        return await self.engine.set_quantity(item, current - 1)

    async def remove(self, item: CatalogItem) -> WriteResult:
        self.engine.require_synced()
        return await self.engine.set_quantity(item, 0)

    def quantity_of(self, item_id: str) -> int:
        key = self._key(item_id)
        return self.engine.quantity_of(key) if key else 0

    def quantities(self) -> Dict[str, int]:
        """item_id -> quantity, for quantity badges on catalog cards."""
        return {line.item_id: line.quantity for line in self.store.all() if line.quantity > 0}

    def cart_count(self) -> int:
        """Total units in the cart (footer / header badge)."""
        return sum(line.quantity for line in self.store.all() if line.quantity > 0)

    # ==================== CART PAGE ====================

    def lines(self) -> List[CartLine]:
        return [line for line in self.store.all() if line.quantity > 0]

    async def _edit_line(self, key: LineKey, delta: Optional[int]) -> WriteResult:
        self.engine.require_synced()
        line = self.store.get(key)
        if line is None:
            return WriteResult.success(key)
        quantity = 0 if delta is None else max(0, line.quantity + delta)
        # Keep the snapshot the line was added with; the page never re-reads the catalog
        return await self.engine.set_quantity(line.to_catalog_item(), quantity)

    async def increment_line(self, key: LineKey) -> WriteResult:
        return await self._edit_line(key, 1)

    async def decrement_line(self, key: LineKey) -> WriteResult:
        return await self._edit_line(key, -1)

    async def remove_line(self, key: LineKey) -> WriteResult:
        return await self._edit_line(key, None)

    def toggle(self, key: LineKey) -> bool:
        return self.selection.toggle(key)

    def select_all(self) -> None:
        self.selection.select_all()

    def is_selected(self, key: LineKey) -> bool:
        return self.selection.is_selected(key)

    def subtotal(self) -> Decimal:
        return lines_total(self.lines())

    def selected_subtotal(self) -> Decimal:
        return self.selection.selected_subtotal()

    def selected_count(self) -> int:
        return self.selection.selected_count()

    def build_checkout_payload(self) -> CheckoutPayload:
        return self.selection.build_checkout_payload()

    async def checkout(self, handler: CheckoutHandler) -> CheckoutPayload:
        """
        Hand the selected lines to the checkout collaborator.

        Raises:
            EmptySelection: if nothing is selected
        """
        payload = self.build_checkout_payload()
        logger.info(
            f"Checkout hand-off for {sanitize_id_for_logging(payload.user_id)}: "
            f"{len(payload.lines)} line(s), subtotal {payload.subtotal}"
        )
        await handler.submit(payload)
        return payload

    def get_cart_summary(self) -> dict:
        """Cart snapshot as plain JSON-friendly values."""
        lines = self.lines()
        if not lines:
            return {
                "is_empty": True,
                "total_items": 0,
                "items": [],
                "subtotal": 0.0,
                "selected_count": 0,
                "selected_total": 0.0,
            }
        return {
            "is_empty": False,
            "total_items": self.cart_count(),
            "items": [
                {
                    "item_id": line.item_id,
                    "name": line.name,
                    "source": line.source,
                    "image": line.image,
                    "delivery_estimate": line.delivery_estimate,
                    "quantity": line.quantity,
                    "unit_price": to_float(line.unit_price),
                    "discount_percent": to_float(line.discount_percent),
                    "has_discount": has_discount(line.discount_percent),
                    "final_price": to_float(effective_price(line.unit_price, line.discount_percent)),
                    "total": to_float(line_total(line)),
                    "selected": self.is_selected(line.key),
                }
                for line in lines
            ],
            "subtotal": to_float(self.subtotal()),
            "selected_count": self.selected_count(),
            "selected_total": to_float(self.selected_subtotal()),
        }


# Singleton instance
_cart_service: Optional[CartService] = None


def get_cart_service() -> CartService:
    """Get CartService singleton backed by the Upstash Redis gateway."""
    global _cart_service
    if _cart_service is None:
        from cartsync.gateway.redis import RedisCartGateway
        _cart_service = CartService(SyncEngine(RedisCartGateway()))
    return _cart_service

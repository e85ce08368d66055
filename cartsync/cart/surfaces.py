"""View adapters for the three cart surfaces.

All of them go through the same CartService; none keeps its own quantity
bookkeeping.
"""
from typing import List, Optional

from cartsync.cart.models import CatalogItem, CheckoutPayload, LineKey, WriteResult
from cartsync.cart.pricing import effective_price, has_discount, line_total
from cartsync.cart.service import CartService, CheckoutHandler
from cartsync.config import CURRENCY
from cartsync.services.money import format_money


def _plural(count: int, word: str = "item") -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


class CatalogSurface:
    """Item cards with +/- controls and a footer badge (filtered catalog)."""

    def __init__(self, service: CartService, currency: str = CURRENCY):
        self.service = service
        self.currency = currency

    def card(self, item: CatalogItem) -> dict:
        discounted = has_discount(item.discount_percent)
        return {
            "item_id": item.item_id,
            "name": item.name,
            "source": item.source,
            "image": item.image,
            "delivery": f"{item.delivery_estimate} mins",
            "price": format_money(item.unit_price, self.currency),
            "final_price": format_money(effective_price(item.unit_price, item.discount_percent), self.currency),
            "discount_label": f"({item.discount_percent.normalize():f}% OFF)" if discounted else None,
            "in_cart": self.service.quantity_of(item.item_id),
        }

    def cards(self, items: List[CatalogItem]) -> List[dict]:
        return [self.card(item) for item in items]

    def footer(self) -> Optional[str]:
        """Badge text such as '3 items in Cart'; None when the cart is empty."""
        count = self.service.cart_count()
        if count == 0:
            return None
        return f"{_plural(count)} in Cart"

    async def add(self, item: CatalogItem) -> WriteResult:
        return await self.service.increment(item)

    async def remove(self, item: CatalogItem) -> WriteResult:
        return await self.service.decrement(item)


class FeedSurface(CatalogSurface):
    """Home feed: same cards and controls as the catalog, searchable by name."""

    @staticmethod
    def search(items: List[CatalogItem], query: str) -> List[CatalogItem]:
        needle = query.strip().lower()
        if not needle:
            return list(items)
        return [item for item in items if needle in item.name.lower()]


class CartPageSurface:
    """Dedicated cart page: rows with selection, +/-/trash and the proceed button."""

    def __init__(self, service: CartService, currency: str = CURRENCY):
        self.service = service
        self.currency = currency

    def rows(self) -> List[dict]:
        rows = []
        for line in self.service.lines():
            rows.append({
                "key": line.key,
                "name": line.name,
                "source": line.source,
                "image": line.image,
                "delivery": f"Delivery: {line.delivery_estimate} mins",
                "quantity": line.quantity,
                "total": format_money(line_total(line), self.currency),
                "discounted": has_discount(line.discount_percent),
                "selected": self.service.is_selected(line.key),
            })
        return rows

    def selected_label(self) -> str:
        count = self.service.selected_count()
        return f"Selected ({_plural(count)})"

    def selected_total(self) -> str:
        return format_money(self.service.selected_subtotal(), self.currency)

    def proceed_label(self) -> str:
        count = self.service.selected_count()
        return f"Proceed to Buy ({_plural(count)}) - {self.selected_total()}"

    @property
    def can_proceed(self) -> bool:
        return self.service.selected_count() > 0

    def toggle(self, key: LineKey) -> bool:
        return self.service.toggle(key)

    def select_all(self) -> None:
        self.service.select_all()

    async def increment(self, key: LineKey) -> WriteResult:
        return await self.service.increment_line(key)

    async def decrement(self, key: LineKey) -> WriteResult:
        return await self.service.decrement_line(key)

    async def remove(self, key: LineKey) -> WriteResult:
        return await self.service.remove_line(key)

    async def proceed(self, handler: CheckoutHandler) -> CheckoutPayload:
        return await self.service.checkout(handler)

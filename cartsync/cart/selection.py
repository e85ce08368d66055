"""Checkout selection over the cached cart lines."""
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List

from cartsync.cart.models import CheckoutPayload, LineKey
from cartsync.cart.pricing import lines_total
from cartsync.cart.store import CartLineStore
from cartsync.errors import EmptySelection


class SelectionManager:
    """
    Tracks which cart lines are marked for the next checkout.

    Entries only exist for keys present in the bound store; the manager
    registers itself for store removals so a removed line never leaves a
    dangling selection behind.
    """

    def __init__(self, store: CartLineStore):
        self._store = store
        self._selected: Dict[LineKey, bool] = {}
        store.add_remove_listener(self.clear)

    def toggle(self, key: LineKey) -> bool:
        """Flip the flag for ``key``; keys not in the store are ignored. Returns the new flag."""
        if key not in self._store:
            return False
        flag = not self._selected.get(key, False)
        self._selected[key] = flag
        return flag

    def select_all(self) -> None:
        for key in self._store.keys():
            self._selected[key] = True

    def clear(self, key: LineKey) -> None:
        self._selected.pop(key, None)

    def reset(self) -> None:
        self._selected.clear()

    def is_selected(self, key: LineKey) -> bool:
        return self._selected.get(key, False) and key in self._store

    def __contains__(self, key: object) -> bool:
        return key in self._selected

    def selected_keys(self) -> List[LineKey]:
        """Selected keys in store order."""
        return [line.key for line in self._selected_lines()]

    def _selected_lines(self):
        return [
            line for line in self._store.all()
            if self._selected.get(line.key, False) and line.quantity > 0
        ]

    def selected_subtotal(self) -> Decimal:
        return lines_total(self._selected_lines())

    def selected_count(self) -> int:
        return len(self._selected_lines())

    def build_checkout_payload(self) -> CheckoutPayload:
        """
        Snapshot the selected lines for the checkout collaborator.

        Raises:
            EmptySelection: if nothing is selected
        """
        lines = self._selected_lines()
        if not lines:
            raise EmptySelection()
        return CheckoutPayload(
            user_id=lines[0].user_id,
            lines=tuple(replace(line) for line in lines),
            subtotal=lines_total(lines),
        )

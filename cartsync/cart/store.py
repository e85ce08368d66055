"""In-memory cache of the signed-in user's cart lines.

Pure state: no remote I/O happens here. SyncEngine decides what to write and
when; the store only remembers the result.
"""
from collections import OrderedDict
from typing import Callable, Iterable, Iterator, List, Optional

from cartsync.cart.models import CartLine, LineKey
from cartsync.logging import get_logger

logger = get_logger(__name__)

RemoveListener = Callable[[LineKey], None]


class CartLineStore:
    """Ordered mapping of LineKey -> CartLine (insertion order for stable rendering)."""

    def __init__(self):
        self._lines: "OrderedDict[LineKey, CartLine]" = OrderedDict()
        self._remove_listeners: List[RemoveListener] = []

    def add_remove_listener(self, listener: RemoveListener) -> None:
        """Call ``listener(key)`` whenever a line leaves the store."""
        self._remove_listeners.append(listener)

    def _notify_removed(self, key: LineKey) -> None:
        for listener in self._remove_listeners:
            listener(key)

    def replace_all(self, lines: Iterable[CartLine]) -> List[CartLine]:
        """Swap the whole cache for ``lines``; keys that disappear fire removal listeners."""
        fresh: "OrderedDict[LineKey, CartLine]" = OrderedDict()
        for line in lines:
            fresh[line.key] = line
        dropped = [key for key in self._lines if key not in fresh]
        self._lines = fresh
        for key in dropped:
            self._notify_removed(key)
        return list(fresh.values())

    def upsert(self, line: CartLine) -> None:
        # OrderedDict keeps the original slot of an existing key
        self._lines[line.key] = line

    def remove(self, key: LineKey) -> Optional[CartLine]:
        line = self._lines.pop(key, None)
        if line is not None:
            self._notify_removed(key)
        return line

    def get(self, key: LineKey) -> Optional[CartLine]:
        return self._lines.get(key)

    def all(self) -> List[CartLine]:
        return list(self._lines.values())

    def keys(self) -> List[LineKey]:
        return list(self._lines.keys())

    def clear(self) -> None:
        keys = list(self._lines.keys())
        self._lines.clear()
        for key in keys:
            self._notify_removed(key)
        if keys:
            logger.debug(f"Cleared {len(keys)} cached cart lines")

    def __contains__(self, key: object) -> bool:
        return key in self._lines

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[CartLine]:
        return iter(self.all())

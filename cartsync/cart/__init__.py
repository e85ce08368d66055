"""Cart package: models, pricing, local store, selection, sync engine and service facade."""
from .models import CartLine, CatalogItem, CheckoutPayload, LineKey, WriteResult
from .selection import SelectionManager
from .store import CartLineStore

__all__ = [
    "CartLine",
    "CatalogItem",
    "CheckoutPayload",
    "LineKey",
    "WriteResult",
    "CartLineStore",
    "SelectionManager",
    "SyncEngine",
    "SyncState",
    "CartNotice",
    "CartService",
    "get_cart_service",
]


def __getattr__(name):
    """Lazy access: the engine depends on cartsync.gateway, which depends on these models."""
    if name in ("SyncEngine", "SyncState", "CartNotice"):
        from . import sync
        return getattr(sync, name)
    if name in ("CartService", "get_cart_service"):
        from . import service
        return getattr(service, name)
    raise AttributeError(f"module 'cartsync.cart' has no attribute '{name}'")

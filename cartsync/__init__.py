"""
cartsync - per-user cart sync and pricing engine

This package contains:
- cart: models, pricing, local store, selection, sync engine, service facade
- gateway: remote cart document store contract and implementations
- identity: sign-in/sign-out collaborator contract
- db: Upstash Redis client and key layout

Note: Imports are lazy so that importing the package does not pull in the
Redis client or read credentials.
"""

__all__ = [
    "get_cart_service",
    "get_redis",
]


def __getattr__(name):
    """Lazy attribute access."""
    if name == "get_cart_service":
        from cartsync.cart import get_cart_service
        return get_cart_service
    elif name == "get_redis":
        from cartsync.db import get_redis
        return get_redis
    raise AttributeError(f"module 'cartsync' has no attribute '{name}'")

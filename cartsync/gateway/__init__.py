"""Remote cart gateways.

RedisCartGateway is imported lazily so the contract and the in-memory
gateway can be used without Redis credentials.
"""
from .base import CartChange, CartSubscription, ChangeKind, RemoteCartGateway
from .memory import InMemoryCartGateway

__all__ = [
    "CartChange",
    "CartSubscription",
    "ChangeKind",
    "RemoteCartGateway",
    "InMemoryCartGateway",
    "RedisCartGateway",
]


def __getattr__(name):
    if name == "RedisCartGateway":
        from .redis import RedisCartGateway
        return RedisCartGateway
    raise AttributeError(f"module 'cartsync.gateway' has no attribute '{name}'")

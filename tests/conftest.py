"""Pytest configuration and fixtures"""
import asyncio
import os
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

# Set test environment variables
os.environ.setdefault("UPSTASH_REDIS_REST_URL", "https://test.upstash.io")
os.environ.setdefault("UPSTASH_REDIS_REST_TOKEN", "test_token")
os.environ.setdefault("CART_RETRY_MIN_WAIT_SECS", "0")
os.environ.setdefault("CART_RETRY_MAX_WAIT_SECS", "0")

from cartsync.cart.models import CartLine, CatalogItem, LineKey  # noqa: E402
from cartsync.cart.service import CartService  # noqa: E402
from cartsync.cart.sync import SyncEngine  # noqa: E402
from cartsync.errors import GatewayUnavailable, WriteRejected  # noqa: E402
from cartsync.gateway.memory import InMemoryCartGateway  # noqa: E402


class ControllableGateway(InMemoryCartGateway):
    """In-memory gateway with switchable failures and a write log."""

    def __init__(self):
        super().__init__()
        self.writes = []
        self.fetch_calls = 0
        self.fail_fetches = 0  # number of upcoming fetches to fail
        self.fail_writes = False
        self.write_delay = 0  # event-loop turns to yield before each write

    async def _yield(self):
        for _ in range(self.write_delay):
            await asyncio.sleep(0)

    async def fetch_lines(self, user_id):
        self.fetch_calls += 1
        if self.fail_fetches:
            self.fail_fetches -= 1
            raise GatewayUnavailable("Cart service unavailable: connection reset")
        return await super().fetch_lines(user_id)

    async def upsert_line(self, line):
        await self._yield()
        if self.fail_writes:
            raise WriteRejected("permission denied", doc_id=line.key.doc_id)
        self.writes.append(("upsert", line.item_id, line.quantity))
        await super().upsert_line(line)

    async def delete_line(self, key):
        await self._yield()
        if self.fail_writes:
            raise WriteRejected("permission denied", doc_id=key.doc_id)
        self.writes.append(("delete", key.item_id, 0))
        await super().delete_line(key)

    async def seed(self, line):
        """Write as another device would, bypassing the failure switches."""
        await InMemoryCartGateway.upsert_line(self, line)


@pytest.fixture
def settle():
    """Let background tasks (subscription, identity) drain their queues."""
    async def _settle(rounds: int = 20):
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle


@pytest.fixture
def gateway():
    """In-process remote store"""
    return ControllableGateway()


@pytest.fixture
def engine(gateway):
    """Sync engine with instant retries"""
    return SyncEngine(gateway, load_attempts=3, retry_min_wait=0, retry_max_wait=0)


@pytest.fixture
def service(engine):
    """Cart service over the test engine"""
    return CartService(engine)


@pytest.fixture
def notices(engine):
    """Collects failure notices fired by the engine"""
    received = []
    engine.add_failure_listener(received.append)
    return received


@pytest.fixture
def item_a():
    """Discounted catalog item"""
    return CatalogItem(
        item_id="item-a",
        name="Paneer Tikka",
        unit_price=Decimal("100"),
        discount_percent=Decimal("20"),
        source="Hotel Saravana",
        image="https://img.example/paneer.jpg",
        delivery_estimate=30,
    )


@pytest.fixture
def item_b():
    """Full-price catalog item"""
    return CatalogItem(
        item_id="item-b",
        name="Masala Dosa",
        unit_price=Decimal("50"),
        source="Hotel Annapoorna",
        image="https://img.example/dosa.jpg",
        delivery_estimate=20,
    )


@pytest.fixture
def sample_line():
    """Cart line as stored remotely"""
    return CartLine(
        user_id="user-123",
        item_id="item-a",
        quantity=2,
        unit_price=Decimal("100"),
        discount_percent=Decimal("20"),
        name="Paneer Tikka",
        source="Hotel Saravana",
        image="https://img.example/paneer.jpg",
        delivery_estimate=30,
    )


@pytest.fixture
def key_a():
    return LineKey("user-123", "item-a")


@pytest.fixture
def mock_redis():
    """Mock async Upstash Redis client"""
    redis = AsyncMock()
    redis.zrange.return_value = []
    redis.mget.return_value = []
    redis.xrevrange.return_value = []
    redis.xrange.return_value = []
    return redis

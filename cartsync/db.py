"""
Redis Client - Upstash Redis connection and cart key layout.

The remote cart document store lives in Upstash Redis:
- one JSON document per cart line
- a per-user index of line documents
- a per-user change stream for live updates
"""

from typing import Optional

from upstash_redis.asyncio import Redis as AsyncRedis

from cartsync.config import UPSTASH_REDIS_REST_TOKEN, UPSTASH_REDIS_REST_URL

_redis_client: Optional[AsyncRedis] = None


def get_redis() -> AsyncRedis:
    """
    Get async Upstash Redis client (singleton).

    Uses standard Upstash env var names:
    - UPSTASH_REDIS_REST_URL
    - UPSTASH_REDIS_REST_TOKEN
    """
    global _redis_client

    if _redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _redis_client = AsyncRedis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _redis_client


class RedisKeys:
    """Redis key prefixes for cart data."""

    CART_LINE = "cart:line:"  # cart:line:{user_id}_{item_id} -> JSON document
    CART_INDEX = "cart:index:"  # cart:index:{user_id} -> sorted set of doc ids
    CART_STREAM = "stream:realtime:cart:"  # stream:realtime:cart:{user_id}

    @staticmethod
    def line_key(doc_id: str) -> str:
        return f"{RedisKeys.CART_LINE}{doc_id}"

    @staticmethod
    def index_key(user_id: str) -> str:
        return f"{RedisKeys.CART_INDEX}{user_id}"

    @staticmethod
    def stream_key(user_id: str) -> str:
        return f"{RedisKeys.CART_STREAM}{user_id}"

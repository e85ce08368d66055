"""Upstash Redis cart document store.

Layout (see cartsync.db.RedisKeys):
- cart:line:{user_id}_{item_id}   JSON CartLineDocument
- cart:index:{user_id}            sorted set of doc ids, scored by first-add time
- stream:realtime:cart:{user_id}  change events, one per successful write

Note: upstash-redis REST API does NOT support blocking xread, so
subscriptions poll the stream with xrange + asyncio.sleep().
"""
import asyncio
import json
import time
from collections import deque
from typing import Any, Deque, List, Optional

from pydantic import ValidationError

from cartsync.cart.models import CartLine, CartLineDocument, LineKey
from cartsync.config import MAX_EVENTS_PER_POLL, POLL_INTERVAL_SECS
from cartsync.db import RedisKeys, get_redis
from cartsync.errors import GatewayUnavailable, WriteRejected
from cartsync.gateway.base import CartChange, CartSubscription, RemoteCartGateway
from cartsync.logging import get_logger, sanitize_id_for_logging, sanitize_string_for_logging

logger = get_logger(__name__)

EVENT_LINE_UPSERTED = "cart.line.upserted"
EVENT_LINE_DELETED = "cart.line.deleted"


def _parse_document(raw: Any) -> Optional[CartLineDocument]:
    """Decode a stored document; corrupted payloads yield None."""
    try:
        if isinstance(raw, (str, bytes)):
            return CartLineDocument.model_validate_json(raw)
        return CartLineDocument.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Skipping corrupted cart document: {e.error_count()} validation error(s)")
        return None


def _parse_event(fields: dict) -> Optional[CartChange]:
    data = fields.get("data", "{}")
    try:
        payload = json.loads(data) if isinstance(data, str) else data
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON in cart stream: {sanitize_string_for_logging(str(data), 80)}")
        return None
    if not isinstance(payload, dict):
        logger.warning(f"Invalid cart stream payload: {sanitize_string_for_logging(str(data), 80)}")
        return None

    event = payload.get("event")
    if event == EVENT_LINE_UPSERTED:
        document = _parse_document(payload.get("line") or {})
        return CartChange.upserted(document.to_line()) if document else None
    if event == EVENT_LINE_DELETED:
        user_id, item_id = payload.get("user_id"), payload.get("item_id")
        if user_id and item_id:
            return CartChange.deleted(LineKey(str(user_id), str(item_id)))
    logger.warning(f"Ignoring unknown cart stream event: {event!r}")
    return None


class RedisCartSubscription(CartSubscription):
    """Polls the user's change stream, starting after its tail at first read."""

    def __init__(self, gateway: "RedisCartGateway", user_id: str, poll_interval: float):
        super().__init__(user_id)
        self._gateway = gateway
        self._stream_key = RedisKeys.stream_key(user_id)
        self._poll_interval = poll_interval
        self._last_id: Optional[str] = None
        self._buffer: Deque[CartChange] = deque()

    async def open(self) -> None:
        if self._last_id is not None:
            return
        try:
            tail = await self._gateway.redis.xrevrange(self._stream_key, end="+", start="-", count=1)
        except GatewayUnavailable:
            raise
        except Exception as e:
            raise GatewayUnavailable(f"Cart change stream unavailable: {e}") from e
        self._last_id = tail[0][0] if tail else "0"

    async def _poll(self) -> None:
        start = "-" if self._last_id == "0" else f"({self._last_id}"
        entries = await self._gateway.redis.xrange(
            self._stream_key, start=start, end="+", count=MAX_EVENTS_PER_POLL
        )
        for entry_id, fields in entries or []:
            self._last_id = entry_id
            change = _parse_event(fields)
            if change is not None and change.user_id == self.user_id:
                self._buffer.append(change)

    async def _next_change(self) -> Optional[CartChange]:
        while not self.closed:
            if self._buffer:
                return self._buffer.popleft()
            await self.open()
            try:
                await self._poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Cart stream read failed for {sanitize_id_for_logging(self.user_id)}: {e}")
                raise GatewayUnavailable(f"Cart change stream unavailable: {e}") from e
            if not self._buffer:
                await asyncio.sleep(self._poll_interval)
        return None


class RedisCartGateway(RemoteCartGateway):
    """Cart lines as Upstash Redis JSON documents with a per-user change stream."""

    def __init__(self, redis=None, poll_interval: float = POLL_INTERVAL_SECS):
        self._redis = redis  # Lazy initialization
        self._poll_interval = poll_interval

    @property
    def redis(self):
        """Get Redis client (lazy initialization)."""
        if self._redis is None:
            try:
                self._redis = get_redis()
            except ValueError as e:
                raise GatewayUnavailable(f"Redis not available: {e}") from e
        return self._redis

    async def fetch_lines(self, user_id: str) -> List[CartLine]:
        try:
            doc_ids = await self.redis.zrange(RedisKeys.index_key(user_id), 0, -1)
            if not doc_ids:
                return []
            raw_docs = await self.redis.mget(*[RedisKeys.line_key(doc_id) for doc_id in doc_ids])
        except GatewayUnavailable:
            raise
        except Exception as e:
            logger.error(f"Failed to fetch cart for {sanitize_id_for_logging(user_id)}: {e}")
            raise GatewayUnavailable(f"Cart service unavailable: {e}") from e

        lines = []
        for doc_id, raw in zip(doc_ids, raw_docs):
            if raw is None:
                # Index entry outlived its document (delete raced with a reader)
                continue
            document = _parse_document(raw)
            if document is None or document.userId != user_id:
                continue
            lines.append(document.to_line())
        return lines

    async def upsert_line(self, line: CartLine) -> None:
        key = line.key
        try:
            document = line.to_document()
        except ValidationError as e:
            raise WriteRejected(f"Invalid cart line {key.doc_id}: {e.error_count()} error(s)", doc_id=key.doc_id) from e

        try:
            # Index before document; readers skip index entries that have no document
            await self.redis.zadd(RedisKeys.index_key(key.user_id), {key.doc_id: time.time()}, nx=True)
            await self.redis.set(RedisKeys.line_key(key.doc_id), document.model_dump_json())
        except Exception as e:
            logger.error(f"Failed to write cart line {sanitize_id_for_logging(key.doc_id)}: {e}")
            raise WriteRejected(f"Cart write failed: {e}", doc_id=key.doc_id) from e

        await self._emit(key.user_id, {
            "event": EVENT_LINE_UPSERTED,
            "user_id": key.user_id,
            "item_id": key.item_id,
            "line": document.model_dump(mode="json"),
        })

    async def delete_line(self, key: LineKey) -> None:
        try:
            await self.redis.delete(RedisKeys.line_key(key.doc_id))
            await self.redis.zrem(RedisKeys.index_key(key.user_id), key.doc_id)
        except Exception as e:
            logger.error(f"Failed to delete cart line {sanitize_id_for_logging(key.doc_id)}: {e}")
            raise WriteRejected(f"Cart delete failed: {e}", doc_id=key.doc_id) from e

        await self._emit(key.user_id, {
            "event": EVENT_LINE_DELETED,
            "user_id": key.user_id,
            "item_id": key.item_id,
        })

    def subscribe(self, user_id: str) -> CartSubscription:
        return RedisCartSubscription(self, user_id, self._poll_interval)

    async def _emit(self, user_id: str, payload: dict) -> None:
        """Append a change event. The document write already succeeded, so failures only log."""
        try:
            await self.redis.xadd(RedisKeys.stream_key(user_id), "*", {"data": json.dumps(payload)})
        except Exception as e:
            logger.warning(f"Failed to emit {payload['event']}: {e}", exc_info=True)

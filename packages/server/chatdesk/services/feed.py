"""Row-level change feed.

Every committed insert/update/delete on instances, tickets and messages is
published as a ChangeEvent. Viewers subscribe with a table name plus an
equality filter (e.g. ``{"ticket_id": "tkt_123"}``).

Two backends:
  - RedisChangeFeed: pub/sub channel per table ("chatdesk:feed:{table}"),
    filtering happens subscriber-side. Used when several API processes
    serve the same tenants.
  - InMemoryChangeFeed: asyncio queues inside one process.

Delivery is at-most-once. Storage is the source of truth; subscribers that
see FeedDisconnected must backfill from storage.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import inspect

from chatdesk.errors import FeedDisconnected
from chatdesk.logging_config import get_logger
from chatdesk.models.base import now_ms

logger = get_logger(__name__)

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_KINDS = (EVENT_INSERT, EVENT_UPDATE, EVENT_DELETE)


def as_row(obj: Any) -> dict:
    """Plain dict of an ORM object's column values."""
    mapper = inspect(obj).mapper
    return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


@dataclass
class ChangeEvent:
    table: str
    kind: str
    row: dict
    ts: int = field(default_factory=now_ms)

    @classmethod
    def insert(cls, table: str, obj: Any) -> "ChangeEvent":
        return cls(table=table, kind=EVENT_INSERT, row=as_row(obj))

    @classmethod
    def update(cls, table: str, obj: Any) -> "ChangeEvent":
        return cls(table=table, kind=EVENT_UPDATE, row=as_row(obj))

    @classmethod
    def delete(cls, table: str, obj: Any) -> "ChangeEvent":
        return cls(table=table, kind=EVENT_DELETE, row=as_row(obj))

    def matches(self, table: str, filters: dict, kinds: Iterable[str]) -> bool:
        if self.table != table or self.kind not in kinds:
            return False
        return all(self.row.get(key) == value for key, value in filters.items())

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "kind": self.kind, "row": self.row, "ts": self.ts}
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeEvent":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(table=data["table"], kind=data["kind"], row=data["row"], ts=data["ts"])


class Subscription:
    """Async iterator of matching events. Raises FeedDisconnected on drop."""

    def __init__(self, table: str, filters: Optional[dict], kinds: Optional[Iterable[str]]):
        self.table = table
        self.filters = dict(filters or {})
        self.kinds = tuple(kinds or EVENT_KINDS)
        self.closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        raise NotImplementedError

    async def close(self) -> None:
        self.closed = True


class ChangeFeed:
    """Publish/subscribe interface shared by both backends."""

    async def publish(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    async def publish_all(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            await self.publish(event)

    async def subscribe(
        self,
        table: str,
        filters: Optional[dict] = None,
        kinds: Optional[Iterable[str]] = None,
    ) -> Subscription:
        raise NotImplementedError

    async def close(self) -> None:
        pass


# ─── In-process backend ───────────────────────────────────────────────────────

_DROPPED = object()


class _MemorySubscription(Subscription):
    def __init__(self, feed: "InMemoryChangeFeed", table, filters, kinds):
        super().__init__(table, filters, kinds)
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()

    def offer(self, event: ChangeEvent) -> None:
        if event.matches(self.table, self.filters, self.kinds):
            self._queue.put_nowait(event)

    def drop(self) -> None:
        self._queue.put_nowait(_DROPPED)

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DROPPED:
            await self.close()
            raise FeedDisconnected(f"Subscription to {self.table} dropped")
        return item

    async def close(self) -> None:
        await super().close()
        self._feed._subscriptions.discard(self)


class InMemoryChangeFeed(ChangeFeed):
    def __init__(self):
        self._subscriptions: set[_MemorySubscription] = set()

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions):
            sub.offer(event)

    async def subscribe(self, table, filters=None, kinds=None) -> Subscription:
        sub = _MemorySubscription(self, table, filters, kinds)
        self._subscriptions.add(sub)
        return sub

    def drop_subscriptions(self) -> int:
        """Disconnect every live subscription (used on shutdown and in tests)."""
        subs = list(self._subscriptions)
        for sub in subs:
            sub.drop()
        return len(subs)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        self.drop_subscriptions()


# ─── Redis backend ────────────────────────────────────────────────────────────


class _RedisSubscription(Subscription):
    def __init__(self, client: aioredis.Redis, channel: str, table, filters, kinds):
        super().__init__(table, filters, kinds)
        self._channel = channel
        self._pubsub = client.pubsub()

    async def open(self) -> None:
        try:
            await self._pubsub.subscribe(self._channel)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise FeedDisconnected(f"Could not subscribe to {self._channel}: {e}") from e

    async def __anext__(self) -> ChangeEvent:
        while not self.closed:
            try:
                msg = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except (RedisConnectionError, RedisTimeoutError) as e:
                await self.close()
                raise FeedDisconnected(f"Lost {self._channel}: {e}") from e

            if not msg or msg["type"] != "message":
                continue
            try:
                event = ChangeEvent.from_json(msg["data"])
            except (json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Ignoring malformed feed payload on {self._channel}: {e}")
                continue
            if event.matches(self.table, self.filters, self.kinds):
                return event
        raise StopAsyncIteration

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except (RedisConnectionError, RedisTimeoutError):
            pass


class RedisChangeFeed(ChangeFeed):
    def __init__(self, client: aioredis.Redis, prefix: str = "chatdesk:feed"):
        self._client = client
        self._prefix = prefix

    def channel_for(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    async def publish(self, event: ChangeEvent) -> None:
        try:
            await self._client.publish(self.channel_for(event.table), event.to_json())
        except (RedisConnectionError, RedisTimeoutError) as e:
            # Rows are committed already; viewers recover through backfill
            logger.warning(f"Change feed publish failed for {event.table}/{event.kind}: {e}")

    async def subscribe(self, table, filters=None, kinds=None) -> Subscription:
        sub = _RedisSubscription(self._client, self.channel_for(table), table, filters, kinds)
        await sub.open()
        return sub

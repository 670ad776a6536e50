"""
Key expiration notifiers.

A notifier turns the backend's "key expired" signal into an async stream of
``ExpirationEvent``. Delivery is at-most-once: events emitted while nobody is
subscribed are lost, and there is no acknowledgement or replay.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import CacheBackendError

from .store import InMemoryKeyValueStore


EXPIRED_EVENT = "expired"


@dataclass(frozen=True)
class ExpirationEvent:
    """A single key expiration notification."""
    event_type: str
    key: str


def expired_channel(db: int) -> str:
    """Redis keyevent channel announcing expired keys of logical database ``db``."""
    return f"__keyevent@{db}__:{EXPIRED_EVENT}"


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisExpirationNotifier:
    """Streams expired keys from Redis keyevent notifications.

    Uses its own client because a connection in subscribe mode cannot issue
    regular commands.
    """

    def __init__(self, client: redis.Redis, db: int):
        self.client = client
        self.db = db
        self.channel = expired_channel(db)
        self.logger = get_logger("catchments.cache.notifier")
        self._pubsub = None

    @classmethod
    def from_url(cls, redis_url: str, db: int = 0) -> "RedisExpirationNotifier":
        client = redis.from_url(redis_url, db=db, socket_connect_timeout=5)
        return cls(client, db)

    @property
    def subscribed(self) -> bool:
        return self._pubsub is not None

    async def start(self):
        """Subscribe to the expiration channel."""
        try:
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(self.channel)
        except RedisError as e:
            self._pubsub = None
            self.logger.error("Failed to subscribe to expirations", channel=self.channel, error=str(e))
            raise CacheBackendError("Redis subscribe failed", {"channel": self.channel, "error": str(e)}) from e

        self.logger.info("Subscribed to key expirations", channel=self.channel)

    async def events(self) -> AsyncIterator[ExpirationEvent]:
        """Yield an event for every key expiring in the watched database."""
        if self._pubsub is None:
            raise CacheBackendError("Expiration notifier not started")

        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            channel = _text(message.get("channel", self.channel))
            yield ExpirationEvent(
                event_type=channel.rsplit(":", 1)[-1],
                key=_text(message["data"])
            )

    async def stop(self):
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        await self.client.aclose()
        self.logger.info("Expiration notifier stopped", channel=self.channel)


class InMemoryExpirationNotifier:
    """Streams expirations announced by an ``InMemoryKeyValueStore``."""

    _STOP = object()

    def __init__(self, store: InMemoryKeyValueStore):
        self.store = store
        self.channel = expired_channel(store.db)
        self._queue: Optional[asyncio.Queue] = None

    @property
    def subscribed(self) -> bool:
        return self._queue is not None

    async def start(self):
        self._queue = self.store.subscribe_expirations()

    async def events(self) -> AsyncIterator[ExpirationEvent]:
        if self._queue is None:
            raise CacheBackendError("Expiration notifier not started")

        queue = self._queue
        while True:
            item = await queue.get()
            if item is self._STOP:
                return
            yield ExpirationEvent(event_type=EXPIRED_EVENT, key=item)

    async def stop(self):
        if self._queue is not None:
            self.store.unsubscribe_expirations(self._queue)
            self._queue.put_nowait(self._STOP)
            self._queue = None

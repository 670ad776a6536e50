"""
TTL-aware key/value stores backing the cache.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from shared.logging import get_logger
from shared.errors import CacheBackendError


# Redis must publish keyevent notifications (E) for expired keys (x)
REQUIRED_NOTIFY_FLAGS = "Ex"


class KeyValueStore(ABC):
    """Minimal store contract used by the cache layer.

    Values are opaque bytes. Every write is a full overwrite that (re)starts
    the key's TTL.
    """

    db: int = 0

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored value or None when absent or expired."""

    @abstractmethod
    async def set_with_ttl(self, key: str, ttl_seconds: int, value: bytes) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    async def ping(self) -> bool:
        return True

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Release connections. No-op by default."""


def merge_notify_flags(current: str, required: str = REQUIRED_NOTIFY_FLAGS) -> str:
    """Return ``current`` keyspace notification flags extended with ``required``.

    ``A`` already implies ``x``, so it is never duplicated.
    """
    flags = current or ""
    for flag in required:
        if flag in flags:
            continue
        if flag == "x" and "A" in flags:
            continue
        flags += flag
    return flags


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store using GET/SETEX on one logical database."""

    def __init__(self, client: redis.Redis, configure_notifications: bool = True):
        self.client = client
        self.configure_notifications = configure_notifications
        self.db = int(client.connection_pool.connection_kwargs.get("db", 0) or 0)
        self.logger = get_logger("catchments.cache.redis")

    @classmethod
    def from_url(cls, redis_url: str, db: int = 0, configure_notifications: bool = True) -> "RedisKeyValueStore":
        client = redis.from_url(
            redis_url,
            db=db,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30
        )
        return cls(client, configure_notifications=configure_notifications)

    async def start(self):
        """Check the connection and make sure expirations are published."""
        try:
            await self.client.ping()
        except RedisError as e:
            self.logger.error("Failed to connect to Redis", error=str(e))
            raise CacheBackendError("Redis unavailable", {"error": str(e)}) from e

        if self.configure_notifications:
            await self._enable_expiration_events()

        self.logger.info("Redis store started", db=self.db)

    async def _enable_expiration_events(self):
        try:
            config = await self.client.config_get("notify-keyspace-events")
            current = _decode(config.get("notify-keyspace-events") or config.get(b"notify-keyspace-events") or "")
            wanted = merge_notify_flags(current)
            if wanted != current:
                await self.client.config_set("notify-keyspace-events", wanted)
                self.logger.info("Enabled keyspace expiration events", flags=wanted)
        except ResponseError as e:
            # Managed Redis often forbids CONFIG; the operator must set the flags
            self.logger.warning(
                "Could not configure keyspace notifications",
                error=str(e),
                required=REQUIRED_NOTIFY_FLAGS
            )

    async def stop(self):
        await self.client.aclose()
        self.logger.info("Redis store stopped")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            raise CacheBackendError("Redis GET failed", {"key": key, "error": str(e)}) from e

    async def set_with_ttl(self, key: str, ttl_seconds: int, value: bytes) -> None:
        try:
            await self.client.setex(key, ttl_seconds, value)
        except RedisError as e:
            raise CacheBackendError("Redis SETEX failed", {"key": key, "error": str(e)}) from e


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store with real TTLs and expiration events.

    Expired keys are announced to every queue returned by
    ``subscribe_expirations``, mirroring Redis keyevent notifications.
    """

    def __init__(self, db: int = 0):
        self.db = db
        self._data: Dict[str, Tuple[bytes, float]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._subscribers: List[asyncio.Queue] = []
        self.logger = get_logger("catchments.cache.memory")

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if asyncio.get_running_loop().time() >= expires_at:
            self._expire(key)
            return None
        return value

    async def set_with_ttl(self, key: str, ttl_seconds: int, value: bytes) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_timer(key)
        self._data[key] = (bytes(value), loop.time() + ttl_seconds)
        self._timers[key] = loop.call_later(ttl_seconds, self._expire, key)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before ``key`` expires, None when absent."""
        entry = self._data.get(key)
        if entry is None:
            return None
        return max(0.0, entry[1] - asyncio.get_running_loop().time())

    def keys(self) -> List[str]:
        return list(self._data)

    def subscribe_expirations(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe_expirations(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def expire_now(self, key: str) -> bool:
        """Expire ``key`` immediately, as if its TTL had elapsed."""
        return self._expire(key)

    def _expire(self, key: str) -> bool:
        self._cancel_timer(key)
        if self._data.pop(key, None) is None:
            return False
        self.logger.debug("Key expired", key=key)
        for queue in list(self._subscribers):
            queue.put_nowait(key)
        return True

    def _cancel_timer(self, key: str):
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    async def stop(self):
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)

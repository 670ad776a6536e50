"""
Generic get-or-compute-and-cache primitive.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import CacheBackendError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .keys import CacheKeyBuilder
from .store import KeyValueStore


DEFAULT_CACHE_TTL = 12 * 60 * 60

_MISS = object()


def serialize(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def deserialize(raw: bytes) -> Any:
    return json.loads(raw)


class CacheAsideResolver:
    """Cache-aside over a ``KeyValueStore``.

    On a hit the cached value is returned and nothing is computed. On a miss
    the value is computed, written back with the configured TTL when
    ``should_cache`` accepts it, and returned either way. Falsy results are
    not cached by default so an empty upstream answer is retried on the next
    read.

    With ``single_flight`` enabled, concurrent misses for one key share a
    single computation instead of each calling upstream.
    """

    def __init__(self,
                 store: KeyValueStore,
                 ttl_seconds: int = DEFAULT_CACHE_TTL,
                 *,
                 keys: Optional[CacheKeyBuilder] = None,
                 metrics: Optional[MetricsCollector] = None,
                 single_flight: bool = True):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.keys = keys or CacheKeyBuilder()
        self.metrics = metrics
        self.single_flight = single_flight
        self.logger = get_logger("catchments.cache.resolver")
        self._in_flight: Dict[str, asyncio.Future] = {}

    async def resolve(self,
                      key: str,
                      compute: Callable[[], Awaitable[Any]],
                      *,
                      bypass_cache: bool = False,
                      should_cache: Callable[[Any], bool] = bool,
                      ttl: Optional[int] = None) -> Any:
        """Return the cached value for ``key`` or compute, cache and return it.

        Args:
            key: Cache key.
            compute: Zero-argument coroutine function producing a fresh value.
            bypass_cache: Skip the read and always recompute.
            should_cache: Predicate deciding whether a computed value is written.
            ttl: TTL override in seconds.
        """
        if not bypass_cache:
            cached = await self.read(key)
            if cached is not _MISS:
                return cached

        if not self.single_flight:
            return await self._compute_and_store(key, compute, should_cache, ttl)

        flight = self._in_flight.get(key)
        if flight is None:
            flight = asyncio.ensure_future(self._compute_and_store(key, compute, should_cache, ttl))
            self._in_flight[key] = flight
            flight.add_done_callback(lambda done: self._land(key, done))
        else:
            self.logger.debug("Joining in-flight computation", key=key)

        return await asyncio.shield(flight)

    async def read(self, key: str) -> Any:
        """Return the deserialized cached value, or the miss sentinel.

        A payload that cannot be decoded, or a backend failure, counts as a miss.
        """
        try:
            raw = await self.store.get(key)
        except CacheBackendError as e:
            self.logger.warning("Cache read failed, treating as miss", key=key, error=e.message)
            self._count("cache_backend_errors_total", key, operation="get")
            self._count("cache_misses_total", key)
            return _MISS

        if raw is None:
            self._count("cache_misses_total", key)
            return _MISS

        try:
            value = deserialize(raw)
        except (ValueError, UnicodeDecodeError) as e:
            self.logger.warning("Discarding undecodable cache entry", key=key, error=str(e))
            self._count("cache_decode_errors_total", key)
            self._count("cache_misses_total", key)
            return _MISS

        self._count("cache_hits_total", key)
        return value

    async def write(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Write ``value`` under ``key``; returns False when the backend refused it."""
        ttl_seconds = ttl or self.ttl_seconds
        try:
            await self.store.set_with_ttl(key, ttl_seconds, serialize(value))
        except CacheBackendError as e:
            self.logger.warning("Cache write failed, value not cached", key=key, error=e.message)
            self._count("cache_backend_errors_total", key, operation="set")
            return False
        self._count("cache_writes_total", key)
        self.logger.debug("Cached value", key=key, ttl=ttl_seconds)
        return True

    async def _compute_and_store(self, key, compute, should_cache, ttl) -> Any:
        value = await compute()
        if should_cache(value):
            await self.write(key, value, ttl)
        else:
            self.logger.debug("Computed value not cached", key=key)
        return value

    def _land(self, key: str, flight: asyncio.Future):
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]
        # Retrieve the exception so an abandoned flight does not warn
        if not flight.cancelled():
            flight.exception()

    def _count(self, metric: str, key: str, **labels):
        if self.metrics is None:
            return
        kind = self.keys.kind_of(key)
        self.metrics.increment_counter(metric, kind=kind.value if kind else "other", **labels)

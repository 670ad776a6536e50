"""
Cache-aside building blocks: keys, stores, expiration notifiers and the resolver.
"""

from .keys import CacheKeyKind, CacheKeyBuilder, build_cache_key
from .store import KeyValueStore, RedisKeyValueStore, InMemoryKeyValueStore
from .notifier import ExpirationEvent, RedisExpirationNotifier, InMemoryExpirationNotifier
from .resolver import CacheAsideResolver

__all__ = [
    "CacheKeyKind",
    "CacheKeyBuilder",
    "build_cache_key",
    "KeyValueStore",
    "RedisKeyValueStore",
    "InMemoryKeyValueStore",
    "ExpirationEvent",
    "RedisExpirationNotifier",
    "InMemoryExpirationNotifier",
    "CacheAsideResolver",
]

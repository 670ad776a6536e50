"""
Unit tests for the key/value stores.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_catchments.app.cache.store import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    merge_notify_flags,
)
from shared.errors import CacheBackendError


def make_redis_client(db=2):
    client = MagicMock()
    client.connection_pool.connection_kwargs = {"db": db}
    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.setex = AsyncMock(return_value=True)
    client.config_get = AsyncMock(return_value={"notify-keyspace-events": ""})
    client.config_set = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


class TestMergeNotifyFlags:
    """Test cases for keyspace notification flag merging."""

    @pytest.mark.parametrize("current,expected", [
        ("", "Ex"),
        ("Ex", "Ex"),
        ("K", "KEx"),
        ("KEA", "KEA"),
        ("xE", "xE"),
        ("Eg", "Egx"),
    ])
    def test_merge(self, current, expected):
        assert merge_notify_flags(current) == expected


class TestRedisKeyValueStore:
    """Test cases for RedisKeyValueStore."""

    @pytest.fixture
    def client(self):
        return make_redis_client()

    @pytest.fixture
    def store(self, client):
        return RedisKeyValueStore(client)

    def test_db_taken_from_client(self, store):
        assert store.db == 2

    @pytest.mark.asyncio
    async def test_get_returns_bytes(self, store, client):
        client.get.return_value = b'{"a":1}'

        assert await store.get("mike:catchmentids") == b'{"a":1}'
        client.get.assert_awaited_once_with("mike:catchmentids")

    @pytest.mark.asyncio
    async def test_set_with_ttl_uses_setex(self, store, client):
        await store.set_with_ttl("mike:catchmentids", 43200, b"[]")

        client.setex.assert_awaited_once_with("mike:catchmentids", 43200, b"[]")

    @pytest.mark.asyncio
    async def test_start_enables_expiration_events(self, store, client):
        await store.start()

        client.ping.assert_awaited_once()
        client.config_set.assert_awaited_once_with("notify-keyspace-events", "Ex")

    @pytest.mark.asyncio
    async def test_start_keeps_existing_flags(self, store, client):
        client.config_get.return_value = {"notify-keyspace-events": "AKE"}

        await store.start()

        client.config_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_tolerates_forbidden_config(self, store, client):
        client.config_get.side_effect = ResponseError("unknown command 'CONFIG'")

        await store.start()

        client.config_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_without_notification_setup(self, client):
        store = RedisKeyValueStore(client, configure_notifications=False)

        await store.start()

        client.config_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_failure(self, store, client):
        client.ping.side_effect = RedisConnectionError("refused")

        with pytest.raises(CacheBackendError) as exc_info:
            await store.start()

        assert exc_info.value.code == "CACHE_BACKEND_ERROR"

    @pytest.mark.asyncio
    async def test_get_failure_mapped(self, store, client):
        client.get.side_effect = RedisConnectionError("reset")

        with pytest.raises(CacheBackendError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_ping_reports_failure(self, store, client):
        client.ping.side_effect = RedisConnectionError("refused")

        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, store, client):
        await store.stop()

        client.aclose.assert_awaited_once()

    def test_from_url_passes_db(self):
        store = RedisKeyValueStore.from_url("redis://localhost:6379", db=5)

        assert store.db == 5


class TestInMemoryKeyValueStore:
    """Test cases for InMemoryKeyValueStore."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        store = InMemoryKeyValueStore()

        await store.set_with_ttl("k", 60, b"v")

        assert await store.get("k") == b"v"
        assert 59 < store.ttl("k") <= 60
        await store.stop()

    @pytest.mark.asyncio
    async def test_missing_key(self):
        store = InMemoryKeyValueStore()

        assert await store.get("nope") is None
        assert store.ttl("nope") is None

    @pytest.mark.asyncio
    async def test_key_expires_and_is_announced(self):
        store = InMemoryKeyValueStore()
        queue = store.subscribe_expirations()

        await store.set_with_ttl("k", 0.01, b"v")
        expired = await asyncio.wait_for(queue.get(), timeout=1.0)

        assert expired == "k"
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_overwrite_restarts_ttl(self):
        store = InMemoryKeyValueStore()
        queue = store.subscribe_expirations()

        await store.set_with_ttl("k", 0.02, b"old")
        await store.set_with_ttl("k", 60, b"new")
        await asyncio.sleep(0.05)

        assert queue.empty()
        assert await store.get("k") == b"new"
        await store.stop()

    @pytest.mark.asyncio
    async def test_expire_now(self):
        store = InMemoryKeyValueStore()
        queue = store.subscribe_expirations()
        await store.set_with_ttl("k", 60, b"v")

        assert store.expire_now("k") is True
        assert store.expire_now("k") is False
        assert queue.get_nowait() == "k"
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_unsubscribed_queue_not_notified(self):
        store = InMemoryKeyValueStore()
        queue = store.subscribe_expirations()
        store.unsubscribe_expirations(queue)
        await store.set_with_ttl("k", 60, b"v")

        store.expire_now("k")

        assert queue.empty()

"""
Unit tests for key expiration notifiers.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_catchments.app.cache.notifier import (
    ExpirationEvent,
    InMemoryExpirationNotifier,
    RedisExpirationNotifier,
    expired_channel,
)
from service_catchments.app.cache.store import InMemoryKeyValueStore
from shared.errors import CacheBackendError


def make_pubsub(messages):
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()

    async def listen():
        for message in messages:
            yield message

    pubsub.listen = listen
    return pubsub


async def first_event(notifier):
    async for event in notifier.events():
        return event


async def collect_events(notifier):
    return [event async for event in notifier.events()]


class TestRedisExpirationNotifier:
    """Test cases for RedisExpirationNotifier."""

    def test_channel_scoped_to_db(self):
        assert expired_channel(2) == "__keyevent@2__:expired"

    @pytest.mark.asyncio
    async def test_start_subscribes(self):
        pubsub = make_pubsub([])
        client = MagicMock()
        client.pubsub.return_value = pubsub
        notifier = RedisExpirationNotifier(client, db=2)

        await notifier.start()

        assert notifier.subscribed is True
        pubsub.subscribe.assert_awaited_once_with("__keyevent@2__:expired")

    @pytest.mark.asyncio
    async def test_start_failure(self):
        pubsub = make_pubsub([])
        pubsub.subscribe.side_effect = RedisConnectionError("refused")
        client = MagicMock()
        client.pubsub.return_value = pubsub
        notifier = RedisExpirationNotifier(client, db=2)

        with pytest.raises(CacheBackendError):
            await notifier.start()

        assert notifier.subscribed is False

    @pytest.mark.asyncio
    async def test_events_yield_expired_keys(self):
        pubsub = make_pubsub([
            {"type": "subscribe", "channel": b"__keyevent@2__:expired", "data": 1},
            {"type": "message", "channel": b"__keyevent@2__:expired", "data": b"mike:catchmentdata:123"},
            {"type": "message", "channel": "__keyevent@2__:expired", "data": "mike:stationsdata:1/A"},
        ])
        client = MagicMock()
        client.pubsub.return_value = pubsub
        notifier = RedisExpirationNotifier(client, db=2)
        await notifier.start()

        events = [event async for event in notifier.events()]

        assert events == [
            ExpirationEvent("expired", "mike:catchmentdata:123"),
            ExpirationEvent("expired", "mike:stationsdata:1/A"),
        ]

    @pytest.mark.asyncio
    async def test_events_require_start(self):
        notifier = RedisExpirationNotifier(MagicMock(), db=2)

        with pytest.raises(CacheBackendError):
            async for _ in notifier.events():
                pass

    @pytest.mark.asyncio
    async def test_stop_releases_connection(self):
        pubsub = make_pubsub([])
        client = MagicMock()
        client.pubsub.return_value = pubsub
        client.aclose = AsyncMock()
        notifier = RedisExpirationNotifier(client, db=2)
        await notifier.start()

        await notifier.stop()

        pubsub.unsubscribe.assert_awaited_once_with("__keyevent@2__:expired")
        pubsub.aclose.assert_awaited_once()
        client.aclose.assert_awaited_once()
        assert notifier.subscribed is False


class TestInMemoryExpirationNotifier:
    """Test cases for InMemoryExpirationNotifier."""

    @pytest.mark.asyncio
    async def test_streams_store_expirations(self):
        store = InMemoryKeyValueStore(db=2)
        notifier = InMemoryExpirationNotifier(store)
        await notifier.start()
        await store.set_with_ttl("mike:catchmentdata:7", 60, b"{}")

        store.expire_now("mike:catchmentdata:7")
        event = await asyncio.wait_for(first_event(notifier), timeout=1.0)

        assert event == ExpirationEvent("expired", "mike:catchmentdata:7")
        assert notifier.channel == "__keyevent@2__:expired"
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_stop_ends_stream(self):
        store = InMemoryKeyValueStore()
        notifier = InMemoryExpirationNotifier(store)
        await notifier.start()
        consumer = asyncio.create_task(collect_events(notifier))
        await asyncio.sleep(0)
        await notifier.stop()

        assert await asyncio.wait_for(consumer, timeout=1.0) == []

    @pytest.mark.asyncio
    async def test_expirations_before_start_are_lost(self):
        store = InMemoryKeyValueStore()
        notifier = InMemoryExpirationNotifier(store)
        await store.set_with_ttl("k", 60, b"v")
        store.expire_now("k")

        await notifier.start()
        await store.set_with_ttl("k2", 60, b"v")
        store.expire_now("k2")
        event = await asyncio.wait_for(first_event(notifier), timeout=1.0)

        assert event.key == "k2"
        await notifier.stop()

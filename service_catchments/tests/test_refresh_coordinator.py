"""
Unit tests for the refresh coordinator and the cache warmer.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_catchments.app.cache.keys import CacheKeyBuilder
from service_catchments.app.cache.notifier import ExpirationEvent, InMemoryExpirationNotifier
from service_catchments.app.cache.store import InMemoryKeyValueStore
from service_catchments.app.refresh.coordinator import RefreshCoordinator
from service_catchments.app.refresh.warmer import CatchmentCacheWarmer, extract_catchment_ids
from shared.metrics import MetricsCollector


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_aggregator(**kwargs):
    aggregator = MagicMock()
    aggregator.keys = CacheKeyBuilder()
    aggregator.get_catchment_data = AsyncMock(**kwargs)
    return aggregator


class TestRefreshCoordinator:
    """Test cases for RefreshCoordinator."""

    @pytest.fixture
    def store(self):
        return InMemoryKeyValueStore(db=2)

    @pytest.fixture
    def notifier(self, store):
        return InMemoryExpirationNotifier(store)

    @pytest.mark.asyncio
    async def test_expired_catchment_data_refreshed_with_bypass(self, store, notifier):
        """An expiration of mike:catchmentdata:123 rebuilds catchment 123 without a reader."""
        aggregator = make_aggregator(return_value={"type": "FeatureCollection", "features": []})
        coordinator = RefreshCoordinator(notifier, aggregator, retry_delay=0.01)
        await notifier.start()
        await coordinator.start()

        await store.set_with_ttl("mike:catchmentdata:123", 60, b"{}")
        store.expire_now("mike:catchmentdata:123")
        await wait_until(lambda: aggregator.get_catchment_data.await_count == 1)

        aggregator.get_catchment_data.assert_awaited_once_with("123", True)
        await coordinator.stop()
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_other_keys_ignored(self, notifier):
        aggregator = make_aggregator(return_value=None)
        metrics = MetricsCollector("catchments")
        coordinator = RefreshCoordinator(notifier, aggregator, metrics=metrics)
        await notifier.start()
        await coordinator.start()

        assert coordinator.handle_event(ExpirationEvent("expired", "mike:stationsdata:123/A")) is None
        assert coordinator.handle_event(ExpirationEvent("expired", "mike:catchmentids")) is None
        assert coordinator.handle_event(ExpirationEvent("expired", "other:catchmentdata:1")) is None
        await asyncio.sleep(0.01)

        aggregator.get_catchment_data.assert_not_called()
        assert metrics.get_sample_value("expiration_events_total", {"action": "ignored"}) == 3.0
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_failed_refresh_retried_until_success(self, notifier):
        aggregator = make_aggregator(side_effect=[ConnectionError("down"), ConnectionError("down"), {"features": []}])
        metrics = MetricsCollector("catchments")
        coordinator = RefreshCoordinator(notifier, aggregator, retry_delay=0.01, metrics=metrics)
        await notifier.start()
        await coordinator.start()

        coordinator.handle_event(ExpirationEvent("expired", "mike:catchmentdata:42"))
        await wait_until(lambda: aggregator.get_catchment_data.await_count == 3)
        await wait_until(lambda: coordinator.state()["active_refreshes"] == 0)

        assert metrics.get_sample_value("refresh_attempts_total", {"status": "failure"}) == 2.0
        assert metrics.get_sample_value("refresh_attempts_total", {"status": "success"}) == 1.0
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_running_refresh_not_duplicated(self, notifier):
        release = asyncio.Event()

        async def slow_refresh(catchment_id, bypass_cache):
            await release.wait()
            return {"features": []}

        aggregator = make_aggregator(side_effect=slow_refresh)
        coordinator = RefreshCoordinator(notifier, aggregator, retry_delay=0.01)
        await notifier.start()
        await coordinator.start()

        first = coordinator.schedule_refresh("7")
        second = coordinator.schedule_refresh("7")
        other = coordinator.schedule_refresh("8")
        await asyncio.sleep(0.01)

        assert first is second
        assert other is not first
        assert aggregator.get_catchment_data.await_count == 2
        release.set()
        await asyncio.gather(first, other)
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_stop_ends_failing_chains(self, notifier):
        aggregator = make_aggregator(side_effect=ConnectionError("down"))
        coordinator = RefreshCoordinator(notifier, aggregator, retry_delay=60.0)
        await notifier.start()
        await coordinator.start()

        task = coordinator.schedule_refresh("42")
        await wait_until(lambda: aggregator.get_catchment_data.await_count == 1)
        await asyncio.wait_for(coordinator.stop(), timeout=1.0)

        assert task.done()
        assert coordinator.running is False

    @pytest.mark.asyncio
    async def test_state(self, notifier):
        coordinator = RefreshCoordinator(notifier, make_aggregator(return_value=None))

        assert coordinator.state() == {"running": False, "active_refreshes": 0, "queued": 0}

        await notifier.start()
        await coordinator.start()
        assert coordinator.state()["running"] is True
        await coordinator.stop()
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_listener_failure_is_logged(self):
        class DroppingNotifier:
            channel = "__keyevent@2__:expired"

            async def events(self):
                yield ExpirationEvent("expired", "mike:catchmentdata:5")
                raise ConnectionError("Connection closed by server.")

        aggregator = make_aggregator(return_value={"features": []})
        coordinator = RefreshCoordinator(DroppingNotifier(), aggregator, retry_delay=0.01)
        coordinator.logger = MagicMock()
        await coordinator.start()

        await wait_until(lambda: not coordinator.running)
        await wait_until(lambda: aggregator.get_catchment_data.await_count == 1)

        coordinator.logger.error.assert_called_once()
        args, kwargs = coordinator.logger.error.call_args
        assert args == ("Expiration listener failed",)
        assert kwargs["channel"] == "__keyevent@2__:expired"
        assert "Connection closed" in kwargs["error"]
        await coordinator.stop()


class TestCatchmentCacheWarmer:
    """Test cases for CatchmentCacheWarmer."""

    def test_extract_catchment_ids(self):
        assert extract_catchment_ids([{"Id": "1"}, {"id": 2}, "3", {"Name": "x"}, ""]) == ["1", "2", "3"]
        assert extract_catchment_ids(None) == []

    @pytest.mark.asyncio
    async def test_warm_all_listed_catchments(self):
        aggregator = MagicMock()
        aggregator.list_catchment_ids = AsyncMock(return_value=[{"Id": "1"}, {"Id": "2"}, {"Id": "3"}])

        async def rebuild(catchment_id, bypass_cache=False):
            if catchment_id == "2":
                return None
            if catchment_id == "3":
                raise ConnectionError("down")
            return {"features": []}

        aggregator.get_catchment_data = AsyncMock(side_effect=rebuild)
        warmer = CatchmentCacheWarmer(aggregator, concurrency=2)

        summary = await warmer.warm()

        assert summary == {
            "planned": 3,
            "warmed": ["1"],
            "empty": ["2"],
            "errors": {"3": "down"},
        }
        aggregator.get_catchment_data.assert_any_await("1", bypass_cache=True)

    @pytest.mark.asyncio
    async def test_warm_selected_catchments(self):
        aggregator = MagicMock()
        aggregator.list_catchment_ids = AsyncMock()
        aggregator.get_catchment_data = AsyncMock(return_value={"features": []})
        warmer = CatchmentCacheWarmer(aggregator)

        summary = await warmer.warm(["9"])

        assert summary["warmed"] == ["9"]
        aggregator.list_catchment_ids.assert_not_called()

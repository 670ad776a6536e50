"""
Catchment Cache service.

Serves catchments, stations and aggregated station forecasts from the MIKE
provider through a Redis read-through cache, and refreshes aggregated
catchment data as soon as its cache key expires.
"""

from typing import Dict, List, Optional

from fastapi import Query

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError, ValidationError

from .adapters.mike_client import MikeDataProvider
from .aggregation.aggregator import CatchmentAggregator
from .cache.keys import CacheKeyBuilder
from .cache.notifier import InMemoryExpirationNotifier, RedisExpirationNotifier
from .cache.resolver import CacheAsideResolver
from .cache.store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from .refresh.coordinator import RefreshCoordinator


SERVICE_NAME = "catchments"
SERVICE_PORT = 8020


class CatchmentService(BaseService):
    """Catchment Cache service implementation.

    Components are built from configuration unless passed in explicitly.
    """

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 *,
                 store: Optional[KeyValueStore] = None,
                 notifier=None,
                 provider=None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.store = store or self._build_store()
        self.notifier = notifier or self._build_notifier()
        self.provider = provider or MikeDataProvider(
            self.config.mike_api_url,
            timeout=self.config.mike_request_timeout,
            metrics=self.metrics
        )

        self.keys = CacheKeyBuilder(self.config.cache_key_prefix)
        self.resolver = CacheAsideResolver(
            self.store,
            self.config.cache_ttl_seconds,
            keys=self.keys,
            metrics=self.metrics,
            single_flight=self.config.single_flight
        )
        self.aggregator = CatchmentAggregator(self.provider, self.resolver, self.keys)
        self.refresh_coordinator = RefreshCoordinator(
            self.notifier,
            self.aggregator,
            self.keys,
            retry_delay=self.config.refresh_retry_delay_seconds,
            metrics=self.metrics
        )

        self._setup_catchment_routes()

    def _build_store(self) -> KeyValueStore:
        if self.config.cache_backend == "memory":
            return InMemoryKeyValueStore(db=self.config.redis_db)
        return RedisKeyValueStore.from_url(
            self.config.redis_url,
            db=self.config.redis_db,
            configure_notifications=self.config.configure_keyspace_notifications
        )

    def _build_notifier(self):
        if isinstance(self.store, InMemoryKeyValueStore):
            return InMemoryExpirationNotifier(self.store)
        return RedisExpirationNotifier.from_url(self.config.redis_url, db=self.store.db)

    def _setup_catchment_routes(self):
        """Set up catchment routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Catchment Cache Service",
                "version": "1.0.0",
                "capabilities": ["cache_aside", "proactive_refresh"]
            }

        @self.app.get("/catchments")
        async def list_catchments():
            """List catchment ids."""
            return await self.aggregator.list_catchment_ids()

        @self.app.get("/catchments/details")
        async def get_catchment_details(ids: List[str] = Query(default=[])):
            """Catchment details for the given ids, in the given order."""
            if not ids:
                raise ValidationError("Query parameter 'ids' is required")
            return await self.aggregator.get_catchment_details(ids)

        @self.app.get("/catchments/{catchment_id}/stations")
        async def get_catchment_stations(catchment_id: str):
            """Stations of a catchment."""
            stations = await self.aggregator.get_catchment_stations(catchment_id)
            if not stations:
                raise NotFoundError("Catchment has no stations", {"catchment_id": catchment_id})
            return stations

        @self.app.get("/catchments/{catchment_id}/stations/{station_id}/data")
        async def get_station_data(catchment_id: str, station_id: str):
            """Raw time series of one station."""
            return await self.aggregator.get_station_data(f"{catchment_id}/{station_id}")

        @self.app.get("/catchments/{catchment_id}/data")
        async def get_catchment_data(catchment_id: str, refresh: bool = False):
            """Aggregated forecast collection of a catchment."""
            data = await self.aggregator.get_catchment_data(catchment_id, bypass_cache=refresh)
            if data is None:
                raise NotFoundError("Catchment has no stations", {"catchment_id": catchment_id})
            return data

    async def start(self):
        """Open the store, subscribe to expirations and start refreshing."""
        await self.store.start()
        if self.config.refresh_enabled:
            await self.notifier.start()
            await self.refresh_coordinator.start()
        self.logger.info(
            "Catchment service started",
            backend=self.config.cache_backend,
            db=self.store.db,
            ttl_seconds=self.config.cache_ttl_seconds,
            refresh_enabled=self.config.refresh_enabled
        )

    async def stop(self):
        """Stop service components."""
        await self.refresh_coordinator.stop()
        if self.notifier.subscribed:
            await self.notifier.stop()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        await self.store.stop()
        self.logger.info("Catchment service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "cache": "ok" if await self.store.ping() else "unavailable",
            "expiration_listener": "ok" if self.refresh_coordinator.running else "stopped",
        }


def create_app():
    """Create catchment service application."""
    service = CatchmentService()
    return service.app


if __name__ == "__main__":
    service = CatchmentService()
    service.run()

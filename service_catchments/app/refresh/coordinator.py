"""
Refresh coordinator.

Listens for expired ``catchmentdata`` keys and rebuilds the aggregate right
away, bypassing the cache read, so readers do not pay the miss after a TTL
runs out. A listener task turns notifications into queued catchment ids; a
dispatcher task starts one never-give-up refresh chain per catchment.
"""

import asyncio
from typing import Any, Dict, Optional

from shared.logging import get_logger, set_catchment_context
from shared.metrics import MetricsCollector
from shared.retry import retry_forever, RetryCancelled, DEFAULT_RETRY_FOREVER_DELAY

from ..aggregation.aggregator import CatchmentAggregator
from ..cache.keys import CacheKeyBuilder
from ..cache.notifier import ExpirationEvent


class RefreshCoordinator:
    """Re-populates aggregated catchment data when its cache key expires."""

    def __init__(self,
                 notifier,
                 aggregator: CatchmentAggregator,
                 keys: Optional[CacheKeyBuilder] = None,
                 *,
                 retry_delay: float = DEFAULT_RETRY_FOREVER_DELAY,
                 metrics: Optional[MetricsCollector] = None):
        self.notifier = notifier
        self.aggregator = aggregator
        self.keys = keys or aggregator.keys
        self.retry_delay = retry_delay
        self.metrics = metrics
        self.logger = get_logger("catchments.refresh")

        self._queue: Optional[asyncio.Queue] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._refreshes: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._listener_task is not None and not self._listener_task.done()

    async def start(self):
        """Start consuming expiration events. The notifier must already be started."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._listener_task = asyncio.create_task(self._listen())
        self._dispatcher_task = asyncio.create_task(self._dispatch())
        self.logger.info("Refresh coordinator started", namespace=self.keys.catchment_data_namespace)

    async def stop(self):
        """Stop listening and end all refresh chains."""
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = [t for t in (self._listener_task, self._dispatcher_task) if t is not None]
        tasks.extend(self._refreshes.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._listener_task = None
        self._dispatcher_task = None
        self._refreshes.clear()
        self.logger.info("Refresh coordinator stopped")

    def handle_event(self, event: ExpirationEvent) -> Optional[str]:
        """Queue a refresh when ``event`` is for aggregated catchment data.

        Returns the catchment id queued, or None when the key is ignored.
        """
        catchment_id = self.keys.parse_catchment_data_key(event.key)
        if catchment_id is None:
            self._count("expiration_events_total", action="ignored")
            return None

        self._count("expiration_events_total", action="queued")
        self.logger.info("Catchment data expired, queueing refresh", key=event.key, catchment_id=catchment_id)
        self._queue.put_nowait(catchment_id)
        return catchment_id

    def schedule_refresh(self, catchment_id: str) -> asyncio.Task:
        """Start a refresh chain unless one is already running for the catchment."""
        existing = self._refreshes.get(catchment_id)
        if existing is not None and not existing.done():
            self.logger.debug("Refresh already running", catchment_id=catchment_id)
            return existing

        task = asyncio.create_task(self._refresh(catchment_id))
        self._refreshes[catchment_id] = task
        task.add_done_callback(lambda done: self._forget(catchment_id, done))
        return task

    def state(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "active_refreshes": len(self._refreshes),
            "queued": self._queue.qsize() if self._queue is not None else 0,
        }

    async def _listen(self):
        channel = getattr(self.notifier, "channel", None)
        try:
            async for event in self.notifier.events():
                self.handle_event(event)
        except Exception as e:
            # No resubscribe: expirations are missed until the service restarts
            self.logger.error("Expiration listener failed", channel=channel, error=str(e), exc_info=True)
            raise
        self.logger.info("Expiration stream ended", channel=channel)

    async def _dispatch(self):
        while True:
            catchment_id = await self._queue.get()
            self.schedule_refresh(catchment_id)

    async def _refresh(self, catchment_id: str) -> Any:
        set_catchment_context(catchment_id)
        try:
            data = await retry_forever(
                self.aggregator.get_catchment_data,
                catchment_id,
                True,
                delay=self.retry_delay,
                stop_event=self._stop_event,
                on_failure=self._on_failure
            )
        except RetryCancelled as e:
            self.logger.info("Refresh abandoned on shutdown", catchment_id=catchment_id, attempts=e.attempts)
            return None

        self._count("refresh_attempts_total", status="success")
        self.logger.info(
            "Catchment data refreshed",
            catchment_id=catchment_id,
            features=len(data["features"]) if data else 0
        )
        return data

    def _on_failure(self, attempt: int, error: Exception):
        self._count("refresh_attempts_total", status="failure")

    def _forget(self, catchment_id: str, task: asyncio.Task):
        if self._refreshes.get(catchment_id) is task:
            del self._refreshes[catchment_id]

    def _count(self, metric: str, **labels):
        if self.metrics is not None:
            self.metrics.increment_counter(metric, **labels)

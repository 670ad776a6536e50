"""
Bulk cache warming for aggregated catchment data.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from shared.logging import get_logger

from ..aggregation.aggregator import CatchmentAggregator


def extract_catchment_ids(items: Any) -> List[str]:
    """Pull catchment ids out of a catchment listing.

    Accepts plain id strings or objects carrying ``Id``/``id``.
    """
    ids = []
    for item in items or []:
        if isinstance(item, dict):
            value = item.get("Id", item.get("id"))
        else:
            value = item
        if value not in (None, ""):
            ids.append(str(value))
    return ids


class CatchmentCacheWarmer:
    """Rebuilds aggregated catchment data for many catchments at once."""

    def __init__(self, aggregator: CatchmentAggregator, concurrency: int = 5):
        self.aggregator = aggregator
        self.logger = get_logger("catchments.warmer")
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def plan(self, catchment_ids: Optional[Iterable[str]] = None) -> List[str]:
        """Catchments to warm; all listed catchments when none are given."""
        if catchment_ids:
            return list(catchment_ids)
        return extract_catchment_ids(await self.aggregator.list_catchment_ids())

    async def warm(self, catchment_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Warm every planned catchment and return a summary.

        Failures are collected per catchment rather than raised.
        """
        plan = await self.plan(catchment_ids)
        summary: Dict[str, Any] = {
            "planned": len(plan),
            "warmed": [],
            "empty": [],
            "errors": {},
        }
        if not plan:
            self.logger.info("No catchments to warm")
            return summary

        results = await asyncio.gather(*[self._warm_one(cid) for cid in plan], return_exceptions=True)
        for catchment_id, outcome in zip(plan, results):
            if isinstance(outcome, Exception):
                self.logger.error("Catchment warm failed", catchment_id=catchment_id, error=str(outcome))
                summary["errors"][catchment_id] = str(outcome)
            elif outcome is None:
                summary["empty"].append(catchment_id)
            else:
                summary["warmed"].append(catchment_id)

        self.logger.info(
            "Cache warm completed",
            planned=summary["planned"],
            warmed=len(summary["warmed"]),
            empty=len(summary["empty"]),
            errors=len(summary["errors"])
        )
        return summary

    async def _warm_one(self, catchment_id: str):
        async with self._semaphore:
            return await self.aggregator.get_catchment_data(catchment_id, bypass_cache=True)

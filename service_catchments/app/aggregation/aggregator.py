"""
Catchment aggregator.

Wraps every provider read in the cache-aside resolver under its own key kind
and builds the per-catchment aggregate: every station of the catchment that
has forecast points in the future, enriched with those points and the
series metadata.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from shared.logging import get_logger
from shared.errors import ValidationError

from ..adapters.mike_client import DataProvider, build_config_selector
from ..cache.keys import CacheKeyBuilder
from ..cache.resolver import CacheAsideResolver


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, treating naive values as UTC.

    Returns None for anything that does not parse.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def future_points(series: Sequence[Sequence[Any]], now: datetime) -> List[Dict[str, Any]]:
    """Keep ``[timestamp, value]`` points strictly after ``now`` as ``{time, value}``."""
    points = []
    for point in series:
        if not point:
            continue
        timestamp = parse_timestamp(point[0])
        if timestamp is None or timestamp <= now:
            continue
        points.append({"time": point[0], "value": point[1] if len(point) > 1 else None})
    return points


def aggregate_station_series(stations: Dict[str, Any],
                             responses: Sequence[Optional[Dict[str, Any]]],
                             now: Optional[datetime] = None,
                             logger=None) -> Dict[str, Any]:
    """Combine a station collection with its time series responses.

    A station is included only when its series has at least one future
    point; features follow the order of ``responses``.
    """
    now = now or datetime.now(timezone.utc)
    by_item_id: Dict[Any, Dict[str, Any]] = {}
    for station in stations.get("features", []):
        by_item_id.setdefault(station.get("properties", {}).get("spreadsheetitemid"), station)
    collection: Dict[str, Any] = {"type": "FeatureCollection", "features": []}

    for response in responses:
        if not response or not response.get("Data"):
            continue

        points = future_points(response["Data"], now)
        if not points:
            continue

        station = by_item_id.get(response.get("Name"))
        if station is None:
            if logger is not None:
                logger.warning("Time series matches no station", name=response.get("Name"))
            continue

        collection["features"].append({
            **station,
            "properties": {
                **station.get("properties", {}),
                "data": points,
                "metadata": response.get("Metadata"),
            },
        })

    return collection


class CatchmentAggregator:
    """Cached reads of catchments, stations and their aggregated forecasts."""

    def __init__(self,
                 provider: DataProvider,
                 resolver: CacheAsideResolver,
                 keys: Optional[CacheKeyBuilder] = None):
        self.provider = provider
        self.resolver = resolver
        self.keys = keys or resolver.keys
        self.logger = get_logger("catchments.aggregator")

    async def list_catchment_ids(self) -> Any:
        return await self.resolver.resolve(
            self.keys.catchment_ids(),
            self.provider.list_feature_collection
        )

    async def get_catchment_details(self, ids: Sequence[str]) -> Any:
        """Feature type details for ``ids``; cached per ordered id list."""
        ids = list(ids)
        if not ids:
            raise ValidationError("At least one catchment id is required")
        return await self.resolver.resolve(
            self.keys.catchment_details(ids),
            lambda: self.provider.get_feature_type_info(ids)
        )

    async def get_catchment_stations(self, catchment_id: str) -> Any:
        return await self.resolver.resolve(
            self.keys.catchment_stations(catchment_id),
            lambda: self.provider.list_features(build_config_selector(Id=catchment_id))
        )

    async def get_station_data(self, station_path: str) -> Any:
        """Time series of the station addressed by ``<catchment_id>/<station_id>``."""
        return await self.resolver.resolve(
            self.keys.station_data(station_path),
            lambda: self.provider.list_time_series(build_config_selector(Id=station_path))
        )

    async def get_catchment_data(self, catchment_id: str, bypass_cache: bool = False) -> Optional[Dict[str, Any]]:
        """Aggregated forecast collection of a catchment.

        Returns None when the catchment has no stations. Any station fetch
        failure fails the whole call and nothing is cached.

        Args:
            catchment_id: Catchment identifier.
            bypass_cache: Skip the cached aggregate and rebuild it.
        """
        return await self.resolver.resolve(
            self.keys.catchment_data(catchment_id),
            lambda: self._build_catchment_data(catchment_id),
            bypass_cache=bypass_cache,
            should_cache=lambda data: data is not None
        )

    async def _build_catchment_data(self, catchment_id: str) -> Optional[Dict[str, Any]]:
        stations = await self.get_catchment_stations(catchment_id)
        if not stations:
            self.logger.info("Catchment has no stations", catchment_id=catchment_id)
            return None

        responses = await asyncio.gather(*[
            self.get_station_data(f"{catchment_id}/{station['properties']['spreadsheetitemid']}")
            for station in stations.get("features", [])
        ])

        data = aggregate_station_series(stations, responses, logger=self.logger)
        self.logger.info(
            "Catchment data aggregated",
            catchment_id=catchment_id,
            stations=len(stations.get("features", [])),
            features=len(data["features"])
        )
        return data

"""
Cache key construction.

Keys look like ``<prefix>:<kind>[:<identifier>]`` where the identifier is a
single id or several ids joined with ``$`` in the order given.
"""

from enum import Enum
from typing import Iterable, Optional, Union


DEFAULT_KEY_PREFIX = "mike"
KEY_SEPARATOR = ":"
ID_SEPARATOR = "$"


class CacheKeyKind(str, Enum):
    """Entity kinds addressed by the cache."""
    CATCHMENT_IDS = "catchmentids"
    CATCHMENT_DETAILS = "catchmentdetails"
    CATCHMENT_STATIONS = "catchmentstations"
    STATION_DATA = "stationsdata"
    CATCHMENT_DATA = "catchmentdata"


def build_cache_key(kind: CacheKeyKind,
                    ids: Union[str, Iterable[str], None] = None,
                    prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Build the cache key for ``kind`` and ``ids``.

    Multi-id keys keep the caller's order, so ``["a", "b"]`` and
    ``["b", "a"]`` address different entries.
    """
    parts = [prefix, CacheKeyKind(kind).value]
    if ids is not None:
        identifier = ids if isinstance(ids, str) else ID_SEPARATOR.join(str(i) for i in ids)
        parts.append(identifier)
    return KEY_SEPARATOR.join(parts)


def kind_of(key: str, prefix: str = DEFAULT_KEY_PREFIX) -> Optional[CacheKeyKind]:
    """Return the kind encoded in ``key`` or None for foreign keys."""
    head = f"{prefix}{KEY_SEPARATOR}"
    if not key.startswith(head):
        return None
    kind = key[len(head):].split(KEY_SEPARATOR, 1)[0]
    try:
        return CacheKeyKind(kind)
    except ValueError:
        return None


class CacheKeyBuilder:
    """Key factory bound to one namespace prefix."""

    def __init__(self, prefix: str = DEFAULT_KEY_PREFIX):
        self.prefix = prefix

    def catchment_ids(self) -> str:
        return build_cache_key(CacheKeyKind.CATCHMENT_IDS, prefix=self.prefix)

    def catchment_details(self, ids: Iterable[str]) -> str:
        return build_cache_key(CacheKeyKind.CATCHMENT_DETAILS, list(ids), prefix=self.prefix)

    def catchment_stations(self, catchment_id: str) -> str:
        return build_cache_key(CacheKeyKind.CATCHMENT_STATIONS, catchment_id, prefix=self.prefix)

    def station_data(self, station_path: str) -> str:
        return build_cache_key(CacheKeyKind.STATION_DATA, station_path, prefix=self.prefix)

    def catchment_data(self, catchment_id: str) -> str:
        return build_cache_key(CacheKeyKind.CATCHMENT_DATA, catchment_id, prefix=self.prefix)

    @property
    def catchment_data_namespace(self) -> str:
        return f"{self.prefix}{KEY_SEPARATOR}{CacheKeyKind.CATCHMENT_DATA.value}{KEY_SEPARATOR}"

    def parse_catchment_data_key(self, key: str) -> Optional[str]:
        """Extract the catchment id from an aggregated catchment data key.

        Returns None for keys outside the ``catchmentdata`` namespace or
        without an identifier.
        """
        namespace = self.catchment_data_namespace
        if not key.startswith(namespace):
            return None
        return key[len(namespace):] or None

    def kind_of(self, key: str) -> Optional[CacheKeyKind]:
        return kind_of(key, self.prefix)

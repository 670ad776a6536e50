"""
MIKE water-monitoring data provider client.
"""

import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.metrics import MetricsCollector
from shared.retry import retry_on_exception, RetryConfig, RetryError


CONFIG_BASE = (
    "ConfigurationName=Water Monitoring;ThemeId=;"
    "ObservationPeriod=OBS1;ObservationPeriodOffset=;"
)
DEFAULT_TIMESTEP_KIND = "mo-timestep"
DEFAULT_AS_OF = "2000-01-01T000000"
SERVICE_NAME = "mike"


def build_config_selector(**fields: Any) -> str:
    """Build a provider configuration selector.

    >>> build_config_selector(Id="42")
    'ConfigurationName=Water Monitoring;ThemeId=;ObservationPeriod=OBS1;ObservationPeriodOffset=;Id=42'
    """
    return CONFIG_BASE + ";".join(f"{name}={value}" for name, value in fields.items())


class DataProvider(Protocol):
    """Upstream operations the cache layer consumes."""

    async def list_feature_collection(self, kind: str = DEFAULT_TIMESTEP_KIND) -> Any: ...

    async def get_feature_type_info(self, ids: Sequence[str], as_of: str = DEFAULT_AS_OF) -> Any: ...

    async def list_features(self, selector: str) -> Any: ...

    async def list_time_series(self, selector: str) -> Any: ...


class MikeDataProvider:
    """httpx client for the MIKE REST endpoints.

    Transport failures are retried a few times with backoff; any
    non-success status raises ``ExternalServiceError``. A 404 is reported as
    an empty result.
    """

    def __init__(self,
                 base_url: str,
                 timeout: float = 10.0,
                 *,
                 metrics: Optional[MetricsCollector] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip('/')
        self.metrics = metrics
        self.logger = get_logger("catchments.mike_client")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def list_feature_collection(self, kind: str = DEFAULT_TIMESTEP_KIND) -> Any:
        """List the timestep items (catchments) of ``kind``."""
        return await self._request("list_feature_collection", "GET", f"/timestep/{kind}/items")

    async def get_feature_type_info(self, ids: Sequence[str], as_of: str = DEFAULT_AS_OF) -> Any:
        """Fetch feature type metadata for ``ids`` as of ``as_of``."""
        selector = build_config_selector(Type="FeatureTypeInfo", Id="$".join(ids))
        return await self._request(
            "get_feature_type_info",
            "GET",
            f"/timestep/{DEFAULT_TIMESTEP_KIND}/{selector}/data/{as_of}"
        )

    async def list_features(self, selector: str) -> Any:
        """Fetch the feature collection addressed by ``selector``."""
        data = await self._request(
            "list_features",
            "POST",
            "/featurecollection/mo-gis/list",
            json=[selector]
        )
        if not data:
            return None
        return data.get(selector)

    async def list_time_series(self, selector: str) -> Dict[str, Any]:
        """Fetch the first time series addressed by ``selector``; ``{}`` when there is none."""
        data: Optional[List[Dict[str, Any]]] = await self._request(
            "list_time_series",
            "POST",
            "/timeseries/mo-timeseries/list",
            json=[selector]
        )
        return data[0] if data else {}

    async def _request(self, operation: str, method: str, path: str, json: Any = None) -> Any:
        """Execute a provider call with retries, metrics and error mapping."""
        start = time.perf_counter()
        status = "error"
        try:
            response = await self._send(method, path, json)
        except RetryError as exc:
            self.logger.error("MIKE request failed", operation=operation, path=path, error=str(exc.last_exception))
            raise ExternalServiceError(
                service=SERVICE_NAME,
                message=str(exc.last_exception),
                details={"operation": operation, "attempts": exc.attempts}
            ) from exc
        else:
            status = str(response.status_code)
        finally:
            self._record(operation, status, time.perf_counter() - start)

        if response.status_code == 200:
            self.logger.debug("MIKE data retrieved", operation=operation, path=path)
            return response.json()

        if response.status_code == 404:
            self.logger.info("MIKE data not found", operation=operation, path=path)
            return None

        self.logger.error(
            "MIKE request returned unexpected status",
            operation=operation,
            path=path,
            status_code=response.status_code,
            response=response.text
        )
        raise ExternalServiceError(
            service=SERVICE_NAME,
            message=f"Unexpected status {response.status_code}",
            details={"operation": operation, "status_code": response.status_code, "body": response.text}
        )

    @retry_on_exception((httpx.TransportError,), config=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0))
    async def _send(self, method: str, path: str, json: Any = None) -> httpx.Response:
        return await self._client.request(method, path, json=json)

    def _record(self, operation: str, status: str, duration: float):
        if self.metrics is None:
            return
        self.metrics.increment_counter("upstream_requests_total", operation=operation, status=status)
        self.metrics.observe_histogram("upstream_request_duration_seconds", duration, operation=operation)

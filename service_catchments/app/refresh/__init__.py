"""
Proactive refresh of aggregated catchment data.
"""

from .coordinator import RefreshCoordinator
from .warmer import CatchmentCacheWarmer, extract_catchment_ids

__all__ = ["RefreshCoordinator", "CatchmentCacheWarmer", "extract_catchment_ids"]

"""
Adapters for external systems.
"""

from .mike_client import DataProvider, MikeDataProvider, build_config_selector

__all__ = ["DataProvider", "MikeDataProvider", "build_config_selector"]

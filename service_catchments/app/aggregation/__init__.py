"""
Catchment aggregation: composing stations and time series into one feature collection.
"""

from .aggregator import CatchmentAggregator, aggregate_station_series, future_points

__all__ = ["CatchmentAggregator", "aggregate_station_series", "future_points"]

"""
Metrics time-series for the Raspberry Pi host monitor.

Components:
- storage: SQLite store for raw samples and 1-minute rollups
- rollup: bucket flooring and rollup aggregation
- retention: cutoff computation and prune cadence
- recent: in-memory buffer of the last hour of samples
- collector: psutil-based system collector
- sampler: background asyncio sampling scheduler
- query: range queries stitching both tiers
"""

from raspi_monitor.metrics.collector import SystemCollector
from raspi_monitor.metrics.query import MetricsQueryService, SeriesPoint
from raspi_monitor.metrics.retention import RetentionPolicy
from raspi_monitor.metrics.rollup import compute_rollup, floor_to_minute
from raspi_monitor.metrics.sampler import MetricsSampler
from raspi_monitor.metrics.storage import MetricsStore, RawSample, RollupSample

__all__ = [
    "MetricsQueryService",
    "MetricsSampler",
    "MetricsStore",
    "RawSample",
    "RetentionPolicy",
    "RollupSample",
    "SeriesPoint",
    "SystemCollector",
    "compute_rollup",
    "floor_to_minute",
]

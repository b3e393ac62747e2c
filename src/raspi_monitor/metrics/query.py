"""
Range queries over both storage tiers.

A query for the last N hours returns 1-minute rollups for the part of the
range that is older than the raw retention horizon, followed by raw samples
for the rest. Both parts are ascending and the rollup part ends before the
raw part begins, so the result is one ascending series without duplicates.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from raspi_monitor.logging import get_logger
from raspi_monitor.metrics.collector import wall_clock_ms
from raspi_monitor.metrics.retention import HOUR_MS, clamp_retention
from raspi_monitor.metrics.storage import (
    MetricsStore,
    RawSample,
    RollupSample,
    ms_to_iso,
)

if TYPE_CHECKING:
    from raspi_monitor.config import MetricsConfig

logger = get_logger(__name__)

MIN_RANGE_HOURS = 0.25
MAX_RANGE_HOURS = 720.0
DEFAULT_RANGE_HOURS = 24.0

RESOLUTION_RAW = "raw"
RESOLUTION_1M = "1m"


def clamp_range_hours(value: Any, default: float = DEFAULT_RANGE_HOURS) -> float:
    """
    Clamp a requested range to [0.25, 720] hours.

    Missing, unparseable or non-finite values fall back to ``default``
    (itself clamped).
    """
    try:
        hours = float(value) if value is not None else default
    except (TypeError, ValueError):
        hours = default
    if not math.isfinite(hours):
        hours = default
    if not math.isfinite(hours):
        hours = DEFAULT_RANGE_HOURS
    return min(MAX_RANGE_HOURS, max(MIN_RANGE_HOURS, hours))


@dataclass(frozen=True)
class SeriesPoint:
    """One point of a /metrics.json series, from either tier.

    ``cpu_usage_pct_instant`` is always None for rollup points.
    """

    time_ms: int
    resolution: str
    mem_used_pct: float
    cpu_usage_pct_instant: float | None = None
    cpu_usage_pct_avg10s: float | None = None
    cpu_temp_c: float | None = None
    disk_used_pct: float | None = None

    @classmethod
    def from_raw(cls, row: RawSample) -> SeriesPoint:
        return cls(
            time_ms=row.time_ms,
            resolution=RESOLUTION_RAW,
            cpu_usage_pct_instant=row.cpu_usage_pct_instant,
            cpu_usage_pct_avg10s=row.cpu_usage_pct_avg10s,
            cpu_temp_c=row.cpu_temp_c,
            disk_used_pct=row.disk_used_pct,
            mem_used_pct=row.mem_used_pct,
        )

    @classmethod
    def from_rollup(cls, row: RollupSample) -> SeriesPoint:
        return cls(
            time_ms=row.bucket_start_ms,
            resolution=RESOLUTION_1M,
            cpu_usage_pct_avg10s=row.cpu_usage_pct_avg10s,
            cpu_temp_c=row.cpu_temp_c,
            disk_used_pct=row.disk_used_pct,
            mem_used_pct=row.mem_used_pct,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire shape; absent readings serialize as null."""
        return {
            "timeMs": self.time_ms,
            "time": ms_to_iso(self.time_ms),
            "resolution": self.resolution,
            "cpuUsagePctInstant": self.cpu_usage_pct_instant,
            "cpuUsagePctAvg10s": self.cpu_usage_pct_avg10s,
            "cpuTempC": self.cpu_temp_c,
            "diskUsedPct": self.disk_used_pct,
            "memUsedPct": self.mem_used_pct,
        }


@dataclass(frozen=True)
class QueryWindow:
    """Boundaries of one query, all in epoch milliseconds."""

    range_hours: float
    from_ms: int
    raw_from_ms: int
    to_ms: int


class MetricsQueryService:
    """
    Answers "samples covering the last N hours" at the best resolution kept.

    Example:
        >>> service = MetricsQueryService(store, raw_retention_hours=24)
        >>> points = await service.query(72)
    """

    def __init__(
        self,
        store: MetricsStore,
        *,
        raw_retention_hours: float = 24.0,
        default_range_hours: float = DEFAULT_RANGE_HOURS,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        self._store = store
        self.raw_retention_hours = clamp_retention(raw_retention_hours)
        self.default_range_hours = clamp_range_hours(default_range_hours)
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        store: MetricsStore,
        config: MetricsConfig,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> MetricsQueryService:
        """Create a query service from the metrics configuration."""
        return cls(
            store,
            raw_retention_hours=config.raw_retention_hours,
            default_range_hours=config.default_range_hours,
            clock=clock,
        )

    def window(self, range_hours: Any = None, now_ms: int | None = None) -> QueryWindow:
        """Compute the query boundaries for ``range_hours`` ending at ``now_ms``."""
        hours = clamp_range_hours(range_hours, self.default_range_hours)
        now = self._clock() if now_ms is None else now_ms
        from_ms = now - int(hours * HOUR_MS)
        raw_from_ms = max(from_ms, now - int(self.raw_retention_hours * HOUR_MS))
        return QueryWindow(range_hours=hours, from_ms=from_ms, raw_from_ms=raw_from_ms, to_ms=now)

    async def query(self, range_hours: Any = None) -> list[SeriesPoint]:
        """
        Return one ascending series covering the last ``range_hours`` hours.

        Raises:
            StorageError: If either tier cannot be read.
        """
        return await self._query_window(self.window(range_hours))

    async def _query_window(self, w: QueryWindow) -> list[SeriesPoint]:
        points: list[SeriesPoint] = []
        if w.from_ms < w.raw_from_ms:
            # Half-open [from, raw_from): the raw tier owns raw_from itself
            rollups = await self._store.select_rollup_range(w.from_ms, w.raw_from_ms - 1)
            points.extend(SeriesPoint.from_rollup(r) for r in rollups)

        raws = await self._store.select_raw_range(w.raw_from_ms, w.to_ms)
        points.extend(SeriesPoint.from_raw(r) for r in raws)
        return points

    async def query_payload(self, range_hours: Any = None) -> dict[str, Any]:
        """
        Build the /metrics.json response body.

        Raises:
            StorageError: If either tier cannot be read.
        """
        w = self.window(range_hours)
        points = await self._query_window(w)
        logger.debug(
            "Metrics range query",
            extra={"range_hours": w.range_hours, "count": len(points)},
        )
        return {
            "rangeHours": w.range_hours,
            "fromMs": w.from_ms,
            "rawFromMs": w.raw_from_ms,
            "toMs": w.to_ms,
            "count": len(points),
            "points": [p.to_dict() for p in points],
        }

"""
Retention policy for the two storage tiers.

Raw samples are kept for a number of hours, rollups for a number of days.
Both horizons are clamped to at least 1 so a zero, negative or non-finite
setting can never wipe the database on the next prune.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from raspi_monitor.logging import get_logger

if TYPE_CHECKING:
    from raspi_monitor.config import MetricsConfig
    from raspi_monitor.metrics.storage import MetricsStore

logger = get_logger(__name__)

HOUR_MS = 3_600_000
DAY_MS = 86_400_000

DEFAULT_RAW_RETENTION_HOURS = 24.0
DEFAULT_ROLLUP_RETENTION_DAYS = 30.0
DEFAULT_PRUNE_INTERVAL_MS = 600_000


def clamp_retention(value: float) -> float:
    """Clamp a retention horizon to >= 1; non-finite values become 1."""
    if value is None or not math.isfinite(value):
        return 1.0
    return max(1.0, float(value))


@dataclass
class PruneResult:
    """Rows removed by one prune pass."""

    raw_deleted: int
    rollup_deleted: int
    raw_cutoff_ms: int
    rollup_cutoff_ms: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "raw_deleted": self.raw_deleted,
            "rollup_deleted": self.rollup_deleted,
            "raw_cutoff_ms": self.raw_cutoff_ms,
            "rollup_cutoff_ms": self.rollup_cutoff_ms,
        }


class RetentionPolicy:
    """
    Cutoff computation and prune cadence for both tiers.

    The policy holds no watermark of its own; the sampler owns
    ``last_pruned_at`` and asks is_due() each tick.
    """

    def __init__(
        self,
        raw_retention_hours: float = DEFAULT_RAW_RETENTION_HOURS,
        rollup_retention_days: float = DEFAULT_ROLLUP_RETENTION_DAYS,
        prune_interval_ms: int = DEFAULT_PRUNE_INTERVAL_MS,
    ) -> None:
        self.raw_retention_hours = clamp_retention(raw_retention_hours)
        self.rollup_retention_days = clamp_retention(rollup_retention_days)
        if not prune_interval_ms or prune_interval_ms <= 0:
            prune_interval_ms = DEFAULT_PRUNE_INTERVAL_MS
        self.prune_interval_ms = int(prune_interval_ms)

    @classmethod
    def from_config(cls, config: MetricsConfig) -> RetentionPolicy:
        """Create a RetentionPolicy from the metrics configuration."""
        return cls(
            raw_retention_hours=config.raw_retention_hours,
            rollup_retention_days=config.rollup_retention_days,
            prune_interval_ms=config.prune_interval_ms,
        )

    @property
    def raw_horizon_ms(self) -> int:
        """Age beyond which raw samples are deleted."""
        return int(self.raw_retention_hours * HOUR_MS)

    @property
    def rollup_horizon_ms(self) -> int:
        """Age beyond which rollups are deleted."""
        return int(self.rollup_retention_days * DAY_MS)

    def raw_cutoff(self, now_ms: int) -> int:
        """Raw rows with ``time_ms`` strictly below this are eligible for deletion."""
        return now_ms - self.raw_horizon_ms

    def rollup_cutoff(self, now_ms: int) -> int:
        """Rollups with ``bucket_start_ms`` strictly below this are eligible for deletion."""
        return now_ms - self.rollup_horizon_ms

    def is_due(self, now_ms: int, last_pruned_at_ms: int | None) -> bool:
        """True when no prune has run yet or the prune interval has elapsed."""
        if last_pruned_at_ms is None:
            return True
        return now_ms - last_pruned_at_ms >= self.prune_interval_ms

    async def apply(self, store: MetricsStore, now_ms: int) -> PruneResult:
        """
        Prune both tiers relative to ``now_ms``.

        Raises:
            StorageError: If either delete fails.
        """
        raw_cutoff = self.raw_cutoff(now_ms)
        rollup_cutoff = self.rollup_cutoff(now_ms)
        raw_deleted = await store.prune_raw(raw_cutoff)
        rollup_deleted = await store.prune_rollup(rollup_cutoff)

        result = PruneResult(
            raw_deleted=raw_deleted,
            rollup_deleted=rollup_deleted,
            raw_cutoff_ms=raw_cutoff,
            rollup_cutoff_ms=rollup_cutoff,
        )
        logger.debug("Retention policy enforced", extra=result.to_dict())
        return result

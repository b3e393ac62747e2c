"""
1-minute rollup computation.

Pure functions with no I/O: the sampler reads the raw rows of a closed
minute from the store, calls compute_rollup() and writes the result back.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from raspi_monitor.metrics.storage import RawSample, RollupSample

MINUTE_MS = 60_000


def floor_to_minute(ms: int) -> int:
    """Floor epoch milliseconds to the start of their minute."""
    return (int(ms) // MINUTE_MS) * MINUTE_MS


def last_closed_bucket(now_ms: int) -> int:
    """Start of the most recent minute that has fully elapsed at ``now_ms``."""
    return floor_to_minute(now_ms - MINUTE_MS)


def _mean(values: Iterable[float | None]) -> float | None:
    """Arithmetic mean of the finite values, or None if there are none."""
    vals = [v for v in values if v is not None and math.isfinite(v)]
    if not vals:
        return None
    return sum(vals) / len(vals)


def compute_rollup(bucket_start_ms: int, rows: Sequence[RawSample]) -> RollupSample:
    """
    Aggregate the raw samples of one bucket.

    Each field is the mean of the values present across ``rows``; a field
    with no values is None. ``mem_used_pct`` is the exception and falls back
    to 0.0, which is what existing databases already contain for empty
    buckets. The instant CPU reading is not carried into the rollup.

    Args:
        bucket_start_ms: Start of the bucket (already floored).
        rows: Raw samples whose ``time_ms`` falls in the bucket.

    Returns:
        The rollup row for the bucket.

    Example:
        >>> compute_rollup(0, [RawSample(time_ms=0, mem_used_pct=20.0),
        ...                    RawSample(time_ms=1, mem_used_pct=40.0)]).mem_used_pct
        30.0
    """
    mem = _mean(r.mem_used_pct for r in rows)
    return RollupSample(
        bucket_start_ms=bucket_start_ms,
        cpu_usage_pct_avg10s=_mean(r.cpu_usage_pct_avg10s for r in rows),
        cpu_temp_c=_mean(r.cpu_temp_c for r in rows),
        disk_used_pct=_mean(r.disk_used_pct for r in rows),
        mem_used_pct=mem if mem is not None else 0.0,
    )

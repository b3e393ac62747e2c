"""
Background sampling scheduler using asyncio.

This module implements the MetricsSampler class, which owns one background
task that on every tick:
1. Collects a RawSample (in the executor, bounded by a timeout)
2. Appends it to the pending batch and to the recent in-memory buffer
3. Flushes the pending batch to the store in one transaction
4. Rolls up every newly closed minute (only after the flush)
5. Prunes both tiers when the prune interval has elapsed

Any failure is contained at the tick boundary: it is logged, counted and the
next tick runs normally. Samples that could not be written stay pending and
are retried on the next tick.
"""

from __future__ import annotations

import asyncio
import math
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from raspi_monitor.errors import FailedPreconditionError, MonitorError
from raspi_monitor.logging import get_logger
from raspi_monitor.metrics.collector import Collector, wall_clock_ms
from raspi_monitor.metrics.recent import RecentSamples
from raspi_monitor.metrics.retention import RetentionPolicy
from raspi_monitor.metrics.rollup import MINUTE_MS, compute_rollup, last_closed_bucket
from raspi_monitor.metrics.storage import MetricsStore, RawSample

if TYPE_CHECKING:
    from raspi_monitor.config import MetricsConfig

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_SAMPLING_INTERVAL_MS = 5000
MIN_SAMPLING_INTERVAL_MS = 1000

DEFAULT_MAX_PENDING_ROWS = 720
DEFAULT_COLLECT_TIMEOUT_SECONDS = 5.0

# Closed minutes rolled up in one tick when catching up after an outage
MAX_CATCHUP_BUCKETS = 60

STOP_TIMEOUT_SECONDS = 10.0


def resolve_interval_ms(value: float | None) -> int:
    """Interval to sample at: default when missing or non-finite, >= 1000 ms."""
    if value is None or not math.isfinite(value):
        return DEFAULT_SAMPLING_INTERVAL_MS
    return max(MIN_SAMPLING_INTERVAL_MS, int(value))


# =============================================================================
# Enums and Data Models
# =============================================================================


class SamplerStatus(str, Enum):
    """Status of the metrics sampler."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SamplerState:
    """
    Snapshot of the sampler's state.

    Attributes:
        status: Current sampler status.
        job_id: Identifier of the current run.
        interval_ms: Effective sampling interval.
        started_at: When the sampler was started.
        last_sample_at: When the last sample was stored.
        sample_count: Samples written to the store since start.
        error_count: Ticks that failed.
        skipped_ticks: Ticks skipped because the previous one was still running.
        dropped_count: Pending samples discarded because the batch was full.
        pending_count: Samples waiting to be written.
        last_rollup_bucket_ms: Newest minute bucket rolled up.
        last_pruned_at_ms: When the last prune pass ran.
        last_error: Last error message if any.
    """

    status: SamplerStatus = SamplerStatus.STOPPED
    job_id: str | None = None
    interval_ms: int = DEFAULT_SAMPLING_INTERVAL_MS
    started_at: datetime | None = None
    last_sample_at: datetime | None = None
    sample_count: int = 0
    error_count: int = 0
    skipped_ticks: int = 0
    dropped_count: int = 0
    pending_count: int = 0
    last_rollup_bucket_ms: int | None = None
    last_pruned_at_ms: int | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "interval_ms": self.interval_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_sample_at": (
                self.last_sample_at.isoformat() if self.last_sample_at else None
            ),
            "sample_count": self.sample_count,
            "error_count": self.error_count,
            "skipped_ticks": self.skipped_ticks,
            "dropped_count": self.dropped_count,
            "pending_count": self.pending_count,
            "last_rollup_bucket_ms": self.last_rollup_bucket_ms,
            "last_pruned_at_ms": self.last_pruned_at_ms,
            "last_error": self.last_error,
        }


# =============================================================================
# MetricsSampler Class
# =============================================================================


class MetricsSampler:
    """
    Periodic collect -> store -> rollup -> prune pipeline.

    All mutable scheduling state (pending batch, recent buffer, rollup and
    prune watermarks) lives on the instance. Ticks never overlap: a tick
    requested while another is running is skipped.

    Example:
        >>> store = MetricsStore("/var/lib/raspi-monitor/metrics.db")
        >>> sampler = MetricsSampler(store, SystemCollector())
        >>> await sampler.start()
        >>> sampler.recent.latest()
        >>> await sampler.stop()
    """

    def __init__(
        self,
        store: MetricsStore,
        collector: Collector,
        config: MetricsConfig | None = None,
        *,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        """
        Initialize the MetricsSampler.

        Args:
            store: Store the samples, rollups and prunes go to.
            collector: Source of one RawSample per tick.
            config: Optional MetricsConfig; defaults are used when omitted.
            retention: Optional retention policy (built from config otherwise).
            clock: Epoch-milliseconds clock, injectable for tests.
        """
        self._store = store
        self._collector = collector
        self._clock = clock

        interval = config.sampling_interval_ms if config else None
        self._interval_ms = resolve_interval_ms(interval)
        self._max_pending = (
            config.max_pending_rows if config else DEFAULT_MAX_PENDING_ROWS
        )
        self._collect_timeout = (
            config.collect_timeout_seconds if config else DEFAULT_COLLECT_TIMEOUT_SECONDS
        )
        if retention is not None:
            self._retention = retention
        elif config is not None:
            self._retention = RetentionPolicy.from_config(config)
        else:
            self._retention = RetentionPolicy()

        window_ms = config.recent_window_seconds * 1000 if config else 3_600_000
        self._recent = RecentSamples(window_ms=window_ms, interval_ms=self._interval_ms)

        self._pending: deque[RawSample] = deque()
        self._last_rollup_bucket_ms: int | None = None
        self._last_pruned_at_ms: int | None = None

        self._state = SamplerState(interval_ms=self._interval_ms)
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._tick_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Check if the sampler is currently running."""
        return self._state.status == SamplerStatus.RUNNING

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention

    @property
    def recent(self) -> RecentSamples:
        """Buffer of the samples collected in the last hour (at most)."""
        return self._recent

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def last_rollup_bucket_ms(self) -> int | None:
        return self._last_rollup_bucket_ms

    @property
    def last_pruned_at_ms(self) -> int | None:
        return self._last_pruned_at_ms

    def get_status(self) -> SamplerState:
        """
        Get the current sampler state.

        Returns:
            Copy of the current SamplerState.
        """
        s = self._state
        return SamplerState(
            status=s.status,
            job_id=s.job_id,
            interval_ms=s.interval_ms,
            started_at=s.started_at,
            last_sample_at=s.last_sample_at,
            sample_count=s.sample_count,
            error_count=s.error_count,
            skipped_ticks=s.skipped_ticks,
            dropped_count=s.dropped_count,
            pending_count=len(self._pending),
            last_rollup_bucket_ms=self._last_rollup_bucket_ms,
            last_pruned_at_ms=self._last_pruned_at_ms,
            last_error=s.last_error,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> SamplerState:
        """
        Open the store and start the background sampling task.

        Returns:
            Current SamplerState after starting.

        Raises:
            FailedPreconditionError: If the sampler is already running or the
                store cannot be opened.
        """
        async with self._lock:
            if self._state.status in (SamplerStatus.RUNNING, SamplerStatus.STARTING):
                raise FailedPreconditionError(
                    "Sampler is already running",
                    details={"job_id": self._state.job_id},
                )

            await self._store.initialize()

            self._state.status = SamplerStatus.STARTING
            self._state.job_id = str(uuid.uuid4())[:8]
            self._state.started_at = datetime.now()
            self._state.sample_count = 0
            self._state.error_count = 0
            self._state.skipped_ticks = 0
            self._state.last_error = None
            self._stop_event.clear()

            self._task = asyncio.create_task(self._sampling_loop())
            self._state.status = SamplerStatus.RUNNING

            logger.info(
                "Metrics sampler started",
                extra={
                    "job_id": self._state.job_id,
                    "interval_ms": self._interval_ms,
                    "raw_retention_hours": self._retention.raw_retention_hours,
                    "rollup_retention_days": self._retention.rollup_retention_days,
                },
            )

            return self.get_status()

    async def stop(self) -> SamplerState:
        """
        Stop the background task and flush whatever is still pending.

        Waits for an in-progress tick to finish (bounded), cancels the task if
        it does not, then makes one last attempt to write the pending batch.
        The store is left open; its owner closes it afterwards.

        Returns:
            Current SamplerState after stopping.
        """
        async with self._lock:
            if self._state.status not in (SamplerStatus.RUNNING, SamplerStatus.STARTING):
                return self.get_status()

            self._state.status = SamplerStatus.STOPPING
            self._stop_event.set()

            if self._task:
                try:
                    await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
                except TimeoutError:
                    logger.warning("Sampler task did not stop gracefully, cancelling")
                    self._task.cancel()
                    try:
                        await self._task
                    except asyncio.CancelledError:
                        pass
                    except Exception as e:
                        logger.error(
                            "Exception during sampler task cancellation",
                            extra={"error": str(e), "job_id": self._state.job_id},
                        )
                except asyncio.CancelledError:
                    pass
                self._task = None

            if self._pending:
                try:
                    await self._flush()
                except MonitorError as e:
                    logger.warning(
                        "Final flush of pending samples failed",
                        extra={"pending": len(self._pending), "error": str(e)},
                    )

            self._state.status = SamplerStatus.STOPPED

            logger.info(
                "Metrics sampler stopped",
                extra={
                    "job_id": self._state.job_id,
                    "sample_count": self._state.sample_count,
                    "pending": len(self._pending),
                },
            )

            return self.get_status()

    async def _sampling_loop(self) -> None:
        """Run ticks until the stop event is set."""
        while not self._stop_event.is_set():
            await self.tick()

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._interval_ms / 1000.0,
                )
                break
            except TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Tick pipeline
    # -------------------------------------------------------------------------

    async def tick(self) -> bool:
        """
        Run one collect/store/rollup/prune pass.

        Never raises: failures are logged and recorded in the state.

        Returns:
            True if every step succeeded, False if the tick failed or was
            skipped because another tick was in progress.
        """
        if self._tick_lock.locked():
            self._state.skipped_ticks += 1
            logger.warning(
                "Previous tick still running, skipping",
                extra={"job_id": self._state.job_id},
            )
            return False

        async with self._tick_lock:
            try:
                await self._run_tick()
                return True
            except Exception as e:
                self._state.error_count += 1
                self._state.last_error = str(e) or type(e).__name__
                logger.error(
                    "Error during metrics sampling",
                    extra={
                        "error": self._state.last_error,
                        "error_type": type(e).__name__,
                        "job_id": self._state.job_id,
                        "pending": len(self._pending),
                    },
                )
                return False

    async def _run_tick(self) -> None:
        sample = await self._collect()

        self._enqueue(sample)
        self._recent.append(sample)

        # Rollups read the raw tier, so the batch must land first
        await self._flush()

        now_ms = self._clock()
        await self._rollup_closed_minutes(now_ms)

        if self._retention.is_due(now_ms, self._last_pruned_at_ms):
            await self._retention.apply(self._store, now_ms)
            self._last_pruned_at_ms = now_ms

    async def _collect(self) -> RawSample:
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, self._collector.collect),
            timeout=self._collect_timeout,
        )

    def _enqueue(self, sample: RawSample) -> None:
        self._pending.append(sample)
        overflow = len(self._pending) - self._max_pending
        if overflow > 0:
            for _ in range(overflow):
                self._pending.popleft()
            self._state.dropped_count += overflow
            logger.warning(
                "Pending batch full, dropped oldest samples",
                extra={"dropped": overflow, "max_pending_rows": self._max_pending},
            )

    async def _flush(self) -> None:
        """Write the pending batch; on failure it stays pending for the next tick."""
        if not self._pending:
            return
        batch = list(self._pending)
        written = await self._store.insert_raw_batch(batch)
        for _ in batch:
            self._pending.popleft()
        self._state.sample_count += written
        self._state.last_sample_at = datetime.now()

    async def _rollup_closed_minutes(self, now_ms: int) -> None:
        target = last_closed_bucket(now_ms)
        last = self._last_rollup_bucket_ms
        if last is not None and target <= last:
            return

        if last is None:
            first = target
        else:
            first = max(last + MINUTE_MS, target - (MAX_CATCHUP_BUCKETS - 1) * MINUTE_MS)

        for bucket in range(first, target + MINUTE_MS, MINUTE_MS):
            rows = await self._store.select_raw_range(bucket, bucket + MINUTE_MS - 1)
            if rows:
                await self._store.insert_rollup(compute_rollup(bucket, rows))
            self._last_rollup_bucket_ms = bucket

        logger.debug(
            "Rolled up closed minutes",
            extra={"from_bucket_ms": first, "to_bucket_ms": target},
        )

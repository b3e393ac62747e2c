"""
Runtime context shared by the endpoint handlers and the daemon.

MonitorContext bundles the long-lived components of one running monitor so
handlers receive a single object instead of reaching for module globals.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from raspi_monitor.metrics.collector import wall_clock_ms

if TYPE_CHECKING:
    from raspi_monitor.config import AppConfig
    from raspi_monitor.health import HealthChecker
    from raspi_monitor.metrics.query import MetricsQueryService
    from raspi_monitor.metrics.sampler import MetricsSampler
    from raspi_monitor.metrics.storage import MetricsStore
    from raspi_monitor.notify import HealthWatcher


@dataclass
class MonitorContext:
    """
    Long-lived components of a running monitor.

    Attributes:
        config: Loaded application configuration.
        store: Metrics store (owned; closed on shutdown).
        sampler: Background sampling scheduler.
        query: Range query service over the store.
        health: Health checker used by /health.json and /status.json.
        watcher: Optional health transition notifier.
        clock: Epoch-milliseconds clock, injectable for tests.
    """

    config: AppConfig
    store: MetricsStore
    sampler: MetricsSampler
    query: MetricsQueryService
    health: HealthChecker
    watcher: HealthWatcher | None = None
    clock: Callable[[], int] = field(default=wall_clock_ms)

"""
Daemon wiring for the Raspberry Pi host monitor.

MonitorDaemon builds every component from an AppConfig, owns the sampler and
the background health-check task, and tears them down in order on shutdown:
health task, sampler (final flush), then the store.

Example:
    >>> config = load_config()
    >>> asyncio.run(run_daemon(config))
"""

from __future__ import annotations

import asyncio
import signal
import socket
import sys
from collections.abc import Callable

from raspi_monitor import __version__
from raspi_monitor.api import build_registry
from raspi_monitor.config import AppConfig, load_config
from raspi_monitor.context import MonitorContext
from raspi_monitor.errors import MonitorError
from raspi_monitor.health import HealthChecker, HealthReport
from raspi_monitor.logging import get_logger, setup_logging
from raspi_monitor.metrics.collector import Collector, SystemCollector, wall_clock_ms
from raspi_monitor.metrics.query import MetricsQueryService
from raspi_monitor.metrics.sampler import MetricsSampler
from raspi_monitor.metrics.storage import MetricsStore
from raspi_monitor.notify import HealthWatcher
from raspi_monitor.routing import EndpointRegistry

logger = get_logger(__name__)


class MonitorDaemon:
    """
    One running monitor: sampler, store, query service and health watcher.

    Attributes:
        config: Application configuration.
        context: Shared components handed to the endpoint handlers.
        registry: Endpoint registry bound to ``context``.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        collector: Collector | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        self.config = config
        store = MetricsStore(config.metrics.storage_path)
        if collector is None:
            collector = SystemCollector(disk_path=config.metrics.disk_path, clock=clock)

        self.context = MonitorContext(
            config=config,
            store=store,
            sampler=MetricsSampler(store, collector, config.metrics, clock=clock),
            query=MetricsQueryService.from_config(store, config.metrics, clock=clock),
            health=HealthChecker(config.health, disk_path=config.metrics.disk_path),
            watcher=HealthWatcher.from_config(config.notify, hostname=socket.gethostname()),
            clock=clock,
        )
        self.registry: EndpointRegistry = build_registry(self.context)

        self._health_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start sampling and the periodic health check.

        Raises:
            FailedPreconditionError: If the metrics database cannot be opened.
        """
        if self._running:
            return

        await self.context.sampler.start()
        self._health_task = asyncio.create_task(self._health_loop())
        self._running = True

        logger.info(
            "Monitor started",
            extra={
                "version": __version__,
                "storage_path": self.config.metrics.storage_path,
                "endpoints": self.registry.list_paths(),
            },
        )

    async def stop(self) -> None:
        """Stop the health task and the sampler, then close the store."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(
                    "Health task ended with an error",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
            self._health_task = None

        try:
            await self.context.sampler.stop()
        finally:
            await self.context.store.close()
        self._stop_event.clear()
        logger.info("Monitor stopped")

    def request_stop(self) -> None:
        """Ask ``run_forever`` to return; safe to call from a signal handler."""
        self._stop_event.set()

    async def run_forever(self) -> None:
        """Start, wait for ``request_stop``, then shut down."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def check_health(self) -> HealthReport:
        """Evaluate health once and feed the verdict to the watcher."""
        ctx = self.context
        report = await ctx.health.check(ctx.sampler.recent.latest())
        if ctx.watcher is not None:
            await ctx.watcher.observe(report, ctx.clock())
        return report

    async def _health_loop(self) -> None:
        interval = self.config.health.check_interval_seconds
        while not self._stop_event.is_set():
            try:
                await self.check_health()
            except MonitorError as e:
                logger.warning(
                    "Health check failed",
                    extra={"error_code": e.error_code, "error": e.message},
                )
            except Exception as e:
                logger.error(
                    "Unexpected error during health check",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass


async def run_daemon(config: AppConfig) -> None:
    """
    Run the monitor until SIGTERM or SIGINT.

    Args:
        config: Loaded application configuration.
    """
    daemon = MonitorDaemon(config)

    loop = asyncio.get_event_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        daemon.request_stop()

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)
    except (ValueError, NotImplementedError):
        # Signal handling not supported on this platform
        pass

    await daemon.run_forever()


def main(argv: list[str] | None = None) -> int:
    """Console entry point: load config, set up logging, run until stopped."""
    config = load_config(cli_args=argv)
    setup_logging(config.logging)

    try:
        asyncio.run(run_daemon(config))
    except MonitorError as e:
        logger.error(
            "Monitor failed to start",
            extra={"error_code": e.error_code, "error": e.message, "details": e.details},
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Tests for the daemon wiring.

This test module validates:
- Component construction from AppConfig
- Start/stop ordering and idempotence
- The health loop feeding the watcher
- Console entry point exit codes
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from unittest import mock

import pytest

from raspi_monitor.config import AppConfig, HealthConfig, MetricsConfig
from raspi_monitor.daemon import MonitorDaemon, main
from raspi_monitor.errors import FailedPreconditionError
from raspi_monitor.health import Health, HealthReport
from raspi_monitor.metrics.collector import wall_clock_ms
from raspi_monitor.metrics.storage import RawSample

# =============================================================================
# Fakes and Fixtures
# =============================================================================


class FakeCollector:
    def __init__(self) -> None:
        self.calls = 0

    def collect(self) -> RawSample:
        self.calls += 1
        return RawSample(time_ms=wall_clock_ms(), mem_used_pct=25.0)


@pytest.fixture
def config(temp_db_path: Path) -> AppConfig:
    return AppConfig(
        metrics=MetricsConfig(storage_path=str(temp_db_path), sampling_interval_ms=1000),
        health=HealthConfig(scan_dmesg=False, check_interval_seconds=0.05),
    )


@pytest.fixture
def daemon(config: AppConfig) -> Iterator[MonitorDaemon]:
    daemon = MonitorDaemon(config, collector=FakeCollector())
    check = mock.AsyncMock(return_value=HealthReport(Health.OK))
    with mock.patch.object(daemon.context.health, "check", check):
        yield daemon


# =============================================================================
# Tests for MonitorDaemon
# =============================================================================


class TestMonitorDaemon:
    """Tests for MonitorDaemon lifecycle."""

    def test_construction(self, daemon: MonitorDaemon, config: AppConfig) -> None:
        ctx = daemon.context

        assert daemon.running is False
        assert ctx.config is config
        assert str(ctx.store.db_path) == config.metrics.storage_path
        assert ctx.sampler.interval_ms == 1000
        assert ctx.watcher is not None
        assert "/status.json" in daemon.registry

    @pytest.mark.asyncio
    async def test_start_and_stop(self, daemon: MonitorDaemon) -> None:
        await daemon.start()
        try:
            assert daemon.running is True
            assert daemon.context.sampler.is_running is True
            assert daemon.context.store.is_open is True
            await asyncio.sleep(0.1)
        finally:
            await daemon.stop()

        assert daemon.running is False
        assert daemon.context.sampler.is_running is False
        assert daemon.context.store.is_open is False
        assert daemon.context.sampler.get_status().sample_count >= 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, daemon: MonitorDaemon) -> None:
        await daemon.start()
        try:
            await daemon.start()
            assert daemon.running is True
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, daemon: MonitorDaemon) -> None:
        await daemon.stop()

        assert daemon.running is False

    @pytest.mark.asyncio
    async def test_health_loop_feeds_watcher(self, daemon: MonitorDaemon) -> None:
        await daemon.start()
        try:
            await asyncio.sleep(0.2)
        finally:
            await daemon.stop()

        assert daemon.context.health.check.await_count >= 2
        assert daemon.context.watcher.last_health is Health.OK

    @pytest.mark.asyncio
    async def test_health_loop_survives_unexpected_errors(self, daemon: MonitorDaemon) -> None:
        daemon.context.health.check.side_effect = UnicodeDecodeError(
            "utf-8", b"\xff", 0, 1, "invalid start byte"
        )

        await daemon.start()
        try:
            await asyncio.sleep(0.3)
            assert daemon._health_task is not None
            assert not daemon._health_task.done()
        finally:
            await daemon.stop()

        assert daemon.context.health.check.await_count >= 2
        assert daemon.context.sampler.is_running is False
        assert daemon.context.store.is_open is False

    @pytest.mark.asyncio
    async def test_stop_closes_store_when_sampler_stop_fails(self, daemon: MonitorDaemon) -> None:
        await daemon.start()
        failing_stop = mock.AsyncMock(side_effect=RuntimeError("sampler stuck"))

        with (
            mock.patch.object(daemon.context.sampler, "stop", failing_stop),
            pytest.raises(RuntimeError, match="sampler stuck"),
        ):
            await daemon.stop()

        assert daemon.running is False
        assert daemon.context.store.is_open is False
        # The real sampler task is still alive; stop it directly
        await daemon.context.sampler.stop()

    @pytest.mark.asyncio
    async def test_check_health(self, daemon: MonitorDaemon) -> None:
        daemon.context.health.check.return_value = HealthReport(
            Health.DEGRADED, notes=["memory usage high: 95.0%"]
        )

        report = await daemon.check_health()

        assert report.health is Health.DEGRADED
        assert daemon.context.watcher.last_health is Health.DEGRADED

    @pytest.mark.asyncio
    async def test_run_forever_until_stop_requested(self, daemon: MonitorDaemon) -> None:
        task = asyncio.create_task(daemon.run_forever())
        await asyncio.sleep(0.1)
        assert daemon.running is True

        daemon.request_stop()
        await asyncio.wait_for(task, timeout=5)

        assert daemon.running is False
        assert daemon.context.store.is_open is False

    @pytest.mark.asyncio
    async def test_unwritable_storage_fails_start(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config = AppConfig(
            metrics=MetricsConfig(storage_path=str(blocker / "metrics.db")),
        )
        daemon = MonitorDaemon(config, collector=FakeCollector())

        with pytest.raises(FailedPreconditionError):
            await daemon.start()

        assert daemon.running is False


# =============================================================================
# Tests for main
# =============================================================================


class TestMain:
    """Tests for the console entry point."""

    def test_returns_zero_on_clean_shutdown(self, temp_db_path: Path) -> None:
        with (
            mock.patch("raspi_monitor.daemon.setup_logging"),
            mock.patch("raspi_monitor.daemon.run_daemon", new=mock.AsyncMock()) as run,
        ):
            assert main(["--db", str(temp_db_path)]) == 0

        config = run.await_args.args[0]
        assert config.metrics.storage_path == str(temp_db_path)

    def test_returns_one_on_monitor_error(self, temp_db_path: Path) -> None:
        failure = FailedPreconditionError("Cannot open metrics database")
        with (
            mock.patch("raspi_monitor.daemon.setup_logging"),
            mock.patch(
                "raspi_monitor.daemon.run_daemon",
                new=mock.AsyncMock(side_effect=failure),
            ),
        ):
            assert main(["--db", str(temp_db_path)]) == 1

"""
Tests for the system collector.

psutil is patched throughout so the tests do not depend on the host.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import pytest

from raspi_monitor.errors import CollectionError
from raspi_monitor.metrics.collector import (
    CpuUsageTracker,
    SystemCollector,
    read_cpu_temperature,
)


def cpu_times(busy: float, idle: float) -> SimpleNamespace:
    return SimpleNamespace(user=busy, nice=0.0, system=0.0, idle=idle, iowait=0.0)


@pytest.fixture(autouse=True)
def no_vcgencmd() -> Iterator[mock.MagicMock]:
    """Behave as on a host without the Raspberry Pi firmware tools."""
    with mock.patch(
        "raspi_monitor.metrics.collector.get_vcgencmd_temperature", return_value=None
    ) as m:
        yield m


# =============================================================================
# Tests for CPU Temperature
# =============================================================================


class TestReadCpuTemperature:
    """Tests for read_cpu_temperature."""

    def test_prefers_vcgencmd(self, tmp_path: Path, no_vcgencmd: mock.MagicMock) -> None:
        no_vcgencmd.return_value = 48.3
        zone = tmp_path / "thermal_zone0"
        zone.mkdir()
        (zone / "temp").write_text("55000")

        assert read_cpu_temperature(tmp_path) == 48.3

    def test_thermal_zone_millidegrees(self, tmp_path: Path) -> None:
        zone = tmp_path / "thermal_zone0"
        zone.mkdir()
        (zone / "temp").write_text("48312\n")

        assert read_cpu_temperature(tmp_path) == pytest.approx(48.312)

    def test_thermal_zone_degrees(self, tmp_path: Path) -> None:
        zone = tmp_path / "thermal_zone0"
        zone.mkdir()
        (zone / "temp").write_text("55")

        assert read_cpu_temperature(tmp_path) == 55.0

    def test_falls_back_to_psutil(self, tmp_path: Path) -> None:
        sensors = {"cpu_thermal": [SimpleNamespace(current=61.5)]}
        with mock.patch("psutil.sensors_temperatures", return_value=sensors, create=True):
            assert read_cpu_temperature(tmp_path) == 61.5

    def test_unreadable_zone_is_skipped(self, tmp_path: Path) -> None:
        zone = tmp_path / "thermal_zone0"
        zone.mkdir()
        (zone / "temp").write_text("garbage")

        with mock.patch("psutil.sensors_temperatures", return_value={}, create=True):
            assert read_cpu_temperature(tmp_path) is None


# =============================================================================
# Tests for CPU Usage
# =============================================================================


class TestCpuUsageTracker:
    """Tests for CpuUsageTracker."""

    def test_first_reading_is_none(self) -> None:
        tracker = CpuUsageTracker()
        with mock.patch("psutil.cpu_times", return_value=cpu_times(10, 90)):
            assert tracker.instant(1000) is None

    def test_usage_from_deltas(self) -> None:
        tracker = CpuUsageTracker()
        with mock.patch(
            "psutil.cpu_times",
            side_effect=[cpu_times(10, 90), cpu_times(35, 165)],
        ):
            tracker.instant(1000)
            # 25 busy out of 100 total
            assert tracker.instant(2000) == pytest.approx(25.0)

    def test_too_soon_is_none(self) -> None:
        tracker = CpuUsageTracker()
        with mock.patch(
            "psutil.cpu_times",
            side_effect=[cpu_times(10, 90), cpu_times(20, 100)],
        ):
            tracker.instant(1000)
            assert tracker.instant(1100) is None

    def test_no_progress_is_none(self) -> None:
        tracker = CpuUsageTracker()
        with mock.patch(
            "psutil.cpu_times",
            side_effect=[cpu_times(10, 90), cpu_times(10, 90)],
        ):
            tracker.instant(1000)
            assert tracker.instant(2000) is None

    def test_average_over_window(self) -> None:
        tracker = CpuUsageTracker()
        readings = [cpu_times(0, 0), cpu_times(10, 90), cpu_times(40, 160), cpu_times(90, 210)]
        with mock.patch("psutil.cpu_times", side_effect=readings):
            tracker.instant(0)
            tracker.instant(5_000)  # 10%
            tracker.instant(10_000)  # 30%
            tracker.instant(20_000)  # 50%

        assert tracker.average(20_000) == pytest.approx(40.0)
        assert tracker.average(20_000, window_ms=60_000) == pytest.approx(30.0)

    def test_average_empty(self) -> None:
        assert CpuUsageTracker().average(1000) is None


# =============================================================================
# Tests for SystemCollector
# =============================================================================


class TestSystemCollector:
    """Tests for SystemCollector.collect."""

    def test_collect(self, tmp_path: Path) -> None:
        collector = SystemCollector(disk_path="/", clock=lambda: 5000, thermal_root=tmp_path)
        with (
            mock.patch("psutil.cpu_times", return_value=cpu_times(10, 90)),
            mock.patch(
                "psutil.sensors_temperatures",
                return_value={"cpu_thermal": [SimpleNamespace(current=50.0)]},
                create=True,
            ),
            mock.patch("psutil.disk_usage", return_value=SimpleNamespace(percent=71.3)),
            mock.patch("psutil.virtual_memory", return_value=SimpleNamespace(percent=42.5)),
        ):
            sample = collector.collect()

        assert sample.time_ms == 5000
        assert sample.cpu_usage_pct_instant is None
        assert sample.cpu_usage_pct_avg10s is None
        assert sample.cpu_temp_c == 50.0
        assert sample.disk_used_pct == 71.3
        assert sample.mem_used_pct == 42.5

    def test_optional_probe_failure_is_none(self, tmp_path: Path) -> None:
        collector = SystemCollector(clock=lambda: 5000, thermal_root=tmp_path)
        with (
            mock.patch("psutil.cpu_times", return_value=cpu_times(10, 90)),
            mock.patch("psutil.sensors_temperatures", return_value={}, create=True),
            mock.patch("psutil.disk_usage", side_effect=OSError("no such mount")),
            mock.patch("psutil.virtual_memory", return_value=SimpleNamespace(percent=42.5)),
        ):
            sample = collector.collect()

        assert sample.disk_used_pct is None
        assert sample.cpu_temp_c is None
        assert sample.mem_used_pct == 42.5

    def test_memory_failure_fails_collection(self, tmp_path: Path) -> None:
        collector = SystemCollector(clock=lambda: 5000, thermal_root=tmp_path)
        with (
            mock.patch("psutil.cpu_times", return_value=cpu_times(10, 90)),
            mock.patch("psutil.sensors_temperatures", return_value={}, create=True),
            mock.patch("psutil.disk_usage", return_value=SimpleNamespace(percent=1.0)),
            mock.patch("psutil.virtual_memory", side_effect=OSError("boom")),
        ):
            with pytest.raises(CollectionError) as exc_info:
                collector.collect()

        assert exc_info.value.error_code == "collection_failed"

    def test_collects_are_serialized(self, tmp_path: Path) -> None:
        collector = SystemCollector(clock=lambda: 5000, thermal_root=tmp_path)
        in_first = threading.Event()
        release_first = threading.Event()
        overlapped: list[bool] = []
        calls = 0

        def virtual_memory() -> SimpleNamespace:
            nonlocal calls
            calls += 1
            if calls == 1:
                in_first.set()
                release_first.wait(timeout=5)
            else:
                overlapped.append(not release_first.is_set())
            return SimpleNamespace(percent=42.5)

        with (
            mock.patch("psutil.cpu_times", return_value=cpu_times(10, 90)),
            mock.patch("psutil.sensors_temperatures", return_value={}, create=True),
            mock.patch("psutil.disk_usage", return_value=SimpleNamespace(percent=1.0)),
            mock.patch("psutil.virtual_memory", side_effect=virtual_memory),
        ):
            first = threading.Thread(target=collector.collect)
            first.start()
            assert in_first.wait(timeout=5)

            second = threading.Thread(target=collector.collect)
            second.start()
            # The second collect must wait for the first one to finish
            second.join(timeout=0.2)
            assert second.is_alive()

            release_first.set()
            first.join(timeout=5)
            second.join(timeout=5)

        assert calls == 2
        assert overlapped == [False]

"""
System collector producing one RawSample per sampler tick.

Every optional probe (CPU usage, temperature, disk) fails independently: an
error is logged at debug level and the field is recorded as None. Only the
memory probe is required; if it fails the whole collection fails and the
sampler skips the tick.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import psutil

from raspi_monitor.errors import CollectionError
from raspi_monitor.logging import get_logger
from raspi_monitor.metrics.storage import RawSample
from raspi_monitor.probes import get_vcgencmd_temperature

logger = get_logger(__name__)

# Readings closer together than this are too noisy to report
MIN_CPU_DELTA_MS = 250
CPU_AVG_WINDOW_MS = 10_000
CPU_HISTORY_MS = 60_000

THERMAL_ROOT = Path("/sys/class/thermal")
PREFERRED_SENSORS = ("cpu_thermal", "coretemp", "k10temp", "acpitz")


def wall_clock_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Collector(Protocol):
    """Anything that can produce a RawSample on demand."""

    def collect(self) -> RawSample: ...


def read_cpu_temperature(thermal_root: Path = THERMAL_ROOT) -> float | None:
    """
    Get CPU temperature in Celsius.

    Asks ``vcgencmd measure_temp`` first (Raspberry Pi firmware), then reads
    /sys/class/thermal/thermal_zone*/temp (values above 1000 are
    millidegrees), then falls back to psutil.sensors_temperatures().

    Returns:
        Temperature in Celsius, or None if unavailable.
    """
    temp = get_vcgencmd_temperature()
    if temp is not None:
        return temp

    for temp_path in sorted(thermal_root.glob("thermal_zone*/temp")):
        try:
            raw = float(temp_path.read_text().strip())
        except (OSError, ValueError):
            continue
        return raw / 1000.0 if raw > 1000 else raw

    try:
        temps = psutil.sensors_temperatures()
    except (AttributeError, OSError):
        return None
    if not temps:
        return None
    for sensor_name in PREFERRED_SENSORS:
        if temps.get(sensor_name):
            return temps[sensor_name][0].current
    first_sensor = next(iter(temps.values()))
    return first_sensor[0].current if first_sensor else None


class CpuUsageTracker:
    """
    CPU usage from successive psutil.cpu_times() readings.

    The first reading only primes the tracker. Instant readings are kept for
    a minute so the trailing 10-second mean can be computed.
    """

    def __init__(self) -> None:
        self._last: tuple[int, float, float] | None = None
        self._history: deque[tuple[int, float]] = deque()

    @staticmethod
    def _totals() -> tuple[float, float]:
        t = psutil.cpu_times()
        idle = t.idle + getattr(t, "iowait", 0.0)
        busy = (
            t.user
            + t.nice
            + t.system
            + getattr(t, "irq", 0.0)
            + getattr(t, "softirq", 0.0)
            + getattr(t, "steal", 0.0)
        )
        return idle + busy, idle

    def instant(self, now_ms: int) -> float | None:
        """Usage since the previous call, or None when it cannot be computed."""
        total, idle = self._totals()
        prev = self._last
        self._last = (now_ms, total, idle)
        if prev is None:
            return None

        prev_ms, prev_total, prev_idle = prev
        if now_ms - prev_ms < MIN_CPU_DELTA_MS:
            return None
        total_delta = total - prev_total
        if total_delta <= 0:
            return None

        usage = (total_delta - (idle - prev_idle)) / total_delta * 100.0
        usage = max(0.0, min(100.0, usage))
        self._record(now_ms, usage)
        return usage

    def _record(self, now_ms: int, usage: float) -> None:
        self._history.append((now_ms, usage))
        cutoff = now_ms - CPU_HISTORY_MS
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

    def average(self, now_ms: int, window_ms: int = CPU_AVG_WINDOW_MS) -> float | None:
        """Mean of instant readings in ``[now_ms - window_ms, now_ms]``."""
        start = now_ms - window_ms
        vals = [u for t, u in self._history if start <= t <= now_ms]
        if not vals:
            return None
        return sum(vals) / len(vals)


class SystemCollector:
    """
    Collects host readings with psutil and the kernel thermal interface.

    Example:
        >>> collector = SystemCollector(disk_path="/")
        >>> sample = collector.collect()
        >>> sample.mem_used_pct
        37.2
    """

    def __init__(
        self,
        disk_path: str = "/",
        clock: Callable[[], int] = wall_clock_ms,
        thermal_root: Path = THERMAL_ROOT,
    ) -> None:
        self.disk_path = disk_path
        self._clock = clock
        self._thermal_root = thermal_root
        self._cpu = CpuUsageTracker()
        # A timed-out collect keeps running in its executor thread
        self._collect_lock = threading.Lock()

    def _probe(self, name: str, fn: Callable[[], float | None]) -> float | None:
        try:
            return fn()
        except Exception as e:
            logger.debug("Probe failed", extra={"probe": name, "error": str(e)})
            return None

    def collect(self) -> RawSample:
        """
        Take one reading of every signal.

        Raises:
            CollectionError: If memory usage cannot be read.
        """
        with self._collect_lock:
            return self._collect()

    def _collect(self) -> RawSample:
        now_ms = self._clock()

        cpu_instant = self._probe("cpu_usage", lambda: self._cpu.instant(now_ms))
        cpu_avg = self._probe("cpu_usage_avg10s", lambda: self._cpu.average(now_ms))
        cpu_temp = self._probe(
            "cpu_temp", lambda: read_cpu_temperature(self._thermal_root)
        )
        disk_pct = self._probe(
            "disk_usage", lambda: float(psutil.disk_usage(self.disk_path).percent)
        )

        try:
            mem_pct = float(psutil.virtual_memory().percent)
        except Exception as e:
            raise CollectionError(
                f"Failed to read memory usage: {e}",
                details={"probe": "memory"},
            ) from e

        return RawSample(
            time_ms=now_ms,
            cpu_usage_pct_instant=cpu_instant,
            cpu_usage_pct_avg10s=cpu_avg,
            cpu_temp_c=cpu_temp,
            disk_used_pct=disk_pct,
            mem_used_pct=mem_pct,
        )

"""
Coarse health verdict for the host.

The verdict starts at "ok" and degrades when the watched service is not
running, or when memory, temperature, disk or inode usage cross their
thresholds, or when the kernel log shows storage errors. Each reason is
reported as a human-readable note.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from raspi_monitor.logging import get_logger
from raspi_monitor.probes import (
    DmesgScanResult,
    get_inode_usage,
    pgrep_count,
    scan_dmesg_errors,
    systemctl_is_active,
)

if TYPE_CHECKING:
    from raspi_monitor.config import HealthConfig
    from raspi_monitor.metrics.storage import RawSample

logger = get_logger(__name__)


class Health(str, Enum):
    """Health verdict values. DOWN is reserved for the HTTP layer."""

    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass
class ProcessCheck:
    """Result of one ``pgrep -f`` pattern."""

    pattern: str
    count: int

    @property
    def running(self) -> bool:
        return self.count > 0

    def to_dict(self) -> dict[str, Any]:
        return {"pattern": self.pattern, "count": self.count, "running": self.running}


@dataclass
class HealthInputs:
    """Readings the verdict is computed from; None means not available."""

    mem_used_pct: float | None = None
    cpu_temp_c: float | None = None
    disk_used_pct: float | None = None
    inode_used_pct: float | None = None
    systemd_unit: str | None = None
    systemd_state: str | None = None
    process_checks: list[ProcessCheck] | None = None
    dmesg: DmesgScanResult | None = None

    def checks_dict(self) -> dict[str, Any]:
        return {
            "systemd": (
                {"unit": self.systemd_unit, "state": self.systemd_state}
                if self.systemd_unit
                else None
            ),
            "process": (
                [c.to_dict() for c in self.process_checks]
                if self.process_checks is not None
                else None
            ),
            "dmesg": self.dmesg.to_dict() if self.dmesg is not None else None,
        }


@dataclass
class HealthReport:
    """Verdict plus the notes that explain it."""

    health: Health
    notes: list[str] = field(default_factory=list)
    checks: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "health": self.health.value,
            "notes": list(self.notes),
            "checks": self.checks,
        }


def evaluate_health(inputs: HealthInputs, config: HealthConfig) -> HealthReport:
    """
    Derive the health verdict from a set of readings.

    The systemd unit takes precedence over process patterns; patterns are
    only consulted when no unit is configured.

    Args:
        inputs: Current readings.
        config: Thresholds.

    Returns:
        HealthReport with verdict, notes and the raw check results.
    """
    notes: list[str] = []

    if inputs.systemd_unit:
        if inputs.systemd_state != "active":
            notes.append(f"systemd: {inputs.systemd_unit} is {inputs.systemd_state}")
    elif inputs.process_checks:
        for check in inputs.process_checks:
            if not check.running:
                notes.append(f'process: "{check.pattern}" not running')

    if inputs.mem_used_pct is not None and inputs.mem_used_pct > config.mem_used_warn_pct:
        notes.append(f"memory usage high: {inputs.mem_used_pct:.1f}%")

    if inputs.cpu_temp_c is not None and inputs.cpu_temp_c >= config.cpu_temp_warn_c:
        notes.append(
            f"cpu temp high: {inputs.cpu_temp_c:.1f}°C (>= {config.cpu_temp_warn_c:g}°C)"
        )

    if inputs.disk_used_pct is not None and inputs.disk_used_pct >= config.disk_used_warn_pct:
        notes.append(
            f"disk usage high: {inputs.disk_used_pct:g}% (>= {config.disk_used_warn_pct:g}%)"
        )

    if (
        inputs.inode_used_pct is not None
        and inputs.inode_used_pct >= config.inode_used_warn_pct
    ):
        notes.append(
            f"inode usage high: {inputs.inode_used_pct:g}% (>= {config.inode_used_warn_pct:g}%)"
        )

    if inputs.dmesg is not None and inputs.dmesg.found:
        notes.append(f"kernel log: {inputs.dmesg.reason} ({len(inputs.dmesg.lines)} lines)")

    return HealthReport(
        health=Health.DEGRADED if notes else Health.OK,
        notes=notes,
        checks=inputs.checks_dict(),
    )


class HealthChecker:
    """
    Gathers health inputs from the latest sample and the command probes.

    Example:
        >>> checker = HealthChecker(config.health, disk_path="/")
        >>> report = await checker.check(sampler.recent.latest())
        >>> report.health
        <Health.OK: 'ok'>
    """

    def __init__(self, config: HealthConfig, disk_path: str = "/") -> None:
        self.config = config
        self.disk_path = disk_path

    def gather(self, sample: RawSample | None) -> HealthInputs:
        """Run the probes (blocking) and combine them with ``sample``."""
        inputs = HealthInputs()
        if sample is not None:
            inputs.mem_used_pct = sample.mem_used_pct
            inputs.cpu_temp_c = sample.cpu_temp_c
            inputs.disk_used_pct = sample.disk_used_pct

        inodes = get_inode_usage(self.disk_path)
        if inodes is not None:
            inputs.inode_used_pct = inodes.used_pct

        unit = self.config.service.strip()
        if unit:
            inputs.systemd_unit = unit
            inputs.systemd_state = systemctl_is_active(unit)
        elif self.config.process_patterns:
            inputs.process_checks = [
                ProcessCheck(pattern=p, count=pgrep_count(p))
                for p in self.config.process_patterns
            ]

        if self.config.scan_dmesg:
            inputs.dmesg = scan_dmesg_errors()

        return inputs

    async def check(self, sample: RawSample | None) -> HealthReport:
        """Gather inputs in the executor and evaluate them."""
        loop = asyncio.get_event_loop()
        inputs = await loop.run_in_executor(None, self.gather, sample)
        report = evaluate_health(inputs, self.config)
        if report.health is not Health.OK:
            logger.debug("Health degraded", extra={"notes": report.notes})
        return report

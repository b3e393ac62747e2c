"""
Command-line probes used by the health and status payloads.

Each probe runs one short external command with its own timeout and returns
None (or a neutral fallback) when the command is missing, times out, or
prints something unparseable. The parsers are pure functions so they can be
tested against captured output.
"""

from __future__ import annotations

import math
import re
import subprocess
from dataclasses import dataclass, field
from typing import Any

from raspi_monitor.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PROBE_TIMEOUT = 3.0
DMESG_TIMEOUT = 5.0
DMESG_MAX_LINES = 200
VCGENCMD_TIMEOUT = 2.0

VCGENCMD_TEMP_RE = re.compile(r"temp=([0-9.]+)")

# =============================================================================
# Data Models
# =============================================================================


@dataclass
class DiskUsage:
    """Disk usage of one mount, from ``df -P``."""

    total_bytes: int
    used_bytes: int
    avail_bytes: int
    used_pct: float
    mount: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalBytes": self.total_bytes,
            "usedBytes": self.used_bytes,
            "availBytes": self.avail_bytes,
            "usedPct": self.used_pct,
            "mount": self.mount,
        }


@dataclass
class InodeUsage:
    """Inode usage of one mount, from ``df -Pi``."""

    used_pct: float
    inodes: int
    iused: int
    ifree: int
    mount: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "usedPct": self.used_pct,
            "inodes": self.inodes,
            "iused": self.iused,
            "ifree": self.ifree,
            "mount": self.mount,
        }


@dataclass
class DmesgScanResult:
    """Kernel log lines that look like storage trouble."""

    found: bool
    lines: list[str] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"found": self.found, "lines": self.lines, "reason": self.reason}


# Order matters: the reason reported is the first label whose pattern matched
DMESG_ERROR_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bI/O error\b", re.IGNORECASE), "I/O error"),
    (re.compile(r"\bBuffer I/O error\b", re.IGNORECASE), "Buffer I/O error"),
    (re.compile(r"\bEXT4-fs error\b", re.IGNORECASE), "EXT4 fs error"),
    (re.compile(r"\bmmc\d+: Timeout\b", re.IGNORECASE), "mmc timeout"),
    (re.compile(r"\bread-only file system\b", re.IGNORECASE), "read-only filesystem"),
]

# =============================================================================
# Parsers
# =============================================================================


def _number(value: str) -> float | None:
    try:
        number = float(value.rstrip("%"))
    except (AttributeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_df(stdout: str) -> DiskUsage | None:
    """
    Parse ``df -P <path>`` output.

    Expected columns: Filesystem 1024-blocks Used Available Capacity Mounted-on.

    Returns:
        DiskUsage, or None for empty/short/non-numeric output.
    """
    lines = stdout.strip().splitlines()
    if len(lines) < 2:
        return None
    cols = lines[1].split()
    if len(cols) < 5:
        return None

    total_kib, used_kib, avail_kib, used_pct = (_number(c) for c in cols[1:5])
    if None in (total_kib, used_kib, avail_kib, used_pct):
        return None

    return DiskUsage(
        total_bytes=int(total_kib) * 1024,
        used_bytes=int(used_kib) * 1024,
        avail_bytes=int(avail_kib) * 1024,
        used_pct=used_pct,
        mount=cols[5] if len(cols) > 5 else "/",
    )


def parse_df_inodes(stdout: str) -> InodeUsage | None:
    """
    Parse ``df -Pi <path>`` output.

    Expected columns: Filesystem Inodes IUsed IFree IUse% Mounted-on.

    Returns:
        InodeUsage, or None for empty/short/non-numeric output.
    """
    lines = stdout.strip().splitlines()
    if len(lines) < 2:
        return None
    cols = lines[1].split()
    if len(cols) < 5:
        return None

    inodes, iused, ifree, used_pct = (_number(c) for c in cols[1:5])
    if None in (inodes, iused, ifree, used_pct):
        return None

    return InodeUsage(
        used_pct=used_pct,
        inodes=int(inodes),
        iused=int(iused),
        ifree=int(ifree),
        mount=cols[5] if len(cols) > 5 else "/",
    )


def parse_vcgencmd_temp(stdout: str) -> float | None:
    """Parse ``vcgencmd measure_temp`` output (``temp=48.3'C``)."""
    match = VCGENCMD_TEMP_RE.search(stdout)
    if match is None:
        return None
    return _number(match.group(1))


def detect_dmesg_errors(lines: list[str]) -> DmesgScanResult:
    """
    Pick out kernel log lines that indicate storage errors.

    Args:
        lines: Kernel log lines, oldest first.

    Returns:
        DmesgScanResult with the matching lines and a short reason label.
    """
    matched = [
        ln for ln in lines if any(p.search(ln) for p, _ in DMESG_ERROR_PATTERNS)
    ]
    if not matched:
        return DmesgScanResult(found=False)

    reason = "kernel/storage error"
    for pattern, label in DMESG_ERROR_PATTERNS:
        if any(pattern.search(m) for m in matched):
            reason = label
            break

    return DmesgScanResult(found=True, lines=matched, reason=reason)


# =============================================================================
# Command Probes
# =============================================================================


def run_command(
    args: list[str],
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> subprocess.CompletedProcess[str] | None:
    """
    Run a probe command.

    Callers check ``returncode`` themselves; a non-zero exit is not an error
    here (``systemctl is-active`` and ``pgrep`` use it to report state).

    Returns:
        The CompletedProcess, or None if the command is missing or timed out.
    """
    try:
        return subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning(
            "Probe command timed out",
            extra={"command": args[0], "timeout": timeout},
        )
    except OSError as e:
        logger.debug(
            "Probe command unavailable",
            extra={"command": args[0], "error": str(e)},
        )
    return None


def get_disk_usage(path: str = "/") -> DiskUsage | None:
    """Disk usage of ``path`` via ``df -P``."""
    result = run_command(["df", "-P", path])
    if result is None or result.returncode != 0:
        return None
    return parse_df(result.stdout)


def get_inode_usage(path: str = "/") -> InodeUsage | None:
    """Inode usage of ``path`` via ``df -Pi``."""
    result = run_command(["df", "-Pi", path])
    if result is None or result.returncode != 0:
        return None
    return parse_df_inodes(result.stdout)


def scan_dmesg_errors(max_lines: int = DMESG_MAX_LINES) -> DmesgScanResult | None:
    """
    Scan the tail of the kernel log (err and above) for storage errors.

    Returns:
        The scan result, or None if dmesg could not be read (missing binary,
        permission denied, timeout).
    """
    result = run_command(
        ["dmesg", "--level=err,crit,alert,emerg", "--color=never"],
        timeout=DMESG_TIMEOUT,
    )
    if result is None or result.returncode != 0:
        return None
    lines = [ln.strip() for ln in result.stdout.splitlines() if ln.strip()]
    return detect_dmesg_errors(lines[-max_lines:])


def get_vcgencmd_temperature() -> float | None:
    """SoC temperature from the Raspberry Pi firmware, or None off a Pi."""
    result = run_command(["vcgencmd", "measure_temp"], timeout=VCGENCMD_TIMEOUT)
    if result is None or result.returncode != 0:
        return None
    return parse_vcgencmd_temp(result.stdout)


def systemctl_is_active(unit: str) -> str:
    """
    State of a systemd unit: active, inactive, failed, ... or "unknown".

    ``systemctl is-active`` exits non-zero for anything but active, so stdout
    is used regardless of the exit code.
    """
    result = run_command(["systemctl", "is-active", unit])
    if result is None:
        return "unknown"
    return result.stdout.strip() or "unknown"


def pgrep_count(pattern: str) -> int:
    """Number of processes whose command line matches ``pattern`` (pgrep -f)."""
    result = run_command(["pgrep", "-f", pattern])
    if result is None or result.returncode != 0:
        return 0
    return len([ln for ln in result.stdout.splitlines() if ln.strip()])

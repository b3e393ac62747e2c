"""
JSON payload handlers for the monitor's endpoints.

Endpoints:
- /metrics.json: time-series over the last N hours (``range`` or ``hours``)
- /recent.json: in-memory samples of the last N minutes (``minutes``)
- /health.json: health verdict, notes and check results
- /status.json: host overview, latest sample, disk and inode usage, health,
  sampler state and build info

Handlers take ``(ctx, params)`` and are bound to a MonitorContext by
``build_registry``.
"""

from __future__ import annotations

import asyncio
import math
import os
import platform
import socket
import time
from datetime import UTC, datetime, tzinfo
from functools import partial
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import psutil

from raspi_monitor import __version__
from raspi_monitor.context import MonitorContext
from raspi_monitor.logging import get_logger
from raspi_monitor.metrics.storage import RawSample, ms_to_iso
from raspi_monitor.probes import get_disk_usage, get_inode_usage
from raspi_monitor.routing import EndpointRegistry

logger = get_logger(__name__)

DEFAULT_RECENT_MINUTES = 60.0
LOCAL_TIME_FORMAT = "%Y/%m/%d %H:%M:%S"

# =============================================================================
# Parameter Helpers
# =============================================================================


def _float_param(params: dict[str, Any], *names: str) -> float | None:
    """First of ``names`` present in ``params`` as a finite float, else None."""
    for name in names:
        if name not in params:
            continue
        value = params[name]
        if isinstance(value, list | tuple):
            value = value[0] if value else None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None
    return None


def format_local_time(now: datetime, time_zone: str) -> tuple[str, str]:
    """
    Format ``now`` in ``time_zone``.

    Returns:
        (zone name actually used, formatted local time). Unknown zones fall
        back to UTC.
    """
    tz: tzinfo
    try:
        tz = ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown time zone, using UTC", extra={"time_zone": time_zone})
        time_zone, tz = "UTC", UTC
    return time_zone, now.astimezone(tz).strftime(LOCAL_TIME_FORMAT)


def _ipv4_addresses() -> list[str]:
    addresses: list[str] = []
    try:
        for iface_addrs in psutil.net_if_addrs().values():
            for addr in iface_addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    addresses.append(addr.address)
    except OSError as e:
        logger.debug("Failed to list network addresses", extra={"error": str(e)})
    return addresses


def _env_value(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def get_build_info() -> dict[str, Any]:
    """
    Version and build provenance of the running monitor.

    Read from the ``APP_VERSION``, ``GIT_REF``, ``GIT_SHA`` and ``BUILD_TIME``
    environment variables. Blank values are reported as None; the version
    falls back to the installed package version.
    """
    return {
        "version": _env_value("APP_VERSION") or __version__,
        "gitRef": _env_value("GIT_REF"),
        "gitSha": _env_value("GIT_SHA"),
        "buildTime": _env_value("BUILD_TIME"),
    }


def get_host_info() -> dict[str, Any]:
    """Static and slowly-changing host facts (blocking)."""
    memory = psutil.virtual_memory()
    try:
        load1, load5, load15 = os.getloadavg()
    except OSError:
        load1 = load5 = load15 = None

    return {
        "hostname": socket.gethostname(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
        "cpus": psutil.cpu_count(logical=True) or 1,
        "uptimeSec": int(time.time() - psutil.boot_time()),
        "load1": load1,
        "load5": load5,
        "load15": load15,
        "memTotalBytes": memory.total,
        "memAvailableBytes": memory.available,
        "memUsedBytes": memory.total - memory.available,
        "ips": _ipv4_addresses(),
    }


# =============================================================================
# Handlers
# =============================================================================


async def _latest_sample(ctx: MonitorContext) -> RawSample | None:
    """Newest sample from memory, or from the store before the first tick."""
    latest = ctx.sampler.recent.latest()
    if latest is None:
        latest = await ctx.store.latest_raw()
    return latest


async def handle_metrics(ctx: MonitorContext, params: dict[str, Any]) -> dict[str, Any]:
    """Series over the last ``range`` (or ``hours``) hours, both tiers stitched."""
    range_hours = _float_param(params, "range", "hours")
    return await ctx.query.query_payload(range_hours)


async def handle_recent(ctx: MonitorContext, params: dict[str, Any]) -> dict[str, Any]:
    """Samples kept in memory for the last ``minutes`` minutes."""
    recent = ctx.sampler.recent
    max_minutes = recent.window_ms / 60_000
    minutes = _float_param(params, "minutes")
    if minutes is None or minutes <= 0:
        minutes = DEFAULT_RECENT_MINUTES
    minutes = min(minutes, max_minutes)

    now_ms = ctx.clock()
    from_ms = now_ms - int(minutes * 60_000)
    samples = recent.since(from_ms)
    return {
        "minutes": minutes,
        "fromMs": from_ms,
        "toMs": now_ms,
        "count": len(samples),
        "samples": [s.to_dict() for s in samples],
    }


async def handle_health(ctx: MonitorContext, params: dict[str, Any]) -> dict[str, Any]:
    """Current health verdict."""
    now_ms = ctx.clock()
    report = await ctx.health.check(await _latest_sample(ctx))
    return {"time": ms_to_iso(now_ms), **report.to_dict()}


async def handle_status(ctx: MonitorContext, params: dict[str, Any]) -> dict[str, Any]:
    """Everything the dashboard shows, in one payload."""
    now_ms = ctx.clock()
    latest = await _latest_sample(ctx)
    disk_path = ctx.config.metrics.disk_path

    loop = asyncio.get_event_loop()
    host, disk, inodes = await asyncio.gather(
        loop.run_in_executor(None, get_host_info),
        loop.run_in_executor(None, get_disk_usage, disk_path),
        loop.run_in_executor(None, get_inode_usage, disk_path),
    )
    report = await ctx.health.check(latest)
    raw_rows, rollup_rows = await asyncio.gather(
        ctx.store.count_raw(), ctx.store.count_rollup()
    )

    now = datetime.fromtimestamp(now_ms / 1000, tz=UTC)
    time_zone, time_local = format_local_time(now, ctx.config.health.time_zone)

    return {
        "time": ms_to_iso(now_ms),
        "timeZone": time_zone,
        "timeLocal": time_local,
        "health": report.health.value,
        "notes": report.notes,
        "host": host,
        "latest": latest.to_dict() if latest is not None else None,
        "disk": disk.to_dict() if disk is not None else None,
        "inodes": inodes.to_dict() if inodes is not None else None,
        "checks": report.checks,
        "storage": {"rawRows": raw_rows, "rollupRows": rollup_rows},
        "sampler": ctx.sampler.get_status().to_dict(),
        "build": get_build_info(),
    }


def build_registry(ctx: MonitorContext) -> EndpointRegistry:
    """
    Create a registry with every endpoint bound to ``ctx``.

    Example:
        >>> registry = build_registry(ctx)
        >>> await registry.invoke("/metrics.json", {"range": "6"})
    """
    registry = EndpointRegistry()
    registry.register("/metrics.json", partial(handle_metrics, ctx))
    registry.register("/recent.json", partial(handle_recent, ctx))
    registry.register("/health.json", partial(handle_health, ctx))
    registry.register("/status.json", partial(handle_status, ctx))
    return registry

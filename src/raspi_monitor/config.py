"""
Configuration management for the Raspberry Pi host monitor.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/raspi-monitor/config.yml or --config path)
3. Environment variables (RASPI_MONITOR_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

Numeric settings that arrive non-finite or unparseable (and, for sizes,
timeouts and intervals, zero or negative) fall back to their defaults
instead of failing validation, so a typo in the environment never
stops the daemon from starting. Range clamps (minimum interval, minimum
retention) are applied by the components that consume the values.
"""

from __future__ import annotations

import argparse
import math
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/raspi-monitor/config.yml")
DEFAULT_ENV_PREFIX = "RASPI_MONITOR_"

# The recent buffer never holds more than an hour
MAX_RECENT_WINDOW_SECONDS = 3600


def _finite_or_default(value: Any, info: ValidationInfo, model: type[BaseModel]) -> Any:
    """Return ``value`` when it parses as a finite number, else the field default."""
    if value is None:
        return model.model_fields[info.field_name].default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return model.model_fields[info.field_name].default
    if not math.isfinite(number):
        return model.model_fields[info.field_name].default
    return value


def _positive_or_default(value: Any, info: ValidationInfo, model: type[BaseModel]) -> Any:
    """Like ``_finite_or_default``, but zero and negative numbers also get the default."""
    value = _finite_or_default(value, info, model)
    if float(value) <= 0:
        return model.model_fields[info.field_name].default
    return value


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit one JSON object per line.
    """

    level: str = Field(default="info", description="Log level: debug, info, warn, error")
    log_to_stdout: bool = Field(default=True, description="Whether to log to stdout")
    json_format: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Metrics Configuration
# =============================================================================


class MetricsConfig(BaseModel):
    """Metrics sampling, storage and retention configuration.

    Attributes:
        storage_path: Path to the SQLite database.
        sampling_interval_ms: Tick interval (clamped to >= 1000 by the sampler).
        raw_retention_hours: Horizon for raw samples (clamped to >= 1).
        rollup_retention_days: Horizon for 1-minute rollups (clamped to >= 1).
        default_range_hours: Range served by /metrics.json when none is given.
        prune_interval_ms: Minimum wall-clock time between prune passes.
        max_pending_rows: Cap on unflushed raw samples while storage is failing.
        recent_window_seconds: Span of the in-memory recent buffer (<= 3600).
        collect_timeout_seconds: Bound on a single collection pass.
        disk_path: Mount point whose usage is sampled.
    """

    storage_path: str = Field(
        default="/var/lib/raspi-monitor/metrics.db",
        description="Path to the metrics SQLite database",
    )
    sampling_interval_ms: int = Field(
        default=5000,
        description="Sampling interval in milliseconds (minimum 1000)",
    )
    raw_retention_hours: float = Field(
        default=24,
        description="Retention for raw samples, in hours",
    )
    rollup_retention_days: float = Field(
        default=30,
        description="Retention for 1-minute rollups, in days",
    )
    default_range_hours: float = Field(
        default=24,
        description="Default /metrics.json range, in hours",
    )
    prune_interval_ms: int = Field(
        default=600_000,
        description="Minimum time between prune passes, in milliseconds",
    )
    max_pending_rows: int = Field(
        default=720,
        ge=1,
        description="Maximum raw samples buffered while storage is unavailable",
    )
    recent_window_seconds: int = Field(
        default=3600,
        ge=1,
        le=3600,
        description="Span of the in-memory recent samples buffer",
    )
    collect_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single collection pass, in seconds",
    )
    disk_path: str = Field(
        default="/",
        description="Mount point whose disk usage is sampled",
    )

    @field_validator(
        "sampling_interval_ms",
        "raw_retention_hours",
        "rollup_retention_days",
        "default_range_hours",
        "prune_interval_ms",
        mode="before",
    )
    @classmethod
    def default_non_finite(cls, v: Any, info: ValidationInfo) -> Any:
        """Replace non-finite or unparseable numbers with the field default."""
        value = _finite_or_default(v, info, cls)
        if info.field_name in ("sampling_interval_ms", "prune_interval_ms"):
            return int(float(value))
        return value

    @field_validator(
        "max_pending_rows",
        "recent_window_seconds",
        "collect_timeout_seconds",
        mode="before",
    )
    @classmethod
    def default_non_positive(cls, v: Any, info: ValidationInfo) -> Any:
        """Replace zero, negative, non-finite or unparseable values with the field default."""
        value = _positive_or_default(v, info, cls)
        if info.field_name == "recent_window_seconds":
            return max(1, min(int(float(value)), MAX_RECENT_WINDOW_SECONDS))
        if info.field_name == "max_pending_rows":
            return max(1, int(float(value)))
        return value


# =============================================================================
# Health Configuration
# =============================================================================


class HealthConfig(BaseModel):
    """Health verdict configuration.

    Attributes:
        service: systemd unit whose liveness is checked (empty disables).
        process_patterns: ``pgrep -f`` patterns checked when no unit is set.
        cpu_temp_warn_c: CPU temperature at or above which health degrades.
        disk_used_warn_pct: Disk usage at or above which health degrades.
        mem_used_warn_pct: Memory usage above which health degrades.
        inode_used_warn_pct: Inode usage at or above which health degrades.
        scan_dmesg: Whether to scan the kernel log for storage errors.
        time_zone: IANA zone used for the local time in status payloads.
        check_interval_seconds: How often the daemon evaluates health for
            notifications.
    """

    service: str = Field(default="", description="systemd unit to watch")
    process_patterns: list[str] = Field(
        default_factory=list,
        description="Process command-line patterns to watch (pgrep -f)",
    )
    cpu_temp_warn_c: float = Field(default=80.0, description="CPU temperature warning")
    disk_used_warn_pct: float = Field(default=90.0, description="Disk usage warning")
    mem_used_warn_pct: float = Field(default=90.0, description="Memory usage warning")
    inode_used_warn_pct: float = Field(default=90.0, description="Inode usage warning")
    scan_dmesg: bool = Field(default=True, description="Scan dmesg for storage errors")
    time_zone: str = Field(default="UTC", description="Time zone for local timestamps")
    check_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval between background health checks",
    )

    @field_validator("process_patterns", mode="before")
    @classmethod
    def split_patterns(cls, v: Any) -> Any:
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator(
        "cpu_temp_warn_c",
        "disk_used_warn_pct",
        "mem_used_warn_pct",
        "inode_used_warn_pct",
        mode="before",
    )
    @classmethod
    def default_non_finite(cls, v: Any, info: ValidationInfo) -> Any:
        """Replace non-finite or unparseable thresholds with the field default."""
        return _finite_or_default(v, info, cls)

    @field_validator("check_interval_seconds", mode="before")
    @classmethod
    def default_non_positive(cls, v: Any, info: ValidationInfo) -> Any:
        """Replace zero, negative, non-finite or unparseable intervals with the default."""
        return _positive_or_default(v, info, cls)


# =============================================================================
# Notification Configuration
# =============================================================================


class NotifyConfig(BaseModel):
    """Health transition notification configuration.

    Attributes:
        discord_webhook_url: Discord webhook to post to (empty disables).
        min_interval_seconds: Minimum time between two notifications.
        skip_initial: Do not notify for the first verdict after startup.
        request_timeout_seconds: HTTP timeout for the webhook call.
    """

    discord_webhook_url: str = Field(default="", description="Discord webhook URL")
    min_interval_seconds: int = Field(
        default=300,
        ge=0,
        description="Minimum interval between notifications",
    )
    skip_initial: bool = Field(default=True, description="Skip the boot-time verdict")
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Webhook request timeout",
    )

    @field_validator("request_timeout_seconds", mode="before")
    @classmethod
    def default_non_positive(cls, v: Any, info: ValidationInfo) -> Any:
        """Replace zero, negative, non-finite or unparseable timeouts with the default."""
        return _positive_or_default(v, info, cls)

    @field_validator("min_interval_seconds", mode="before")
    @classmethod
    def default_negative(cls, v: Any, info: ValidationInfo) -> Any:
        """Zero disables rate limiting; negative or non-finite values get the default."""
        value = _finite_or_default(v, info, cls)
        if float(value) < 0:
            return cls.model_fields[info.field_name].default
        return int(float(value))


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        metrics: Sampling, storage and retention configuration.
        health: Health verdict configuration.
        notify: Notification configuration.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Metrics configuration",
    )
    health: HealthConfig = Field(
        default_factory=HealthConfig,
        description="Health verdict configuration",
    )
    notify: NotifyConfig = Field(
        default_factory=NotifyConfig,
        description="Notification configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ``RASPI_MONITOR_METRICS__SAMPLING_INTERVAL_MS=2000``.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments into a config override dictionary.

    Args:
        args: Command-line arguments. If None, uses sys.argv.
    """
    parser = argparse.ArgumentParser(
        description="Raspberry Pi host monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--db", type=str, help="Override the metrics database path")

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})["level"] = "debug"

    if parsed.db:
        result["metrics"] = {"storage_path": parsed.db}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML file, environment
    variables, then command-line arguments.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)

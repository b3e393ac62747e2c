"""
Raspberry Pi host monitor.

This package samples host health signals, stores them as a two-tier
time-series in SQLite (raw samples + 1-minute rollups) and builds the JSON
payloads served by the monitor's HTTP endpoints.
"""

__version__ = "0.1.0"

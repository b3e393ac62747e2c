"""
Pytest configuration for the Raspberry Pi host monitor tests.
"""

from __future__ import annotations

import tempfile
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest

from raspi_monitor.metrics.storage import MetricsStore

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeClock:
    """Manually advanced epoch-milliseconds clock."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def temp_db_path() -> Iterator[Path]:
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_metrics.db"


@pytest.fixture
async def store(temp_db_path: Path) -> AsyncIterator[MetricsStore]:
    """Create an initialized MetricsStore, closed after the test."""
    store = MetricsStore(temp_db_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

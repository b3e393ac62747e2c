"""
Tests for the metrics storage layer.

This test module validates:
- Schema creation and initialization failures
- Raw and rollup upserts (single and batched)
- Inclusive, ascending range selects
- Pruning with a strict cutoff
- Close semantics
"""

from __future__ import annotations

import sqlite3
import tempfile
from pathlib import Path

import pytest

from raspi_monitor.errors import FailedPreconditionError, StorageError
from raspi_monitor.metrics.storage import (
    MetricsStore,
    RawSample,
    RollupSample,
    ms_to_iso,
)

# =============================================================================
# Tests for Data Models
# =============================================================================


class TestRawSample:
    """Tests for the RawSample dataclass."""

    def test_to_dict_uses_wire_names(self) -> None:
        sample = RawSample(
            time_ms=1_700_000_000_000,
            cpu_usage_pct_instant=12.5,
            cpu_temp_c=None,
            mem_used_pct=40.0,
        )

        d = sample.to_dict()

        assert d["timeMs"] == 1_700_000_000_000
        assert d["time"] == "2023-11-14T22:13:20.000+00:00"
        assert d["cpuUsagePctInstant"] == 12.5
        assert d["cpuUsagePctAvg10s"] is None
        assert d["cpuTempC"] is None
        assert d["memUsedPct"] == 40.0

    def test_ms_to_iso_keeps_milliseconds(self) -> None:
        assert ms_to_iso(1234) == "1970-01-01T00:00:01.234+00:00"


class TestRollupSample:
    def test_to_dict(self) -> None:
        d = RollupSample(bucket_start_ms=60_000, mem_used_pct=10.0).to_dict()

        assert d["bucketStartMs"] == 60_000
        assert d["cpuTempC"] is None
        assert d["memUsedPct"] == 10.0


# =============================================================================
# Tests for Initialization
# =============================================================================


class TestMetricsStoreInit:
    """Tests for MetricsStore initialization."""

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)
        assert not temp_db_path.exists()

        await store.initialize()

        assert temp_db_path.exists()
        assert store.is_open
        await store.close()

    @pytest.mark.asyncio
    async def test_initialize_creates_parent_dirs(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "path" / "metrics.db"
            store = MetricsStore(db_path)

            await store.initialize()

            assert db_path.exists()
            await store.close()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)

        await store.initialize()
        await store.initialize()

        assert await store.count_raw() == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_initialize_creates_both_tables(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)
        await store.initialize()

        conn = sqlite3.connect(temp_db_path)
        try:
            tables = {
                r[0]
                for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            conn.close()

        assert {"metrics_raw", "metrics_1m"} <= tables
        await store.close()

    @pytest.mark.asyncio
    async def test_initialize_uses_wal(self, store: MetricsStore) -> None:
        conn = sqlite3.connect(store.db_path)
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()

        assert mode.lower() == "wal"

    @pytest.mark.asyncio
    async def test_initialize_unwritable_path_fails(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            # A regular file where the parent directory should be
            blocker = Path(tmpdir) / "not-a-dir"
            blocker.write_text("x")
            store = MetricsStore(blocker / "metrics.db")

            with pytest.raises(FailedPreconditionError):
                await store.initialize()

            assert not store.is_open


# =============================================================================
# Tests for the Raw Tier
# =============================================================================


class TestRawTier:
    """Tests for raw sample writes, reads and prunes."""

    @pytest.mark.asyncio
    async def test_insert_and_select_round_trip(self, store: MetricsStore) -> None:
        sample = RawSample(
            time_ms=1000,
            cpu_usage_pct_instant=10.0,
            cpu_usage_pct_avg10s=12.0,
            cpu_temp_c=None,
            disk_used_pct=55.5,
            mem_used_pct=40.0,
        )

        await store.insert_raw(sample)
        rows = await store.select_raw_range(1000, 1000)

        assert rows == [sample]

    @pytest.mark.asyncio
    async def test_absent_fields_stay_absent(self, store: MetricsStore) -> None:
        await store.insert_raw(RawSample(time_ms=5, mem_used_pct=1.0))

        (row,) = await store.select_raw_range(0, 10)

        assert row.cpu_usage_pct_instant is None
        assert row.cpu_usage_pct_avg10s is None
        assert row.cpu_temp_c is None
        assert row.disk_used_pct is None

    @pytest.mark.asyncio
    async def test_upsert_replaces_same_time(self, store: MetricsStore) -> None:
        await store.insert_raw(RawSample(time_ms=1000, mem_used_pct=10.0))
        await store.insert_raw(RawSample(time_ms=1000, mem_used_pct=20.0, cpu_temp_c=50.0))

        rows = await store.select_raw_range(0, 2000)

        assert len(rows) == 1
        assert rows[0].mem_used_pct == 20.0
        assert rows[0].cpu_temp_c == 50.0

    @pytest.mark.asyncio
    async def test_insert_same_row_twice_is_idempotent(self, store: MetricsStore) -> None:
        sample = RawSample(time_ms=1000, mem_used_pct=10.0)

        await store.insert_raw(sample)
        await store.insert_raw(sample)

        assert await store.count_raw() == 1
        assert await store.select_raw_range(0, 2000) == [sample]

    @pytest.mark.asyncio
    async def test_batch_insert(self, store: MetricsStore) -> None:
        batch = [RawSample(time_ms=t, mem_used_pct=float(t)) for t in (3000, 1000, 2000)]

        written = await store.insert_raw_batch(batch)

        assert written == 3
        rows = await store.select_raw_range(0, 10_000)
        assert [r.time_ms for r in rows] == [1000, 2000, 3000]

    @pytest.mark.asyncio
    async def test_batch_with_duplicate_keys_keeps_last(self, store: MetricsStore) -> None:
        await store.insert_raw_batch(
            [
                RawSample(time_ms=1000, mem_used_pct=1.0),
                RawSample(time_ms=1000, mem_used_pct=2.0),
            ]
        )

        rows = await store.select_raw_range(0, 2000)

        assert [r.mem_used_pct for r in rows] == [2.0]

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, store: MetricsStore) -> None:
        assert await store.insert_raw_batch([]) == 0
        assert await store.count_raw() == 0

    @pytest.mark.asyncio
    async def test_range_is_inclusive(self, store: MetricsStore) -> None:
        await store.insert_raw_batch(
            [RawSample(time_ms=t, mem_used_pct=1.0) for t in (999, 1000, 1500, 2000, 2001)]
        )

        rows = await store.select_raw_range(1000, 2000)

        assert [r.time_ms for r in rows] == [1000, 1500, 2000]

    @pytest.mark.asyncio
    async def test_empty_range(self, store: MetricsStore) -> None:
        await store.insert_raw(RawSample(time_ms=1000, mem_used_pct=1.0))

        assert await store.select_raw_range(2000, 3000) == []

    @pytest.mark.asyncio
    async def test_latest_raw(self, store: MetricsStore) -> None:
        assert await store.latest_raw() is None

        await store.insert_raw_batch(
            [RawSample(time_ms=t, mem_used_pct=float(t)) for t in (1000, 3000, 2000)]
        )

        latest = await store.latest_raw()
        assert latest is not None
        assert latest.time_ms == 3000

    @pytest.mark.asyncio
    async def test_prune_cutoff_is_strict(self, store: MetricsStore) -> None:
        await store.insert_raw_batch(
            [RawSample(time_ms=1000, mem_used_pct=1.0), RawSample(time_ms=2000, mem_used_pct=2.0)]
        )

        deleted = await store.prune_raw(1500)

        assert deleted == 1
        rows = await store.select_raw_range(0, 3000)
        assert [r.time_ms for r in rows] == [2000]

    @pytest.mark.asyncio
    async def test_prune_keeps_row_at_cutoff(self, store: MetricsStore) -> None:
        await store.insert_raw(RawSample(time_ms=1500, mem_used_pct=1.0))

        assert await store.prune_raw(1500) == 0
        assert await store.count_raw() == 1

    @pytest.mark.asyncio
    async def test_prune_empty_table(self, store: MetricsStore) -> None:
        assert await store.prune_raw(10_000) == 0


# =============================================================================
# Tests for the Rollup Tier
# =============================================================================


class TestRollupTier:
    """Tests for rollup writes, reads and prunes."""

    @pytest.mark.asyncio
    async def test_insert_and_select(self, store: MetricsStore) -> None:
        rollup = RollupSample(
            bucket_start_ms=60_000,
            cpu_usage_pct_avg10s=20.0,
            cpu_temp_c=None,
            disk_used_pct=50.0,
            mem_used_pct=40.0,
        )

        await store.insert_rollup(rollup)

        assert await store.select_rollup_range(60_000, 60_000) == [rollup]

    @pytest.mark.asyncio
    async def test_upsert_replaces_bucket(self, store: MetricsStore) -> None:
        await store.insert_rollup(RollupSample(bucket_start_ms=60_000, mem_used_pct=1.0))
        await store.insert_rollup(RollupSample(bucket_start_ms=60_000, mem_used_pct=2.0))

        rows = await store.select_rollup_range(0, 120_000)

        assert len(rows) == 1
        assert rows[0].mem_used_pct == 2.0

    @pytest.mark.asyncio
    async def test_range_ascending_and_inclusive(self, store: MetricsStore) -> None:
        for bucket in (180_000, 60_000, 120_000, 240_000):
            await store.insert_rollup(RollupSample(bucket_start_ms=bucket, mem_used_pct=1.0))

        rows = await store.select_rollup_range(60_000, 180_000)

        assert [r.bucket_start_ms for r in rows] == [60_000, 120_000, 180_000]

    @pytest.mark.asyncio
    async def test_prune_rollup(self, store: MetricsStore) -> None:
        for bucket in (60_000, 120_000, 180_000):
            await store.insert_rollup(RollupSample(bucket_start_ms=bucket, mem_used_pct=1.0))

        deleted = await store.prune_rollup(120_000)

        assert deleted == 1
        assert await store.count_rollup() == 2

    @pytest.mark.asyncio
    async def test_tiers_are_independent(self, store: MetricsStore) -> None:
        await store.insert_raw(RawSample(time_ms=60_000, mem_used_pct=1.0))
        await store.insert_rollup(RollupSample(bucket_start_ms=60_000, mem_used_pct=1.0))

        await store.prune_raw(120_000)

        assert await store.count_raw() == 0
        assert await store.count_rollup() == 1


# =============================================================================
# Tests for Close and Failures
# =============================================================================


class TestMetricsStoreClose:
    """Tests for close semantics and error wrapping."""

    @pytest.mark.asyncio
    async def test_operations_after_close_fail(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)
        await store.initialize()
        await store.close()

        assert not store.is_open
        with pytest.raises(FailedPreconditionError):
            await store.insert_raw(RawSample(time_ms=1, mem_used_pct=1.0))
        with pytest.raises(FailedPreconditionError):
            await store.select_raw_range(0, 1)
        with pytest.raises(FailedPreconditionError):
            await store.initialize()

    @pytest.mark.asyncio
    async def test_close_twice_is_noop(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)
        await store.initialize()

        await store.close()
        await store.close()

        assert not store.is_open

    @pytest.mark.asyncio
    async def test_close_without_initialize(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)

        await store.close()

        assert not temp_db_path.exists()

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, temp_db_path: Path) -> None:
        store = MetricsStore(temp_db_path)
        await store.insert_raw(RawSample(time_ms=1000, mem_used_pct=33.0))
        await store.close()

        reopened = MetricsStore(temp_db_path)
        rows = await reopened.select_raw_range(0, 2000)
        await reopened.close()

        assert [r.mem_used_pct for r in rows] == [33.0]

    @pytest.mark.asyncio
    async def test_sqlite_failure_becomes_storage_error(self, store: MetricsStore) -> None:
        conn = sqlite3.connect(store.db_path)
        try:
            conn.execute("DROP TABLE metrics_raw")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(StorageError) as exc_info:
            await store.insert_raw(RawSample(time_ms=1, mem_used_pct=1.0))

        assert exc_info.value.error_code == "unavailable"
        assert exc_info.value.details["operation"] == "insert raw samples"

    @pytest.mark.asyncio
    async def test_failed_batch_writes_nothing(self, store: MetricsStore) -> None:
        # Violates NOT NULL on mem_used_pct, after a valid row in the same batch
        batch = [
            RawSample(time_ms=1, mem_used_pct=1.0),
            RawSample(time_ms=2, mem_used_pct=None),  # type: ignore[arg-type]
        ]

        with pytest.raises(StorageError):
            await store.insert_raw_batch(batch)

        assert await store.count_raw() == 0

"""
SQLite storage layer for the metrics time-series.

This module implements the MetricsStore class that handles:
- SQLite database initialization with the two-tier schema
- Idempotent upserts of raw samples (single and batched) and 1-minute rollups
- Inclusive, ascending range selects on both tiers
- Age-based pruning of both tiers

SQLite Schema:
    CREATE TABLE metrics_raw (
        time_ms INTEGER PRIMARY KEY,       -- epoch milliseconds
        cpu_usage_pct_instant REAL,
        cpu_usage_pct_avg10s REAL,
        cpu_temp_c REAL,
        disk_used_pct REAL,
        mem_used_pct REAL NOT NULL
    );
    CREATE TABLE metrics_1m (
        bucket_start_ms INTEGER PRIMARY KEY,  -- floored to the minute
        cpu_usage_pct_avg10s REAL,
        cpu_temp_c REAL,
        disk_used_pct REAL,
        mem_used_pct REAL NOT NULL
    );
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from raspi_monitor.errors import FailedPreconditionError, StorageError
from raspi_monitor.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# Data Models
# =============================================================================


def ms_to_iso(time_ms: int) -> str:
    """Format epoch milliseconds as an ISO 8601 UTC timestamp."""
    return datetime.fromtimestamp(time_ms / 1000, UTC).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class RawSample:
    """One observation at native sampling frequency.

    ``None`` means no reading was available for that field; it is never
    replaced by a number.

    Attributes:
        time_ms: Epoch milliseconds; unique key of the raw tier.
        cpu_usage_pct_instant: CPU usage since the previous reading (0-100).
        cpu_usage_pct_avg10s: Mean of instant readings over the trailing 10 s.
        cpu_temp_c: CPU temperature in Celsius.
        disk_used_pct: Disk usage of the sampled mount (0-100).
        mem_used_pct: Memory usage (0-100), always present.
    """

    time_ms: int
    mem_used_pct: float
    cpu_usage_pct_instant: float | None = None
    cpu_usage_pct_avg10s: float | None = None
    cpu_temp_c: float | None = None
    disk_used_pct: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "timeMs": self.time_ms,
            "time": ms_to_iso(self.time_ms),
            "cpuUsagePctInstant": self.cpu_usage_pct_instant,
            "cpuUsagePctAvg10s": self.cpu_usage_pct_avg10s,
            "cpuTempC": self.cpu_temp_c,
            "diskUsedPct": self.disk_used_pct,
            "memUsedPct": self.mem_used_pct,
        }


@dataclass(frozen=True)
class RollupSample:
    """Aggregate of the raw samples in one 1-minute bucket.

    Attributes:
        bucket_start_ms: Bucket start, floored to the minute; unique key.
        cpu_usage_pct_avg10s: Mean of the non-absent raw values, or None.
        cpu_temp_c: Mean of the non-absent raw values, or None.
        disk_used_pct: Mean of the non-absent raw values, or None.
        mem_used_pct: Mean of the raw values, 0.0 when there were none.
    """

    bucket_start_ms: int
    mem_used_pct: float
    cpu_usage_pct_avg10s: float | None = None
    cpu_temp_c: float | None = None
    disk_used_pct: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "bucketStartMs": self.bucket_start_ms,
            "time": ms_to_iso(self.bucket_start_ms),
            "cpuUsagePctAvg10s": self.cpu_usage_pct_avg10s,
            "cpuTempC": self.cpu_temp_c,
            "diskUsedPct": self.disk_used_pct,
            "memUsedPct": self.mem_used_pct,
        }


# =============================================================================
# SQLite Schema
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metrics_raw (
    time_ms INTEGER PRIMARY KEY,
    cpu_usage_pct_instant REAL,
    cpu_usage_pct_avg10s REAL,
    cpu_temp_c REAL,
    disk_used_pct REAL,
    mem_used_pct REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics_1m (
    bucket_start_ms INTEGER PRIMARY KEY,
    cpu_usage_pct_avg10s REAL,
    cpu_temp_c REAL,
    disk_used_pct REAL,
    mem_used_pct REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_metrics_raw_time ON metrics_raw(time_ms);
CREATE INDEX IF NOT EXISTS idx_metrics_1m_time ON metrics_1m(bucket_start_ms);
"""

UPSERT_RAW_SQL = """
INSERT INTO metrics_raw (
    time_ms, cpu_usage_pct_instant, cpu_usage_pct_avg10s,
    cpu_temp_c, disk_used_pct, mem_used_pct
) VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(time_ms) DO UPDATE SET
    cpu_usage_pct_instant = excluded.cpu_usage_pct_instant,
    cpu_usage_pct_avg10s = excluded.cpu_usage_pct_avg10s,
    cpu_temp_c = excluded.cpu_temp_c,
    disk_used_pct = excluded.disk_used_pct,
    mem_used_pct = excluded.mem_used_pct
"""

UPSERT_ROLLUP_SQL = """
INSERT INTO metrics_1m (
    bucket_start_ms, cpu_usage_pct_avg10s, cpu_temp_c, disk_used_pct, mem_used_pct
) VALUES (?, ?, ?, ?, ?)
ON CONFLICT(bucket_start_ms) DO UPDATE SET
    cpu_usage_pct_avg10s = excluded.cpu_usage_pct_avg10s,
    cpu_temp_c = excluded.cpu_temp_c,
    disk_used_pct = excluded.disk_used_pct,
    mem_used_pct = excluded.mem_used_pct
"""

SELECT_RAW_SQL = """
SELECT time_ms, cpu_usage_pct_instant, cpu_usage_pct_avg10s,
       cpu_temp_c, disk_used_pct, mem_used_pct
FROM metrics_raw
"""

SELECT_ROLLUP_SQL = """
SELECT bucket_start_ms, cpu_usage_pct_avg10s, cpu_temp_c, disk_used_pct, mem_used_pct
FROM metrics_1m
"""


def _raw_params(row: RawSample) -> tuple[Any, ...]:
    return (
        row.time_ms,
        row.cpu_usage_pct_instant,
        row.cpu_usage_pct_avg10s,
        row.cpu_temp_c,
        row.disk_used_pct,
        row.mem_used_pct,
    )


def _raw_from_row(row: sqlite3.Row) -> RawSample:
    return RawSample(
        time_ms=row["time_ms"],
        cpu_usage_pct_instant=row["cpu_usage_pct_instant"],
        cpu_usage_pct_avg10s=row["cpu_usage_pct_avg10s"],
        cpu_temp_c=row["cpu_temp_c"],
        disk_used_pct=row["disk_used_pct"],
        mem_used_pct=row["mem_used_pct"],
    )


def _rollup_from_row(row: sqlite3.Row) -> RollupSample:
    return RollupSample(
        bucket_start_ms=row["bucket_start_ms"],
        cpu_usage_pct_avg10s=row["cpu_usage_pct_avg10s"],
        cpu_temp_c=row["cpu_temp_c"],
        disk_used_pct=row["disk_used_pct"],
        mem_used_pct=row["mem_used_pct"],
    )


# =============================================================================
# MetricsStore Class
# =============================================================================


class MetricsStore:
    """
    SQLite-backed two-tier store for raw samples and 1-minute rollups.

    Concurrency:
    - WAL mode lets the query path read while the sampler writes
    - Each operation opens and closes its own connection, so no handle
      outlives the call that needed it, including on error paths
    - Writers are serialized by an asyncio lock and each batch is one
      transaction (all rows or none)
    - Blocking SQLite calls run in the default executor

    Example:
        >>> store = MetricsStore("/var/lib/raspi-monitor/metrics.db")
        >>> await store.initialize()
        >>> await store.insert_raw_batch([RawSample(time_ms=1000, mem_used_pct=42.0)])
        >>> rows = await store.select_raw_range(0, 2000)
        >>> await store.close()
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the MetricsStore.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._initialized = False
        self._closed = False
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        """True once initialized and until closed."""
        return self._initialized and not self._closed

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a database connection with the store's pragmas applied.

        The connection is closed on every exit path.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            # Fewer fsyncs; WAL keeps the database consistent after a crash
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """
        Open the store: create the parent directory, schema and indices.

        Idempotent and safe to call multiple times.

        Raises:
            FailedPreconditionError: If the database cannot be created or
                written, or the store has already been closed.
        """
        if self._closed:
            raise FailedPreconditionError(
                "Metrics store is closed",
                details={"db_path": str(self.db_path)},
            )
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            def _init_db() -> None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                with self._get_connection() as conn:
                    conn.executescript(SCHEMA_SQL)
                    conn.commit()

            try:
                await asyncio.get_event_loop().run_in_executor(None, _init_db)
            except Exception as e:
                logger.error(
                    "Failed to initialize metrics database",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
                raise FailedPreconditionError(
                    f"Failed to initialize metrics database: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

            self._initialized = True
            logger.info(
                "Metrics database initialized",
                extra={"db_path": str(self.db_path)},
            )

    async def _ensure_initialized(self) -> None:
        if self._closed:
            raise FailedPreconditionError(
                "Metrics store is closed",
                details={"db_path": str(self.db_path)},
            )
        if not self._initialized:
            await self.initialize()

    async def _run(
        self,
        operation: str,
        fn: Callable[[], T],
        details: dict[str, Any] | None = None,
    ) -> T:
        """
        Run a blocking database call in the executor.

        Raises:
            StorageError: Wrapping any exception raised by ``fn``.
        """
        await self._ensure_initialized()
        try:
            return await asyncio.get_event_loop().run_in_executor(None, fn)
        except Exception as e:
            logger.error(
                f"Failed to {operation}",
                extra={"error": str(e), **(details or {})},
            )
            raise StorageError(
                f"Failed to {operation}: {e}",
                details={"operation": operation, **(details or {})},
            ) from e

    # -------------------------------------------------------------------------
    # Raw tier
    # -------------------------------------------------------------------------

    async def insert_raw(self, row: RawSample) -> None:
        """
        Upsert a single raw sample keyed by ``time_ms``.

        Raises:
            StorageError: If the write fails.
        """
        await self.insert_raw_batch([row])

    async def insert_raw_batch(self, rows: list[RawSample]) -> int:
        """
        Upsert raw samples in a single transaction.

        Either every row is written or none is: a failure rolls the whole
        batch back before the error propagates.

        Args:
            rows: Samples to write. Repeated ``time_ms`` values keep the last
                payload.

        Returns:
            Number of rows written.

        Raises:
            StorageError: If the write fails.
        """
        if not rows:
            return 0

        params = [_raw_params(r) for r in rows]

        def _insert_batch() -> int:
            with self._get_connection() as conn:
                with conn:
                    conn.executemany(UPSERT_RAW_SQL, params)
                return len(params)

        async with self._write_lock:
            count = await self._run(
                "insert raw samples", _insert_batch, {"count": len(rows)}
            )
        logger.debug("Inserted batch of raw samples", extra={"count": count})
        return count

    async def select_raw_range(self, from_ms: int, to_ms: int) -> list[RawSample]:
        """
        Return raw samples with ``from_ms <= time_ms <= to_ms``, ascending.

        Raises:
            StorageError: If the read fails.
        """

        def _select() -> list[RawSample]:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    SELECT_RAW_SQL + " WHERE time_ms BETWEEN ? AND ? ORDER BY time_ms ASC",
                    (int(from_ms), int(to_ms)),
                )
                return [_raw_from_row(r) for r in cursor.fetchall()]

        return await self._run(
            "select raw samples", _select, {"from_ms": from_ms, "to_ms": to_ms}
        )

    async def latest_raw(self) -> RawSample | None:
        """
        Return the newest raw sample, or None when the tier is empty.

        Raises:
            StorageError: If the read fails.
        """

        def _latest() -> RawSample | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    SELECT_RAW_SQL + " ORDER BY time_ms DESC LIMIT 1"
                ).fetchone()
                return _raw_from_row(row) if row is not None else None

        return await self._run("select latest raw sample", _latest)

    async def prune_raw(self, older_than_ms: int) -> int:
        """
        Delete raw samples with ``time_ms < older_than_ms``.

        Returns:
            Number of rows deleted.

        Raises:
            StorageError: If the delete fails.
        """
        return await self._prune("metrics_raw", "time_ms", older_than_ms)

    async def count_raw(self) -> int:
        """Return the number of raw samples stored."""
        return await self._count("metrics_raw")

    # -------------------------------------------------------------------------
    # Rollup tier
    # -------------------------------------------------------------------------

    async def insert_rollup(self, row: RollupSample) -> None:
        """
        Upsert a rollup keyed by ``bucket_start_ms``.

        Raises:
            StorageError: If the write fails.
        """
        params = (
            row.bucket_start_ms,
            row.cpu_usage_pct_avg10s,
            row.cpu_temp_c,
            row.disk_used_pct,
            row.mem_used_pct,
        )

        def _insert() -> None:
            with self._get_connection() as conn:
                with conn:
                    conn.execute(UPSERT_ROLLUP_SQL, params)

        async with self._write_lock:
            await self._run(
                "insert rollup", _insert, {"bucket_start_ms": row.bucket_start_ms}
            )

    async def select_rollup_range(self, from_ms: int, to_ms: int) -> list[RollupSample]:
        """
        Return rollups with ``from_ms <= bucket_start_ms <= to_ms``, ascending.

        Raises:
            StorageError: If the read fails.
        """

        def _select() -> list[RollupSample]:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    SELECT_ROLLUP_SQL
                    + " WHERE bucket_start_ms BETWEEN ? AND ? ORDER BY bucket_start_ms ASC",
                    (int(from_ms), int(to_ms)),
                )
                return [_rollup_from_row(r) for r in cursor.fetchall()]

        return await self._run(
            "select rollups", _select, {"from_ms": from_ms, "to_ms": to_ms}
        )

    async def prune_rollup(self, older_than_ms: int) -> int:
        """
        Delete rollups with ``bucket_start_ms < older_than_ms``.

        Returns:
            Number of rows deleted.

        Raises:
            StorageError: If the delete fails.
        """
        return await self._prune("metrics_1m", "bucket_start_ms", older_than_ms)

    async def count_rollup(self) -> int:
        """Return the number of rollups stored."""
        return await self._count("metrics_1m")

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    async def _prune(self, table: str, key: str, older_than_ms: int) -> int:
        def _delete() -> int:
            with self._get_connection() as conn:
                with conn:
                    cursor = conn.execute(
                        f"DELETE FROM {table} WHERE {key} < ?", (int(older_than_ms),)
                    )
                return cursor.rowcount

        async with self._write_lock:
            count = await self._run(
                f"prune {table}", _delete, {"older_than_ms": older_than_ms}
            )
        if count > 0:
            logger.info(
                "Pruned old metrics rows",
                extra={
                    "table": table,
                    "count": count,
                    "cutoff_time": ms_to_iso(int(older_than_ms)),
                },
            )
        return count

    async def _count(self, table: str) -> int:
        def _count_rows() -> int:
            with self._get_connection() as conn:
                return conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]

        return await self._run(f"count {table}", _count_rows)

    async def close(self) -> None:
        """
        Close the store.

        Checkpoints the WAL into the main database file so the ``-wal`` file
        does not linger. Later operations raise FailedPreconditionError.
        Calling close twice is a no-op.
        """
        if self._closed:
            return

        was_initialized = self._initialized
        self._closed = True
        self._initialized = False

        if not was_initialized:
            return

        def _checkpoint() -> None:
            with self._get_connection() as conn:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")

        async with self._write_lock:
            try:
                await asyncio.get_event_loop().run_in_executor(None, _checkpoint)
            except sqlite3.Error as e:
                logger.warning(
                    "WAL checkpoint on close failed",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
        logger.debug("Metrics store closed", extra={"db_path": str(self.db_path)})

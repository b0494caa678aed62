"""
SQLite sample source.

Reads metric history from a ``metric_samples`` table. Timestamps are stored
as UTC epoch seconds so range queries stay index-friendly.

Features:
- WAL mode for concurrent reads while an ingester writes
- Bounded query time (request_timeout_seconds)
- UPSERT writes for ingestion and test fixtures
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from metric_sentinel.config.settings import Settings
from metric_sentinel.domain.errors import SourceUnavailableError
from metric_sentinel.domain.models import Sample
from metric_sentinel.observability.logging import get_logger
from metric_sentinel.ports.sample_source import SampleSourcePort

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metric_samples (
    asset_id TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    ts REAL NOT NULL,
    value REAL NOT NULL,
    PRIMARY KEY (asset_id, metric_name, ts)
);

CREATE INDEX IF NOT EXISTS idx_metric_samples_lookup
    ON metric_samples (asset_id, metric_name, ts);
"""


class SqliteSampleSource(SampleSourcePort):
    """aiosqlite-backed sample source."""

    name = "sqlite"

    def __init__(self, settings: Settings, db_path: str | Path | None = None):
        self.settings = settings
        self.db_path = Path(db_path or settings.source.sqlite_path)
        self.timeout = settings.source.request_timeout_seconds
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Open the database and make sure the table exists."""
        if self._initialized:
            return

        logger.info(f"Opening SQLite sample source: {self.db_path}")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(str(self.db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.executescript(SCHEMA_SQL)
            await self._conn.commit()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise SourceUnavailableError(
                f"Cannot open sample database {self.db_path}: {e}",
                source=self.name,
            ) from e

        self._initialized = True

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
        self._initialized = False

    async def insert_samples(self, asset_id: str, metric_name: str, samples: Iterable[Sample]) -> int:
        """
        Batch upsert samples (a later write for the same timestamp wins).

        Returns the number of rows written.
        """
        await self.initialize()
        assert self._conn is not None

        rows = [(asset_id, metric_name, _to_epoch(s.timestamp), float(s.value)) for s in samples]
        if not rows:
            return 0

        await self._conn.executemany(
            """
            INSERT INTO metric_samples (asset_id, metric_name, ts, value)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(asset_id, metric_name, ts) DO UPDATE SET value = excluded.value
            """,
            rows,
        )
        await self._conn.commit()
        return len(rows)

    async def list_series(self) -> list[tuple[str, str]]:
        """Distinct (asset_id, metric_name) pairs present in the table."""
        await self.initialize()
        assert self._conn is not None

        cursor = await self._conn.execute(
            "SELECT DISTINCT asset_id, metric_name FROM metric_samples ORDER BY asset_id, metric_name"
        )
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def fetch_samples(
        self,
        asset_id: str,
        metric_name: str,
        start: datetime,
        end: datetime,
    ) -> list[Sample]:
        try:
            await self.initialize()
            return await asyncio.wait_for(self._query(asset_id, metric_name, start, end), timeout=self.timeout)
        except TimeoutError as e:
            raise SourceUnavailableError(
                f"SQLite query timed out after {self.timeout}s",
                source=self.name,
                details={"asset_id": asset_id, "metric_name": metric_name},
            ) from e
        except (aiosqlite.Error, sqlite3.Error) as e:
            raise SourceUnavailableError(
                f"SQLite query failed: {e}",
                source=self.name,
                details={"asset_id": asset_id, "metric_name": metric_name},
            ) from e

    async def _query(self, asset_id: str, metric_name: str, start: datetime, end: datetime) -> list[Sample]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            """
            SELECT ts, value
            FROM metric_samples
            WHERE asset_id = ?
              AND metric_name = ?
              AND ts >= ?
              AND ts <= ?
            ORDER BY ts ASC
            """,
            (asset_id, metric_name, _to_epoch(start), _to_epoch(end)),
        )
        rows = await cursor.fetchall()
        return [Sample(timestamp=datetime.fromtimestamp(row[0], tz=UTC), value=float(row[1])) for row in rows]


def _to_epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.timestamp()

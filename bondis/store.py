"""
SQLite persistence for vehicle position readings.

One table, ``positions``, with a UNIQUE(linea, unidad, hora) constraint.
Deduplication is delegated to ``INSERT OR IGNORE`` so concurrent or retried
ingestion can never store the same reading twice.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Generator, List, TypedDict, Union

from .models import PositionRecord


logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 30000

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS positions (
        datetime TEXT,
        linea    INTEGER,
        unidad   INTEGER,
        lat      TEXT,
        lon      TEXT,
        hora     TEXT,
        UNIQUE(linea, unidad, hora)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_positions_datetime
    ON positions(datetime)
    """,
)

INSERT_SQL = """
    INSERT OR IGNORE INTO positions (datetime, linea, unidad, lat, lon, hora)
    VALUES (?, ?, ?, ?, ?, ?)
"""

RECENT_SQL = """
    SELECT datetime, linea, unidad, lat, lon, hora
    FROM positions
    ORDER BY datetime DESC, rowid DESC
    LIMIT ?
"""


DAILY_SQL = """
    SELECT substr(datetime, 1, 10) AS day,
           COUNT(*),
           MIN(hora),
           MAX(hora),
           MIN(datetime),
           MAX(datetime)
    FROM positions
    GROUP BY day
    ORDER BY day DESC
"""


class StoreError(RuntimeError):
    pass


class DailySummary(TypedDict):
    date: str
    row_count: int
    first_entry_time: str
    last_entry_time: str
    first_captured_at: str
    last_captured_at: str


class PositionStore:
    """
    Owner of the SQLite file backing the position table.

    Every operation opens its own short-lived connection, so the store can be
    shared between the scheduler thread and request threads without locking.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self._closed = threading.Event()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection, committing on success and rolling back on error."""
        if self._closed.is_set():
            raise StoreError(f"Position store {self.db_path} is closed.")
        try:
            with closing(
                sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT_MS / 1000)
            ) as conn:
                conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except sqlite3.Error as exc:
            raise StoreError(f"SQLite error on {self.db_path}: {exc}") from exc

    def ensure_schema(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot create directory for {self.db_path}: {exc}") from exc
        with self.transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        logger.info("Initialized position store at %s", self.db_path)

    def insert_if_absent(self, record: PositionRecord) -> bool:
        """Insert ``record`` unless its (linea, unidad, hora) is already stored.

        Returns True when a new row was written, False for a duplicate.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                INSERT_SQL,
                (
                    record.captured_at,
                    record.line_id,
                    record.vehicle_id,
                    record.latitude,
                    record.longitude,
                    record.report_time,
                ),
            )
            return cursor.rowcount == 1

    def query_recent(self, limit: int) -> List[PositionRecord]:
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        if limit == 0:
            return []
        with self.transaction() as conn:
            rows = conn.execute(RECENT_SQL, (limit,)).fetchall()
        return [
            PositionRecord(
                captured_at=row[0],
                line_id=row[1],
                vehicle_id=row[2],
                latitude=row[3],
                longitude=row[4],
                report_time=row[5],
            )
            for row in rows
        ]

    def count(self) -> int:
        with self.transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM positions").fetchone()
        return int(row[0])

    def daily_summary(self) -> List[DailySummary]:
        """Per capture day (UTC): row count and the span of report times seen."""
        with self.transaction() as conn:
            rows = conn.execute(DAILY_SQL).fetchall()
        return [
            {
                "date": row[0],
                "row_count": int(row[1]),
                "first_entry_time": row[2],
                "last_entry_time": row[3],
                "first_captured_at": row[4],
                "last_captured_at": row[5],
            }
            for row in rows
        ]

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            logger.info("Closed position store at %s", self.db_path)

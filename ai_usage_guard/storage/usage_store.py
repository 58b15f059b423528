"""
Repository for usage snapshots.

Append-only log of polls of the two rolling usage windows.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from .db import format_timestamp, get_connection, parse_timestamp, to_utc
from .models import UsageSnapshot

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS usage_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        short_window_percent REAL,
        long_window_percent REAL,
        short_window_resets_at TEXT,
        long_window_resets_at TEXT,
        short_window_status INTEGER,
        long_window_status INTEGER,
        short_window_limit REAL,
        short_window_remaining REAL,
        long_window_limit REAL,
        long_window_remaining REAL,
        raw_json TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_log(timestamp);
"""

# Columns added after the first schema; older tables are extended on save
_MIGRATIONS = [
    ("short_window_status", "INTEGER"),
    ("long_window_status", "INTEGER"),
    ("short_window_limit", "REAL"),
    ("short_window_remaining", "REAL"),
    ("long_window_limit", "REAL"),
    ("long_window_remaining", "REAL"),
    ("raw_json", "TEXT"),
]

_SELECT_FULL = """
    SELECT timestamp, short_window_percent, long_window_percent,
           short_window_resets_at, long_window_resets_at,
           short_window_status, long_window_status,
           short_window_limit, short_window_remaining,
           long_window_limit, long_window_remaining, raw_json
    FROM usage_log
"""


class UsageSnapshotRepository:
    """Repository for accessing and recording usage snapshots."""

    def __init__(self, db_path: str):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the usage_log table if it doesn't exist.

        Raises:
            OSError: If the database directory cannot be created
            sqlite3.Error: If the database cannot be written
        """
        conn = get_connection(self.db_path)
        try:
            self._ensure_schema(conn)
        finally:
            conn.close()

    def save(self, snapshot: UsageSnapshot) -> bool:
        """Append one snapshot.

        Snapshots without any window percentage are not persisted. Storage
        failures are logged and reported through the return value.

        Returns:
            True if a row was written
        """
        if not snapshot.has_usage:
            logger.debug("Skipping usage snapshot without any window percentage")
            return False

        try:
            conn = get_connection(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Usage store unavailable at {self.db_path}: {e}")
            return False

        try:
            self._ensure_schema(conn)
            with conn:
                conn.execute("""
                    INSERT INTO usage_log (
                        timestamp, short_window_percent, long_window_percent,
                        short_window_resets_at, long_window_resets_at,
                        short_window_status, long_window_status,
                        short_window_limit, short_window_remaining,
                        long_window_limit, long_window_remaining,
                        raw_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    format_timestamp(snapshot.timestamp),
                    snapshot.short_window_percent,
                    snapshot.long_window_percent,
                    _format_optional(snapshot.short_window_resets_at),
                    _format_optional(snapshot.long_window_resets_at),
                    snapshot.short_window_status,
                    snapshot.long_window_status,
                    snapshot.short_window_limit,
                    snapshot.short_window_remaining,
                    snapshot.long_window_limit,
                    snapshot.long_window_remaining,
                    snapshot.raw_json,
                ))
            return True
        except sqlite3.Error as e:
            logger.warning(f"Saving usage snapshot to {self.db_path} failed: {e}")
            return False
        finally:
            conn.close()

    def load_all_history(self) -> List[UsageSnapshot]:
        """Load every snapshot with all columns, oldest first."""
        rows = self._query(_SELECT_FULL + " ORDER BY timestamp ASC, id ASC")
        snapshots = [_row_to_snapshot(row) for row in rows]
        return [s for s in snapshots if s is not None]

    def load_history(
        self,
        window_seconds: float,
        now: Optional[datetime] = None,
    ) -> List[UsageSnapshot]:
        """Load snapshots from the trailing window, oldest first.

        Only timestamps and percentages are loaded; callers that need reset
        times must use load_all_history().

        Raises:
            ValueError: If window_seconds is negative
        """
        if window_seconds < 0:
            raise ValueError("window_seconds cannot be negative")
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=window_seconds)
        rows = self._query("""
            SELECT timestamp, short_window_percent, long_window_percent
            FROM usage_log
            WHERE timestamp >= ?
            ORDER BY timestamp ASC, id ASC
        """, (format_timestamp(cutoff),))

        snapshots = []
        for row in rows:
            timestamp = parse_timestamp(row[0])
            if timestamp is None:
                continue
            snapshots.append(UsageSnapshot(
                timestamp=timestamp,
                short_window_percent=row[1],
                long_window_percent=row[2],
            ))
        return snapshots

    def load_latest(self) -> Optional[UsageSnapshot]:
        """Most recent snapshot, or None when nothing is stored."""
        rows = self._query(_SELECT_FULL + " ORDER BY timestamp DESC, id DESC LIMIT 1")
        return _row_to_snapshot(rows[0]) if rows else None

    def load_daily_usage(self, since: datetime) -> Optional[float]:
        """Long-window percentage points consumed since a point in time.

        Sums the increases between consecutive long-window readings from the
        last reading before since (when present) onwards. A drop means the
        window rolled over and contributes nothing.

        Returns:
            Points consumed, or None when no reading exists at or after since
        """
        cutoff = format_timestamp(since)
        baseline = self._query("""
            SELECT long_window_percent FROM usage_log
            WHERE timestamp < ? AND long_window_percent IS NOT NULL
            ORDER BY timestamp DESC, id DESC LIMIT 1
        """, (cutoff,))
        readings = self._query("""
            SELECT long_window_percent FROM usage_log
            WHERE timestamp >= ? AND long_window_percent IS NOT NULL
            ORDER BY timestamp ASC, id ASC
        """, (cutoff,))
        if not readings:
            return None

        values = [row[0] for row in baseline] + [row[0] for row in readings]
        consumed = 0.0
        for previous, current in zip(values, values[1:]):
            if current > previous:
                consumed += current - previous
        return consumed

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(_CREATE_TABLE)
        existing = {row[1] for row in conn.execute("PRAGMA table_info(usage_log)")}
        for column, column_type in _MIGRATIONS:
            if column not in existing:
                conn.execute(f"ALTER TABLE usage_log ADD COLUMN {column} {column_type}")
        conn.commit()

    def _query(self, sql: str, params: Tuple = ()) -> List[tuple]:
        try:
            conn = get_connection(self.db_path, read_only=True)
        except (OSError, sqlite3.Error) as e:
            logger.debug(f"Usage store not readable at {self.db_path}: {e}")
            return []
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Reading usage history from {self.db_path} failed: {e}")
            return []
        finally:
            conn.close()


def _row_to_snapshot(row: tuple) -> Optional[UsageSnapshot]:
    timestamp = parse_timestamp(row[0])
    if timestamp is None:
        return None
    return UsageSnapshot(
        timestamp=timestamp,
        short_window_percent=row[1],
        long_window_percent=row[2],
        short_window_resets_at=parse_timestamp(row[3]),
        long_window_resets_at=parse_timestamp(row[4]),
        short_window_status=row[5],
        long_window_status=row[6],
        short_window_limit=row[7],
        short_window_remaining=row[8],
        long_window_limit=row[9],
        long_window_remaining=row[10],
        raw_json=row[11],
    )


def _format_optional(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None

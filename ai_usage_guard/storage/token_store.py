"""
Repository for token usage records.

Incrementally syncs JSONL log files into SQLite. Each file is tracked by
its modification time so unchanged files are never re-read, and records are
upserted by request id so re-reading a file is harmless.
"""

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ai_usage_guard.core.log_parser import parse_file
from .db import format_timestamp, get_connection, parse_timestamp
from .models import SourceFileCursor, TokenUsageRecord

logger = logging.getLogger(__name__)

LOG_FILE_SUFFIX = ".jsonl"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS jsonl_files (
        path TEXT PRIMARY KEY,
        mod_date REAL NOT NULL,
        record_count INTEGER NOT NULL
    );
    CREATE TABLE IF NOT EXISTS token_records (
        request_id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        model TEXT NOT NULL,
        speed TEXT NOT NULL DEFAULT 'standard',
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        cache_read_tokens INTEGER NOT NULL,
        cache_creation_tokens INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_token_timestamp ON token_records(timestamp);
"""

# A stored row is replaced only by an observation with >= output tokens
_UPSERT = """
    INSERT INTO token_records (
        request_id, timestamp, model, speed,
        input_tokens, output_tokens,
        cache_read_tokens, cache_creation_tokens
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(request_id) DO UPDATE SET
        timestamp = CASE WHEN excluded.output_tokens >= token_records.output_tokens
            THEN excluded.timestamp ELSE token_records.timestamp END,
        model = CASE WHEN excluded.output_tokens >= token_records.output_tokens
            THEN excluded.model ELSE token_records.model END,
        speed = CASE WHEN excluded.output_tokens >= token_records.output_tokens
            THEN excluded.speed ELSE token_records.speed END,
        input_tokens = CASE WHEN excluded.output_tokens >= token_records.output_tokens
            THEN excluded.input_tokens ELSE token_records.input_tokens END,
        cache_read_tokens = CASE WHEN excluded.output_tokens >= token_records.output_tokens
            THEN excluded.cache_read_tokens ELSE token_records.cache_read_tokens END,
        cache_creation_tokens = CASE WHEN excluded.output_tokens >= token_records.output_tokens
            THEN excluded.cache_creation_tokens ELSE token_records.cache_creation_tokens END,
        output_tokens = MAX(excluded.output_tokens, token_records.output_tokens)
"""

_SELECT_RECORDS = """
    SELECT request_id, timestamp, model, speed, input_tokens, output_tokens,
           cache_read_tokens, cache_creation_tokens
    FROM token_records
"""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync pass."""
    files_scanned: int = 0
    files_processed: int = 0
    records_upserted: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TokenRecordRepository:
    """Repository for token usage records and their source file cursors.

    Writes must be serialized by the caller. Reads always run a fresh query,
    so a reader in another context sees whatever the last sync committed.
    """

    def __init__(self, db_path: str):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the record and cursor tables if they don't exist.

        Raises:
            OSError: If the database directory cannot be created
            sqlite3.Error: If the database cannot be written
        """
        conn = get_connection(self.db_path)
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def sync(self, directories: Iterable[Union[str, Path]]) -> SyncResult:
        """Incrementally sync JSONL files below the given directories.

        Files whose modification time matches their stored cursor are
        skipped after a stat. New or modified files are re-parsed in full and
        every record is upserted; the file's cursor is committed together
        with its records. Paths that are not directories are ignored.

        An unwritable destination makes the call a no-op; the failure is
        logged and reported in the result rather than raised.

        Args:
            directories: Directories to scan recursively

        Returns:
            SyncResult with file and record counts
        """
        try:
            conn = get_connection(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Token store unavailable at {self.db_path}: {e}")
            return SyncResult(error=str(e))

        try:
            conn.executescript(_SCHEMA)
            known = self._load_known_files(conn)

            scanned = 0
            pending: List[Tuple[str, float]] = []
            for path, mod_time in _scan_log_files(directories):
                scanned += 1
                cursor = known.get(path)
                if cursor is not None and cursor.mod_time == mod_time:
                    continue
                pending.append((path, mod_time))

            if not pending:
                return SyncResult(files_scanned=scanned)

            logger.info(f"Syncing {len(pending)} of {scanned} log files")
            upserted = 0
            processed = 0
            for path, mod_time in pending:
                records = parse_file(path)
                try:
                    with conn:
                        conn.executemany(_UPSERT, [_to_row(r) for r in records])
                        conn.execute(
                            "INSERT OR REPLACE INTO jsonl_files (path, mod_date, record_count) "
                            "VALUES (?, ?, ?)",
                            (path, mod_time, len(records)),
                        )
                except (OverflowError, UnicodeEncodeError, ValueError) as e:
                    logger.warning(f"Skipping log file {path!r}: {e}")
                    continue
                processed += 1
                upserted += len(records)

            logger.info(f"Sync complete: {processed} files, {upserted} records")
            return SyncResult(
                files_scanned=scanned,
                files_processed=processed,
                records_upserted=upserted,
            )
        except sqlite3.Error as e:
            logger.warning(f"Token sync into {self.db_path} failed: {e}")
            return SyncResult(error=str(e))
        finally:
            conn.close()

    def upsert_records(self, records: Iterable[TokenUsageRecord]) -> int:
        """Upsert records directly, bypassing file bookkeeping.

        Returns:
            Number of records applied (0 when the store is unwritable)
        """
        rows = [_to_row(r) for r in records]
        if not rows:
            return 0
        try:
            conn = get_connection(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Token store unavailable at {self.db_path}: {e}")
            return 0
        try:
            conn.executescript(_SCHEMA)
            with conn:
                conn.executemany(_UPSERT, rows)
            return len(rows)
        except sqlite3.Error as e:
            logger.warning(f"Token upsert into {self.db_path} failed: {e}")
            return 0
        finally:
            conn.close()

    def load_all(self) -> List[TokenUsageRecord]:
        """Load every record ordered by timestamp (oldest first)."""
        return self._query(_SELECT_RECORDS + " ORDER BY timestamp ASC")

    def load_records(self, since: datetime) -> List[TokenUsageRecord]:
        """Load records with timestamp >= since, oldest first."""
        return self._query(
            _SELECT_RECORDS + " WHERE timestamp >= ? ORDER BY timestamp ASC",
            (format_timestamp(since),),
        )

    def count(self) -> int:
        """Number of stored records (0 when the store is unreadable)."""
        conn = self._open_read_only()
        if conn is None:
            return 0
        try:
            return conn.execute("SELECT COUNT(*) FROM token_records").fetchone()[0]
        except sqlite3.Error:
            return 0
        finally:
            conn.close()

    def known_files(self) -> Dict[str, SourceFileCursor]:
        """Current cursor of every synced file."""
        conn = self._open_read_only()
        if conn is None:
            return {}
        try:
            return self._load_known_files(conn)
        except sqlite3.Error:
            return {}
        finally:
            conn.close()

    def clear(self) -> None:
        """Delete all records and cursors, forcing a full re-sync."""
        try:
            conn = get_connection(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Token store unavailable at {self.db_path}: {e}")
            return
        try:
            conn.executescript(_SCHEMA)
            with conn:
                conn.execute("DELETE FROM token_records")
                conn.execute("DELETE FROM jsonl_files")
        except sqlite3.Error as e:
            logger.warning(f"Clearing {self.db_path} failed: {e}")
        finally:
            conn.close()

    def _open_read_only(self) -> Optional[sqlite3.Connection]:
        try:
            return get_connection(self.db_path, read_only=True)
        except (OSError, sqlite3.Error) as e:
            logger.debug(f"Token store not readable at {self.db_path}: {e}")
            return None

    def _query(self, sql: str, params: Tuple = ()) -> List[TokenUsageRecord]:
        conn = self._open_read_only()
        if conn is None:
            return []
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Reading token records from {self.db_path} failed: {e}")
            return []
        finally:
            conn.close()

        records = []
        for row in rows:
            timestamp = parse_timestamp(row[1])
            if timestamp is None:
                continue
            records.append(TokenUsageRecord(
                request_id=row[0],
                timestamp=timestamp,
                model=row[2],
                speed=row[3],
                input_tokens=row[4],
                output_tokens=row[5],
                cache_read_tokens=row[6],
                cache_creation_tokens=row[7],
            ))
        return records

    @staticmethod
    def _load_known_files(conn: sqlite3.Connection) -> Dict[str, SourceFileCursor]:
        cursor = conn.execute("SELECT path, mod_date, record_count FROM jsonl_files")
        return {
            row[0]: SourceFileCursor(path=row[0], mod_time=row[1], record_count=row[2])
            for row in cursor.fetchall()
        }


def _scan_log_files(directories: Iterable[Union[str, Path]]):
    """Yield (path, mod_time) for every visible JSONL file below directories."""
    for directory in directories:
        root = Path(directory).expanduser()
        if not root.is_dir():
            logger.debug(f"Skipping {root}: not a directory")
            continue
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for filename in sorted(filenames):
                if filename.startswith(".") or not filename.endswith(LOG_FILE_SUFFIX):
                    continue
                path = os.path.join(dirpath, filename)
                try:
                    stat = os.stat(path)
                except OSError:
                    continue
                yield path, stat.st_mtime


def _to_row(record: TokenUsageRecord) -> Tuple:
    return (
        record.request_id,
        format_timestamp(record.timestamp),
        record.model,
        record.speed,
        record.input_tokens,
        record.output_tokens,
        record.cache_read_tokens,
        record.cache_creation_tokens,
    )

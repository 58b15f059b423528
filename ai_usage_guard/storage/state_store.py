"""
Persisted alert dedup state.

Keeps the last notified session/date key per alert kind so a restart does
not repeat notifications that were already delivered.
"""

import logging
import sqlite3
from typing import Optional

from ai_usage_guard.core.alerts import AlertKind
from .db import get_connection

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS alert_state (
        kind TEXT PRIMARY KEY,
        last_key TEXT NOT NULL
    )
"""


class AlertStateRepository:
    """SQLite-backed dedup store for the alert engine.

    Implements the same get/set interface as the in-memory AlertDedupState.
    A store that cannot be read behaves as empty; a failed write is logged.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the alert_state table if it doesn't exist.

        Raises:
            OSError: If the database directory cannot be created
            sqlite3.Error: If the database cannot be written
        """
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute(_CREATE_TABLE)
        finally:
            conn.close()

    def get(self, kind: AlertKind) -> Optional[str]:
        try:
            conn = get_connection(self.db_path, read_only=True)
        except (OSError, sqlite3.Error):
            return None
        try:
            row = conn.execute(
                "SELECT last_key FROM alert_state WHERE kind = ?", (kind.value,)
            ).fetchone()
            return row[0] if row else None
        except sqlite3.Error:
            return None
        finally:
            conn.close()

    def set(self, kind: AlertKind, key: str) -> None:
        try:
            conn = get_connection(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Alert state unavailable at {self.db_path}: {e}")
            return
        try:
            with conn:
                conn.execute(_CREATE_TABLE)
                conn.execute(
                    "INSERT OR REPLACE INTO alert_state (kind, last_key) VALUES (?, ?)",
                    (kind.value, key),
                )
        except sqlite3.Error as e:
            logger.warning(f"Saving alert state for {kind.value} failed: {e}")
        finally:
            conn.close()

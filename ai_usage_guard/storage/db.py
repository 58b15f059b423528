"""
Database connection management.

Provides SQLite connections and the timestamp encoding shared by all stores.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def get_connection(db_path: str, read_only: bool = False) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Writable connections create the parent directory on demand. Read-only
    connections never create anything, so opening a missing database fails
    instead of leaving an empty file behind.

    Args:
        db_path: Path to SQLite database file
        read_only: Open the database in read-only mode

    Returns:
        SQLite connection

    Raises:
        OSError: If the parent directory cannot be created
        sqlite3.Error: If the database cannot be opened
    """
    path = Path(db_path).expanduser()
    if read_only:
        return sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Encode a datetime as fixed-width ISO-8601 UTC with milliseconds.

    Fixed width keeps lexical ordering in SQLite equal to time ordering.
    """
    return to_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Decode an ISO-8601 timestamp, returning None when it is unusable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only accepts 3 or 6 fractional digits
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{(digits + '000000')[:6]}{rest}"
    try:
        return to_utc(datetime.fromisoformat(text))
    except (ValueError, OverflowError):
        return None

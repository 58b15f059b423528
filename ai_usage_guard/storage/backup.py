"""
Daily database backups.

Copies a SQLite database to ``<name>-YYYY-MM-DD.bak`` beside it at most
once per local day and purges copies older than the retention period.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

from .db import get_connection

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 3
BACKUP_SUFFIX = ".bak"


def backup_path_for(db_path: Union[str, Path], day: date) -> Path:
    """Location of the backup of db_path taken on day."""
    path = Path(db_path).expanduser()
    return path.with_name(f"{path.stem}-{day:%Y-%m-%d}{BACKUP_SUFFIX}")


def backup_database(
    db_path: Union[str, Path],
    retention_days: int = DEFAULT_RETENTION_DAYS,
    today: Optional[date] = None,
) -> Optional[Path]:
    """Take today's backup of a database and purge expired ones.

    A missing database or an existing backup for today makes the call a
    no-op. The copy goes through the SQLite online backup API, so pending
    WAL content is included. Failures are logged, never raised.

    Args:
        db_path: Path to the SQLite database file
        retention_days: Backups dated before today minus this many days
            are deleted
        today: Local date of the backup (defaults to today)

    Returns:
        Path of the backup written, or None when nothing was written

    Raises:
        ValueError: If retention_days is negative
    """
    if retention_days < 0:
        raise ValueError("retention_days cannot be negative")
    source = Path(db_path).expanduser()
    if not source.is_file():
        return None

    today = today or date.today()
    target = backup_path_for(source, today)
    if target.exists():
        logger.debug(f"Backup {target.name} already exists, skipping")
        return None

    try:
        _copy(source, target)
    except (OSError, sqlite3.Error) as e:
        logger.warning(f"Backup of {source} failed: {e}")
        target.unlink(missing_ok=True)
        return None
    logger.info(f"Created backup {target.name}")

    purge_backups(source, retention_days, today)
    return target


def purge_backups(
    db_path: Union[str, Path],
    retention_days: int = DEFAULT_RETENTION_DAYS,
    today: Optional[date] = None,
) -> List[Path]:
    """Delete dated backups of db_path older than the retention period.

    Files whose name does not carry a valid date are left alone.

    Returns:
        Paths that were deleted
    """
    source = Path(db_path).expanduser()
    cutoff = (today or date.today()) - timedelta(days=retention_days)
    prefix = f"{source.stem}-"

    deleted = []
    for candidate in sorted(source.parent.glob(f"{prefix}*{BACKUP_SUFFIX}")):
        stamp = candidate.name[len(prefix):-len(BACKUP_SUFFIX)]
        try:
            day = datetime.strptime(stamp, "%Y-%m-%d").date()
        except ValueError:
            continue
        if day >= cutoff:
            continue
        try:
            candidate.unlink()
        except OSError as e:
            logger.warning(f"Could not delete old backup {candidate}: {e}")
            continue
        logger.info(f"Deleted old backup {candidate.name}")
        deleted.append(candidate)
    return deleted


def _copy(source: Path, target: Path) -> None:
    conn = get_connection(str(source))
    try:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        dest = sqlite3.connect(str(target))
        try:
            conn.backup(dest)
        finally:
            dest.close()
    finally:
        conn.close()

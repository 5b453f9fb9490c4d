"""
database/backup.py -- Pre-migration snapshots of a file-backed SQLite store.

The runner takes a snapshot before applying pending steps. The snapshot is
produced with SQLite's online backup API rather than a file copy: with WAL
enabled, committed pages may still sit in the -wal file, and copying the main
file alone would capture an inconsistent store.

Nothing here restores automatically. A failed step leaves the store at its
last committed version; an operator who wants the pre-migration state back
copies a snapshot over the database file while the server is stopped.

File naming: homeboard-v<version>-<UTC timestamp>.db, newest max_backups kept.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.engine import Engine

from database.engine import sqlite_file_path

logger = logging.getLogger("homeboard.database.backup")

_PREFIX = "homeboard-"
_SUFFIX = ".db"


@dataclass
class BackupInfo:
    filename: str
    path: Path
    size: int
    created: datetime


def create_backup(engine: Engine, backup_dir: Path, version: int, max_backups: int = 3) -> Path | None:
    """Write a consistent snapshot of the store and prune old ones.

    Returns the snapshot path, or None when the engine is not a file-backed
    SQLite store or the file does not exist yet. Raises OSError /
    sqlite3.Error if the snapshot itself fails; the caller decides whether
    that is fatal.
    """
    source = sqlite_file_path(engine)
    if source is None or not source.exists():
        logger.debug("No database file to back up")
        return None

    backup_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    target = backup_dir / f"{_PREFIX}v{version}-{timestamp}{_SUFFIX}"

    with engine.connect() as conn:
        source_conn = conn.connection.driver_connection
        dest = sqlite3.connect(target)
        try:
            source_conn.backup(dest)
        finally:
            dest.close()

    logger.info("Backup created: %s", target)
    _prune(backup_dir, max_backups)
    return target


def list_backups(backup_dir: Path) -> list[BackupInfo]:
    """Return snapshots in backup_dir, newest first."""
    if not backup_dir.is_dir():
        return []
    infos = []
    for path in backup_dir.glob(f"{_PREFIX}*{_SUFFIX}"):
        stat = path.stat()
        infos.append(
            BackupInfo(
                filename=path.name,
                path=path,
                size=stat.st_size,
                created=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )
        )
    # Names embed a sortable timestamp; mtime alone ties on coarse filesystems.
    return sorted(infos, key=lambda b: (b.created, b.filename), reverse=True)


def _prune(backup_dir: Path, max_backups: int) -> None:
    for stale in list_backups(backup_dir)[max_backups:]:
        try:
            stale.path.unlink()
            logger.debug("Deleted old backup: %s", stale.filename)
        except OSError as exc:
            logger.warning("Failed to delete old backup %s: %s", stale.filename, exc)

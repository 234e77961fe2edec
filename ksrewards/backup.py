"""
Database backups

Snapshots are taken with SQLite's online backup API, which gives a
consistent copy of a WAL database while the scheduler keeps writing.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import Config
from .storage import Database

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "ks-rewards_"
LATEST_NAME = f"{BACKUP_PREFIX}latest.db"
PRE_RESTORE_PREFIX = f"{BACKUP_PREFIX}pre-restore_"


@dataclass
class BackupInfo:
    filename: str
    size: int
    modified: datetime


def _copy_database(source: Path, target: Path):
    src = sqlite3.connect(str(source))
    try:
        dest = sqlite3.connect(str(target))
        try:
            src.backup(dest)
        finally:
            dest.close()
    finally:
        src.close()


class BackupManager:
    def __init__(self, config: Config, db: Database):
        self.db = db
        self.backup_dir = Path(config.backup_dir)
        self.retention_days = config.backup_retention_days

    def _is_timestamped(self, path: Path) -> bool:
        return (
            path.name.startswith(BACKUP_PREFIX)
            and path.suffix == ".db"
            and path.name != LATEST_NAME
            and not path.name.startswith(PRE_RESTORE_PREFIX)
        )

    def create_backup(self) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        backup_path = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}.db"
        latest_path = self.backup_dir / LATEST_NAME

        logger.info(f"Creating database backup: {backup_path.name}")
        _copy_database(self.db.db_path, backup_path)

        _copy_database(backup_path, latest_path)

        size_mb = backup_path.stat().st_size / (1024 * 1024)
        logger.info(f"Backup created successfully: {backup_path.name} ({size_mb:.2f} MB)")

        self.clean_old_backups()
        return backup_path

    def clean_old_backups(self, now: Optional[float] = None) -> int:
        """Delete timestamped backups older than the retention period"""
        if not self.backup_dir.exists():
            return 0

        cutoff = (now if now is not None else time.time()) - self.retention_days * 24 * 60 * 60
        deleted = 0
        for path in self.backup_dir.iterdir():
            if not self._is_timestamped(path):
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted += 1
                    logger.info(f"Deleted old backup: {path.name}")
            except OSError as e:
                logger.error(f"Error removing old backup {path.name}: {e}")

        if deleted:
            logger.info(f"Cleaned up {deleted} old backup(s)")
        return deleted

    def list_backups(self) -> List[BackupInfo]:
        if not self.backup_dir.exists():
            return []
        backups = []
        for path in self.backup_dir.iterdir():
            if self._is_timestamped(path):
                stat = path.stat()
                backups.append(BackupInfo(path.name, stat.st_size, datetime.fromtimestamp(stat.st_mtime)))
        return sorted(backups, key=lambda b: b.modified, reverse=True)

    def latest_backup_path(self) -> Optional[Path]:
        latest = self.backup_dir / LATEST_NAME
        return latest if latest.exists() else None

    def restore_from_backup(self, filename: str) -> Path:
        """Replace the live database with a backup; returns the pre-restore copy"""
        backup_path = self.backup_dir / Path(filename).name
        if not backup_path.exists():
            raise FileNotFoundError(f"Backup file not found: {filename}")

        logger.warning(f"Restoring database from backup: {backup_path.name}")
        pre_restore = self.backup_dir / f"{PRE_RESTORE_PREFIX}{int(time.time() * 1000)}.db"
        _copy_database(self.db.db_path, pre_restore)
        logger.info(f"Current database backed up to: {pre_restore.name}")

        _copy_database(backup_path, self.db.db_path)
        logger.info(f"Database restored from: {backup_path.name}")
        return pre_restore

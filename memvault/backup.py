"""
Backup rotation for on-disk stores.

Backups use the sqlite3 online backup API, so they are consistent even while
the store is open in WAL mode.  Writes trigger lazy, throttled backups via
backup_if_needed(); the oldest files beyond ``max_backups`` are removed.

Backup failures are logged and never raised: a failed backup must not fail
the write that triggered it.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from memvault.config import BackupConfig

logger = logging.getLogger(__name__)


def _timestamp_for_filename() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class BackupService:
    """Creates and prunes timestamped copies of a SQLite database."""

    def __init__(self, db_path: str, config: Optional[BackupConfig] = None):
        self.db_path = Path(db_path)
        self.config = config or BackupConfig()
        if not self.config.backup_dir:
            raise ValueError("BackupService requires config.backup_dir")
        self.backup_dir = Path(self.config.backup_dir)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self._last_backup: float = self._latest_auto_mtime()

    def _latest_auto_mtime(self) -> float:
        """Most recent auto backup mtime, so throttling survives restarts."""
        autos = [p for p in self.backup_dir.glob("*_auto_*.db")]
        if not autos:
            return 0.0
        return max(p.stat().st_mtime for p in autos)

    def backup(
        self, label: str = "manual", conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[str]:
        """Write ``<stem>_<label>_<timestamp>.db``. Returns its path or None.

        When *conn* is given (the store's own connection) the copy is taken
        from it; otherwise the database file is opened read-only.
        """
        if conn is None and not self.db_path.exists():
            logger.debug("Backup skipped: source database does not exist")
            return None
        target = self.backup_dir / (
            f"{self.db_path.stem}_{label}_{_timestamp_for_filename()}.db"
        )
        src = conn
        dst = None
        try:
            if src is None:
                src = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
            dst = sqlite3.connect(str(target))
            src.backup(dst)
        except sqlite3.Error as exc:
            logger.warning(f"Backup failed: {exc}")
            return None
        finally:
            if dst is not None:
                dst.close()
            if conn is None and src is not None:
                src.close()
        self._last_backup = time.time()
        logger.info(f"Backup created: {target}")
        self._cleanup()
        return str(target)

    def should_backup(self) -> bool:
        interval = self.config.interval_minutes
        if not interval or interval <= 0:
            return True
        return time.time() - self._last_backup >= interval * 60

    def backup_if_needed(self, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
        """Lazy backup after a write, throttled by ``interval_minutes``."""
        if self.should_backup():
            return self.backup("auto", conn=conn)
        return None

    def list_backups(self) -> List[Dict[str, Any]]:
        """All backups, newest first."""
        entries = []
        for p in self.backup_dir.glob("*.db"):
            st = p.stat()
            entries.append({
                "name": p.name,
                "path": str(p),
                "size": st.st_size,
                "created": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
                "_mtime": st.st_mtime,
            })
        entries.sort(key=lambda e: (e["_mtime"], e["name"]), reverse=True)
        for e in entries:
            del e["_mtime"]
        return entries

    def minutes_since_last_backup(self) -> int:
        """Whole minutes since the last backup, or -1 if none yet."""
        if not self._last_backup:
            return -1
        return int((time.time() - self._last_backup) // 60)

    def _cleanup(self) -> None:
        keep = self.config.max_backups
        if not keep or keep <= 0:
            return
        for entry in self.list_backups()[keep:]:
            try:
                Path(entry["path"]).unlink()
                logger.debug(f"Deleted old backup: {entry['name']}")
            except OSError as exc:
                logger.warning(f"Could not delete old backup {entry['name']}: {exc}")

"""
Schema Manager — ordered, tracked, idempotent migrations.

Every migration runs in its own transaction together with the bookkeeping
that records it (``schema_migrations`` row + ``PRAGMA user_version``), so a
crash leaves either the whole migration or none of it.  Migrations must
tolerate structures that already exist (``CREATE … IF NOT EXISTS``,
``add_column()``), which makes replay after a partial application safe.

Add new migrations to the end of MIGRATIONS; never edit an applied one.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from memvault.errors import MigrationError
from memvault.fts import FtsIndex
from memvault.types import _now_iso, normalize_tags

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """One schema step. ``up`` receives the SchemaManager."""

    version: int
    description: str
    up: Callable[["SchemaManager"], None]


# ---------------------------------------------------------------------------
# Migration bodies
# ---------------------------------------------------------------------------


def _m001_base_schema(mgr: SchemaManager) -> None:
    mgr.conn.execute(
        """CREATE TABLE IF NOT EXISTS memories (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            content     TEXT NOT NULL,
            tags        TEXT,              -- comma-separated; superseded in v2
            created_at  TEXT NOT NULL,
            hash        TEXT NOT NULL UNIQUE
        )"""
    )
    mgr.conn.execute(
        """CREATE TABLE IF NOT EXISTS relationships (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            from_memory_id    INTEGER NOT NULL,
            to_memory_id      INTEGER NOT NULL,
            relationship_type TEXT NOT NULL DEFAULT 'related',
            created_at        TEXT NOT NULL,
            UNIQUE(from_memory_id, to_memory_id, relationship_type)
        )"""
    )
    mgr.fts.create()


def _m002_normalize_tags(mgr: SchemaManager) -> None:
    conn = mgr.conn
    conn.execute(
        """CREATE TABLE IF NOT EXISTS tags (
            memory_id INTEGER NOT NULL,
            tag       TEXT NOT NULL,
            position  INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (memory_id, tag)
        )"""
    )
    for ddl in (
        "CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag)",
        "CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories(created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_relationships_from ON relationships(from_memory_id)",
        "CREATE INDEX IF NOT EXISTS idx_relationships_to ON relationships(to_memory_id)",
    ):
        conn.execute(ddl)

    # Move legacy comma-separated tags into the normalized table
    rows = conn.execute(
        "SELECT id, tags FROM memories WHERE tags IS NOT NULL AND tags != ''"
    ).fetchall()
    for memory_id, raw in rows:
        for pos, tag in enumerate(normalize_tags(raw.split(","))):
            conn.execute(
                "INSERT OR IGNORE INTO tags (memory_id, tag, position) VALUES (?,?,?)",
                (memory_id, tag, pos),
            )
    if rows:
        logger.info(f"Migrated tags for {len(rows)} memories to normalized table")
    conn.execute("UPDATE memories SET tags=NULL WHERE tags IS NOT NULL")
    mgr.fts.rebuild()
    conn.execute("ANALYZE")


def _m003_metadata(mgr: SchemaManager) -> None:
    mgr.add_column("memories", "metadata TEXT NOT NULL DEFAULT '{}'")
    mgr.add_column("relationships", "metadata TEXT NOT NULL DEFAULT '{}'")


MIGRATIONS: List[Migration] = [
    Migration(1, "Base schema: memories, relationships, full-text index", _m001_base_schema),
    Migration(2, "Normalize tags + add performance indexes", _m002_normalize_tags),
    Migration(3, "Add JSON metadata for extensibility", _m003_metadata),
]

SCHEMA_VERSION = MIGRATIONS[-1].version


# ---------------------------------------------------------------------------
# SchemaManager
# ---------------------------------------------------------------------------


class SchemaManager:
    """Applies pending migrations to an autocommit-mode connection."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        fts: FtsIndex,
        *,
        backup=None,
        migrations: Optional[List[Migration]] = None,
    ):
        self.conn = conn
        self.fts = fts
        self._backup = backup
        self.migrations = sorted(migrations or MIGRATIONS, key=lambda m: m.version)
        self.conn.execute(
            """CREATE TABLE IF NOT EXISTS schema_migrations (
                version     INTEGER PRIMARY KEY,
                description TEXT NOT NULL,
                applied_at  TEXT NOT NULL
            )"""
        )

    @property
    def latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def current_version(self) -> int:
        """Fast path: PRAGMA user_version, falling back to the tracking table."""
        version = self.conn.execute("PRAGMA user_version").fetchone()[0]
        if version:
            return version
        row = self.conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return row[0] or 0

    def applied(self) -> List[Dict[str, Any]]:
        return [
            {"version": r[0], "description": r[1], "applied_at": r[2]}
            for r in self.conn.execute(
                "SELECT version, description, applied_at FROM schema_migrations "
                "ORDER BY version"
            ).fetchall()
        ]

    def status(self) -> Dict[str, Any]:
        """Migration status for diagnostics."""
        current = self.current_version()
        return {
            "current_version": current,
            "latest_version": self.latest_version,
            "applied": self.applied(),
            "pending": [m.version for m in self.migrations if m.version > current],
        }

    def add_column(self, table: str, column_def: str) -> bool:
        """ALTER TABLE ADD COLUMN; an already present column counts as success.

        Returns True if the column was added, False if it already existed.
        """
        try:
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")
            return True
        except sqlite3.OperationalError as exc:
            if "duplicate column name" in str(exc).lower():
                logger.debug(f"Column already present on {table}: {column_def}")
                return False
            raise

    def apply_all(self) -> List[int]:
        """Apply every migration newer than the recorded version, in order.

        Returns the versions applied.  Raises MigrationError on the first
        failure; that migration is rolled back and later ones are not run.
        """
        current = self.current_version()
        pending = [m for m in self.migrations if m.version > current]
        if not pending:
            logger.debug(f"Schema is up to date (version {current})")
            return []

        logger.info(
            f"Found {len(pending)} pending migration(s) "
            f"(current={current}, latest={self.latest_version})"
        )
        if current > 0 and self._backup is not None:
            self._backup.backup(f"pre-migration-v{current}", conn=self.conn)

        applied: List[int] = []
        for migration in pending:
            logger.info(f"Applying migration {migration.version}: {migration.description}")
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                migration.up(self)
                self.conn.execute(
                    "INSERT OR IGNORE INTO schema_migrations "
                    "(version, description, applied_at) VALUES (?,?,?)",
                    (migration.version, migration.description, _now_iso()),
                )
                self.conn.execute(f"PRAGMA user_version = {int(migration.version)}")
                self.conn.execute("COMMIT")
            except Exception as exc:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                logger.error(f"Migration {migration.version} failed: {exc}")
                raise MigrationError(
                    f"Migration {migration.version} ({migration.description}) failed: {exc}"
                ) from exc
            applied.append(migration.version)
        logger.info(f"Schema migrated to version {applied[-1]}")
        return applied

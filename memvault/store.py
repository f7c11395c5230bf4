"""
Memory Store — SQLite Persistent Backend

Tables:
    memories           - Canonical memory records (content, hash, created_at, metadata)
    tags               - Ordered, normalized tags per memory
    relationships      - Typed directed edges between memories
    memories_fts       - FTS5 projection of content + tags (write-time hooks)
    schema_migrations  - Applied migration versions

Identity is content-addressed: ``hash`` is the MD5 of ``content`` and is the
only identifier exposed to callers.  ``update()`` returns the new hash; the old
one stops resolving.  The integer ``id`` is internal and never reused
(AUTOINCREMENT), so relationships survive content updates.

Thread safety: one shared connection (check_same_thread=False) serialized by
a re-entrant lock.  Every multi-statement mutation runs in a single
transaction; nested transaction() blocks become savepoints.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from memvault.errors import (
    ConflictError,
    InvalidInput,
    MigrationError,
    NotFound,
    StorageFailure,
)
from memvault.fts import FTS_TABLE, FtsIndex, build_match, relevance
from memvault.migrations import SchemaManager
from memvault.types import (
    Memory,
    _now_iso,
    content_hash,
    days_ago_start,
    dumps_metadata,
    loads_metadata,
    normalize_tag,
    normalize_tags,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_SIZE = 1024 * 1024  # characters

_TAG_CHUNK = 500  # stays well under SQLITE_MAX_VARIABLE_NUMBER

DateLike = Union[str, datetime, None]


def _short(h: str) -> str:
    return h[:8]


def _require_hash(h: Any) -> str:
    if not isinstance(h, str) or not h.strip():
        raise InvalidInput("Hash cannot be empty")
    return h.strip()


def _clamp_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidInput(f"limit must be an integer, got {limit!r}")
    return max(1, limit)


class MemoryStore:
    """
    SQLite-backed content-addressed memory store.

    Opening a store runs all pending schema migrations; a migration failure
    closes the connection and raises MigrationError.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
        *,
        cloud_safe: bool = False,
        busy_timeout: float = 5.0,
        max_content_size: int = DEFAULT_MAX_CONTENT_SIZE,
        backup=None,
    ):
        """Open (and migrate) a store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            fts_tokenizer: FTS5 tokenizer string.  Defaults to
                ``"unicode61 remove_diacritics 2"``.  Must match
                ``[a-zA-Z0-9_ .-]+``.
            cloud_safe: DELETE journal and synchronous=FULL, for databases in
                synced folders.  Overrides *wal_mode*.
            busy_timeout: Seconds to wait for a file lock before failing.
            max_content_size: Maximum content length in characters.
            backup: Optional BackupService, called after committed writes.
        """
        from memvault.graph import RelationshipGraph

        self._db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self._max_content_size = max_content_size
        self._backup = backup
        # Auto-create parent directory for disk-backed databases.
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                db_path, check_same_thread=False,
                timeout=busy_timeout, isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StorageFailure(f"Cannot open database {db_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        try:
            self._apply_pragmas(wal_mode and not cloud_safe, cloud_safe)
            self.fts = FtsIndex(self._conn, fts_tokenizer)
            self.fts.check_tokenizer()
            self.schema = SchemaManager(self._conn, self.fts, backup=backup)
            self.schema.apply_all()
        except MigrationError:
            self._conn.close()
            raise
        except sqlite3.Error as exc:
            self._conn.close()
            raise StorageFailure(f"Cannot initialize database {db_path}: {exc}") from exc
        except ValueError:
            self._conn.close()
            raise
        self.graph = RelationshipGraph(self)
        logger.info(
            f"MemoryStore initialized: {db_path} "
            f"(schema=v{self.schema.current_version()}, tokenizer={self.fts.tokenizer})"
        )

    def _apply_pragmas(self, wal_mode: bool, cloud_safe: bool) -> None:
        if self._db_path != ":memory:":
            self._conn.execute(
                "PRAGMA journal_mode=WAL" if wal_mode else "PRAGMA journal_mode=DELETE"
            )
        self._conn.execute("PRAGMA cache_size=-64000")
        self._conn.execute("PRAGMA temp_store=MEMORY")
        self._conn.execute(
            "PRAGMA synchronous=FULL" if cloud_safe else "PRAGMA synchronous=NORMAL"
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()
        logger.debug("MemoryStore closed: %s", self._db_path)

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic unit of work.

        The outermost block runs ``BEGIN IMMEDIATE`` … ``COMMIT`` and rolls
        back everything on error.  Nested blocks are savepoints: an error
        inside one rolls back only that block and propagates.  SQLite errors
        surface as StorageFailure.
        """
        with self._lock:
            if self._depth == 0:
                try:
                    self._conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as exc:
                    raise StorageFailure(f"Cannot begin transaction: {exc}") from exc
                self._depth = 1
                try:
                    yield self._conn
                    self._conn.execute("COMMIT")
                except BaseException as exc:
                    if self._conn.in_transaction:
                        self._conn.execute("ROLLBACK")
                    self._dirty = False
                    if isinstance(exc, sqlite3.Error):
                        raise StorageFailure(str(exc)) from exc
                    raise
                finally:
                    self._depth = 0
                if self._dirty:
                    self._dirty = False
                    if self._backup is not None:
                        self._backup.backup_if_needed(conn=self._conn)
            else:
                name = f"sp_{self._depth}"
                self._conn.execute(f"SAVEPOINT {name}")
                self._depth += 1
                try:
                    yield self._conn
                    self._conn.execute(f"RELEASE SAVEPOINT {name}")
                except BaseException as exc:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                    self._conn.execute(f"RELEASE SAVEPOINT {name}")
                    if isinstance(exc, sqlite3.Error):
                        raise StorageFailure(str(exc)) from exc
                    raise
                finally:
                    self._depth -= 1

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise StorageFailure(str(exc)) from exc

    # -- Write operations --------------------------------------------------

    def _check_content(self, content: Any) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidInput("Content cannot be empty")
        if len(content) > self._max_content_size:
            raise InvalidInput(
                f"Content exceeds maximum size of {self._max_content_size} characters"
            )
        return content

    def store(
        self,
        content: str,
        tags: Optional[Sequence[str]] = None,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: DateLike = None,
    ) -> str:
        """Store a memory and return its hash.

        Storing content whose hash already exists is a no-op success: the
        existing hash is returned and the existing record is left untouched.

        Raises:
            InvalidInput: empty/oversized content, bad tags or metadata.
        """
        content = self._check_content(content)
        tag_list = normalize_tags(tags)
        meta_json = dumps_metadata(metadata)
        ts = parse_timestamp(created_at) if created_at is not None else _now_iso()
        h = content_hash(content)

        with self.transaction() as conn:
            if self._resolve_id(conn, h) is not None:
                logger.debug("Memory already exists with hash %s", _short(h))
                return h
            cur = conn.execute(
                "INSERT INTO memories (content, created_at, hash, metadata) "
                "VALUES (?,?,?,?)",
                (content, ts, h, meta_json),
            )
            memory_id = cur.lastrowid
            self._write_tags(conn, memory_id, tag_list)
            self.fts.on_insert(memory_id, content, tag_list)
            self._dirty = True
        logger.debug("Stored memory %s (%d tags)", _short(h), len(tag_list))
        return h

    def update(
        self,
        hash: str,
        new_content: str,
        new_tags: Optional[Sequence[str]] = None,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Replace the content of a memory. Returns the NEW hash.

        The old hash stops resolving when the content changes.  Tags are
        replaced only when *new_tags* is given (``[]`` clears them), metadata
        only when *metadata* is given.  Relationships are kept.

        Raises:
            InvalidInput: empty hash or content.
            NotFound: *hash* does not resolve.
            ConflictError: the new content hashes to a different live memory.
        """
        old_hash = _require_hash(hash)
        content = self._check_content(new_content)
        tag_list = normalize_tags(new_tags) if new_tags is not None else None
        meta_json = dumps_metadata(metadata) if metadata is not None else None
        new_hash = content_hash(content)

        with self.transaction() as conn:
            memory_id = self._resolve_id(conn, old_hash)
            if memory_id is None:
                raise NotFound(f"Memory not found with hash: {_short(old_hash)}")
            other = self._resolve_id(conn, new_hash)
            if other is not None and other != memory_id:
                raise ConflictError(
                    f"Content already stored as memory {_short(new_hash)}"
                )
            conn.execute(
                "UPDATE memories SET content=?, hash=? WHERE id=?",
                (content, new_hash, memory_id),
            )
            if meta_json is not None:
                conn.execute(
                    "UPDATE memories SET metadata=? WHERE id=?", (meta_json, memory_id),
                )
            if tag_list is not None:
                conn.execute("DELETE FROM tags WHERE memory_id=?", (memory_id,))
                self._write_tags(conn, memory_id, tag_list)
            else:
                tag_list = self._tags_for_many(conn, [memory_id]).get(memory_id, [])
            self.fts.on_update(memory_id, content, tag_list)
            self._dirty = True
        logger.debug("Updated memory %s -> %s", _short(old_hash), _short(new_hash))
        return new_hash

    def delete(self, hash: str) -> bool:
        """Delete a memory and every edge touching it. False if not found."""
        h = _require_hash(hash)
        with self.transaction() as conn:
            memory_id = self._resolve_id(conn, h)
            if memory_id is None:
                logger.debug("Delete by hash %s: not found", _short(h))
                return False
            self._delete_ids(conn, [memory_id])
            self._dirty = True
        logger.debug("Deleted memory %s", _short(h))
        return True

    def delete_by_tag(self, tag: str) -> int:
        """Delete every memory carrying *tag*. Returns the count removed."""
        if not isinstance(tag, str) or not normalize_tag(tag):
            raise InvalidInput("Tag cannot be empty")
        t = normalize_tag(tag)
        with self.transaction() as conn:
            ids = [
                r["memory_id"] for r in conn.execute(
                    "SELECT memory_id FROM tags WHERE tag=?", (t,),
                ).fetchall()
            ]
            if ids:
                self._delete_ids(conn, ids)
                self._dirty = True
        logger.debug("Deleted %d memories with tag %r", len(ids), t)
        return len(ids)

    def _delete_ids(self, conn: sqlite3.Connection, ids: Sequence[int]) -> None:
        """Cascade: edges, tags, index row, record (caller owns transaction)."""
        for memory_id in ids:
            self.graph.on_memory_deleted(memory_id)
            conn.execute("DELETE FROM tags WHERE memory_id=?", (memory_id,))
            self.fts.on_delete(memory_id)
            conn.execute("DELETE FROM memories WHERE id=?", (memory_id,))

    # -- Query operations --------------------------------------------------

    def get_by_hash(self, hash: str) -> Optional[Memory]:
        """Point lookup. Returns None when the hash does not resolve."""
        h = _require_hash(hash)
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM memories WHERE hash=?", (h,)).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, [row])[0]

    def search(
        self,
        query: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        limit: int = 10,
        days_ago: Optional[int] = None,
        start_date: DateLike = None,
        end_date: DateLike = None,
        min_relevance: Optional[float] = None,
    ) -> List[Memory]:
        """Search memories.

        Stages, in order: BM25 text relevance (when *query* is non-blank;
        memories matching no query token are excluded, so a query with no
        usable token matches nothing), tag filter (any tag matches), date
        range (inclusive), minimum relevance (clamped to [0, 1]; without a
        query every memory scores 0).  With a query, results are ordered by
        relevance then most recent; otherwise most recent first.  *limit*
        (at least 1) is applied last.
        """
        limit = _clamp_limit(limit)
        threshold = None
        if min_relevance is not None:
            if isinstance(min_relevance, bool) or not isinstance(min_relevance, (int, float)):
                raise InvalidInput(f"min_relevance must be a number, got {min_relevance!r}")
            threshold = min(max(float(min_relevance), 0.0), 1.0)
        has_query = query is not None and query.strip() != ""
        match = build_match(query) if has_query else None
        conditions, params = self._filter_clause(tags, days_ago, start_date, end_date)

        if has_query and match is None:
            logger.debug("Search %r has no searchable token", query)
            return []
        if not has_query and threshold is not None and threshold > 0:
            return []

        if match is None:
            where = " AND ".join(conditions) if conditions else "1=1"
            with self._reading() as conn:
                rows = conn.execute(
                    f"SELECT m.* FROM memories m WHERE {where} "
                    "ORDER BY m.created_at DESC, m.id DESC LIMIT ?",
                    params + [limit],
                ).fetchall()
                results = self._hydrate(conn, rows)
            logger.debug("Search returned %d results", len(results))
            return results

        conditions.insert(0, f"{FTS_TABLE} MATCH ?")
        params.insert(0, match)
        where = " AND ".join(conditions)
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT m.*, bm25({FTS_TABLE}) AS rank FROM {FTS_TABLE} "
                f"JOIN memories m ON m.id = {FTS_TABLE}.rowid WHERE {where}",
                params,
            ).fetchall()
            scored: List[Tuple[float, sqlite3.Row]] = [
                (relevance(r["rank"]), r) for r in rows
            ]
            if threshold is not None:
                scored = [(s, r) for s, r in scored if s >= threshold]
            # Stable two-pass sort: recency breaks relevance ties
            scored.sort(key=lambda sr: (sr[1]["created_at"], sr[1]["id"]), reverse=True)
            scored.sort(key=lambda sr: sr[0], reverse=True)
            scored = scored[:limit]
            results = self._hydrate(conn, [r for _, r in scored])
        for memory, (score, _) in zip(results, scored):
            memory.relevance = score
        logger.debug("Search %r returned %d results", query, len(results))
        return results

    def list_memories(
        self,
        tags: Optional[Sequence[str]] = None,
        *,
        days_ago: Optional[int] = None,
        start_date: DateLike = None,
        end_date: DateLike = None,
        limit: Optional[int] = None,
        offset: int = 0,
        ascending: bool = False,
    ) -> List[Memory]:
        """Filter-only listing (no ranking). Newest first unless *ascending*."""
        conditions, params = self._filter_clause(tags, days_ago, start_date, end_date)
        where = " AND ".join(conditions) if conditions else "1=1"
        order = "ASC" if ascending else "DESC"
        sql = (
            f"SELECT m.* FROM memories m WHERE {where} "
            f"ORDER BY m.created_at {order}, m.id {order}"
        )
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [_clamp_limit(limit), max(0, int(offset))]
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(max(0, int(offset)))
        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
            return self._hydrate(conn, rows)

    def _filter_clause(
        self,
        tags: Optional[Sequence[str]],
        days_ago: Optional[int],
        start_date: DateLike,
        end_date: DateLike,
    ) -> Tuple[List[str], List[Any]]:
        """SQL conditions for the tag (any-match) and date-range filters."""
        conditions: List[str] = []
        params: List[Any] = []
        tag_list = normalize_tags(tags)
        if tags and not tag_list:
            raise InvalidInput("Tag filter contains only empty tags")
        if tag_list:
            placeholders = ",".join("?" for _ in tag_list)
            conditions.append(
                "EXISTS (SELECT 1 FROM tags t WHERE t.memory_id = m.id "
                f"AND t.tag IN ({placeholders}))"
            )
            params.extend(tag_list)
        start = None
        if days_ago is not None:
            start = days_ago_start(days_ago)
        if start_date is not None and start_date != "":
            start = parse_timestamp(start_date)
        end = None
        if end_date is not None and end_date != "":
            end = parse_timestamp(end_date, end_of_day=True)
        if start is not None:
            conditions.append("m.created_at >= ?")
            params.append(start)
        if end is not None:
            conditions.append("m.created_at <= ?")
            params.append(end)
        return conditions, params

    # -- Snapshot ----------------------------------------------------------

    def export_memories(self, filters=None, *, source: Optional[str] = None) -> Dict[str, Any]:
        """Export a snapshot document. See memvault.export_import."""
        from memvault.export_import import export_memories
        return export_memories(self, filters, source=source)

    def import_memories(self, payload, **options):
        """Import a snapshot document. See memvault.export_import."""
        from memvault.export_import import import_memories
        return import_memories(self, payload, **options)

    # -- Stats & maintenance -----------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the memory store."""
        with self._reading() as conn:
            total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            edges = conn.execute("SELECT COUNT(*) FROM relationships").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            result: Dict[str, Any] = {
                "total_memories": total,
                "total_relationships": edges,
                "storage_size": page_size * page_count,
                "schema_version": self.schema.current_version(),
                "db_path": self._db_path,
                "resolved_path": (
                    self._db_path if self._db_path == ":memory:"
                    else str(Path(self._db_path).resolve())
                ),
                "fts_tokenizer": self.fts.tokenizer,
            }
        if self._backup is not None:
            backups = self._backup.list_backups()
            age = self._backup.minutes_since_last_backup()
            result.update({
                "backup_enabled": True,
                "backup_path": str(self._backup.backup_dir),
                "backup_count": len(backups),
                "last_backup_age": age if age >= 0 else None,
            })
        return result

    def check_integrity(self) -> Dict[str, Any]:
        """Verify hash/content agreement, index mirroring and edge endpoints."""
        with self._reading() as conn:
            mismatched = [
                r["hash"] for r in conn.execute("SELECT content, hash FROM memories")
                if content_hash(r["content"]) != r["hash"]
            ]
            missing_index = conn.execute(
                f"SELECT COUNT(*) FROM memories m WHERE NOT EXISTS "
                f"(SELECT 1 FROM {FTS_TABLE} f WHERE f.rowid = m.id)"
            ).fetchone()[0]
            orphan_index = conn.execute(
                f"SELECT COUNT(*) FROM {FTS_TABLE} f WHERE NOT EXISTS "
                f"(SELECT 1 FROM memories m WHERE m.id = f.rowid)"
            ).fetchone()[0]
            dangling = conn.execute(
                "SELECT COUNT(*) FROM relationships r WHERE "
                "NOT EXISTS (SELECT 1 FROM memories m WHERE m.id = r.from_memory_id) "
                "OR NOT EXISTS (SELECT 1 FROM memories m WHERE m.id = r.to_memory_id)"
            ).fetchone()[0]
        result = {
            "hash_mismatches": mismatched,
            "missing_index_rows": missing_index,
            "orphan_index_rows": orphan_index,
            "dangling_relationships": dangling,
        }
        result["ok"] = not mismatched and not missing_index and not orphan_index and not dangling
        if not result["ok"]:
            logger.warning(f"Integrity check failed: {result}")
        return result

    def rebuild_index(self, tokenizer: Optional[str] = None) -> int:
        """Rebuild the full-text index, optionally switching tokenizer."""
        with self.transaction():
            return self.fts.rebuild(tokenizer)

    def optimize_index(self) -> None:
        """Merge FTS5 segments (run after bulk imports)."""
        with self.transaction():
            self.fts.optimize()

    # -- Internal helpers --------------------------------------------------

    @staticmethod
    def _resolve_id(conn: sqlite3.Connection, h: str) -> Optional[int]:
        row = conn.execute("SELECT id FROM memories WHERE hash=?", (h,)).fetchone()
        return row["id"] if row else None

    @staticmethod
    def _write_tags(conn: sqlite3.Connection, memory_id: int, tags: Sequence[str]) -> None:
        conn.executemany(
            "INSERT OR IGNORE INTO tags (memory_id, tag, position) VALUES (?,?,?)",
            [(memory_id, tag, pos) for pos, tag in enumerate(tags)],
        )

    @staticmethod
    def _tags_for_many(
        conn: sqlite3.Connection, ids: Sequence[int],
    ) -> Dict[int, List[str]]:
        result: Dict[int, List[str]] = {}
        for i in range(0, len(ids), _TAG_CHUNK):
            chunk = list(ids[i:i + _TAG_CHUNK])
            placeholders = ",".join("?" for _ in chunk)
            for r in conn.execute(
                f"SELECT memory_id, tag FROM tags WHERE memory_id IN ({placeholders}) "
                "ORDER BY memory_id, position",
                chunk,
            ).fetchall():
                result.setdefault(r["memory_id"], []).append(r["tag"])
        return result

    def _hydrate(self, conn: sqlite3.Connection, rows: Sequence[sqlite3.Row]) -> List[Memory]:
        """Convert memory rows to Memory objects with their tags."""
        tags = self._tags_for_many(conn, [r["id"] for r in rows])
        return [
            Memory(
                id=r["id"],
                content=r["content"],
                tags=tags.get(r["id"], []),
                hash=r["hash"],
                created_at=r["created_at"],
                metadata=loads_metadata(r["metadata"]),
            )
            for r in rows
        ]

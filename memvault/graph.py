"""
Relationship Graph — typed directed edges between memories.

Edges are stored by internal memory id and addressed by hash at the API
boundary.  The triple (from, to, type) is unique: re-adding an edge is a
no-op.  Deleting a memory removes every edge touching it (explicit cascade,
see on_memory_deleted).
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from memvault.errors import InvalidInput, NotFound
from memvault.types import (
    DEFAULT_RELATIONSHIP_TYPE,
    Memory,
    Relationship,
    _now_iso,
    dumps_metadata,
    loads_metadata,
    normalize_tags,
)

logger = logging.getLogger(__name__)

MAX_DEPTH = 3
AUTO_SIMILAR_LIMIT = 5
AUTO_RELATED_LIMIT = 10
_HASH_CHUNK = 500  # stays well under SQLITE_MAX_VARIABLE_NUMBER

EdgeLike = Union[Relationship, Dict[str, Any]]


def _edge_type(value: Optional[str]) -> str:
    if value is None:
        return DEFAULT_RELATIONSHIP_TYPE
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("relationship_type cannot be empty")
    return value.strip()


class RelationshipGraph:
    """Edge operations over a MemoryStore's connection and transactions."""

    def __init__(self, store):
        self._store = store

    @property
    def _conn(self):
        return self._store._conn

    # -- Creation ----------------------------------------------------------

    def link(
        self,
        from_hash: str,
        to_hash: str,
        relationship_type: str = DEFAULT_RELATIONSHIP_TYPE,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Create one edge. Returns False if the identical edge exists.

        Raises:
            NotFound: an endpoint does not resolve.
            InvalidInput: self-link or empty hash/type.
        """
        if not from_hash or not to_hash:
            raise InvalidInput("Both memory hashes are required")
        rtype = _edge_type(relationship_type)
        meta_json = dumps_metadata(metadata)
        with self._store.transaction() as conn:
            from_id = self._store._resolve_id(conn, from_hash)
            if from_id is None:
                raise NotFound(f"Memory not found with hash: {from_hash[:8]}")
            to_id = self._store._resolve_id(conn, to_hash)
            if to_id is None:
                raise NotFound(f"Memory not found with hash: {to_hash[:8]}")
            if from_id == to_id:
                raise InvalidInput("Cannot link a memory to itself")
            created = self._insert_edge(conn, from_id, to_id, rtype, meta_json)
            if created:
                self._store._dirty = True
        return created

    def link_bulk(self, edges: Iterable[EdgeLike]) -> int:
        """Create many edges in one atomic batch. Returns the count created.

        Edges whose endpoints do not resolve, self-links and edges that
        already exist are skipped silently.  A storage failure rolls back the
        whole batch.
        """
        parsed: List[Relationship] = []
        for edge in edges:
            rel = edge if isinstance(edge, Relationship) else Relationship.from_dict(edge)
            parsed.append(rel)
        if not parsed:
            return 0

        created = 0
        with self._store.transaction() as conn:
            for rel in parsed:
                if not rel.from_hash or not rel.to_hash:
                    continue
                from_id = self._store._resolve_id(conn, rel.from_hash)
                to_id = self._store._resolve_id(conn, rel.to_hash)
                if from_id is None or to_id is None or from_id == to_id:
                    continue
                if self._insert_edge(
                    conn, from_id, to_id,
                    _edge_type(rel.relationship_type), dumps_metadata(rel.metadata),
                ):
                    created += 1
            if created:
                self._store._dirty = True
        logger.debug("Bulk link: %d of %d edges created", created, len(parsed))
        return created

    @staticmethod
    def _insert_edge(conn, from_id: int, to_id: int, rtype: str, meta_json: str) -> bool:
        cur = conn.execute(
            "INSERT OR IGNORE INTO relationships "
            "(from_memory_id, to_memory_id, relationship_type, created_at, metadata) "
            "VALUES (?,?,?,?,?)",
            (from_id, to_id, rtype, _now_iso(), meta_json),
        )
        return cur.rowcount > 0

    # -- Queries -----------------------------------------------------------

    def get_related(self, hash: str, limit: int = 10) -> List[Memory]:
        """Memories linked to *hash* in either direction, newest edge first."""
        if not isinstance(hash, str) or not hash.strip():
            raise InvalidInput("Hash cannot be empty")
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidInput(f"limit must be an integer, got {limit!r}")
        limit = max(1, limit)
        with self._store._reading() as conn:
            memory_id = self._store._resolve_id(conn, hash.strip())
            if memory_id is None:
                raise NotFound(f"Memory not found with hash: {hash[:8]}")
            rows = conn.execute(
                """SELECT m.*, r.relationship_type AS rel_type
                   FROM relationships r
                   JOIN memories m ON m.id = CASE
                       WHEN r.from_memory_id = ? THEN r.to_memory_id
                       ELSE r.from_memory_id END
                   WHERE r.from_memory_id = ? OR r.to_memory_id = ?
                   ORDER BY r.created_at DESC, r.id DESC
                   LIMIT ?""",
                (memory_id, memory_id, memory_id, limit),
            ).fetchall()
            memories = self._store._hydrate(conn, rows)
        for memory, row in zip(memories, rows):
            memory.relationship_type = row["rel_type"]
        return memories

    def edges_for(self, hashes: Sequence[str]) -> List[Relationship]:
        """Outgoing edges of the given memories, oldest first."""
        wanted = sorted(set(hashes))
        if not wanted:
            return []
        rows: List[Any] = []
        with self._store._reading() as conn:
            for i in range(0, len(wanted), _HASH_CHUNK):
                chunk = wanted[i:i + _HASH_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                rows.extend(conn.execute(
                    f"""SELECT r.id, f.hash AS from_hash, t.hash AS to_hash,
                               r.relationship_type, r.created_at, r.metadata
                        FROM relationships r
                        JOIN memories f ON f.id = r.from_memory_id
                        JOIN memories t ON t.id = r.to_memory_id
                        WHERE f.hash IN ({placeholders})""",
                    chunk,
                ).fetchall())
        rows.sort(key=lambda r: (r["created_at"], r["id"]))
        return [
            Relationship(
                from_hash=r["from_hash"],
                to_hash=r["to_hash"],
                relationship_type=r["relationship_type"],
                created_at=r["created_at"],
                metadata=loads_metadata(r["metadata"]),
            )
            for r in rows
        ]

    def count(self) -> int:
        with self._store._reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM relationships").fetchone()[0]

    # -- Cascade (caller owns the transaction) -----------------------------

    def on_memory_deleted(self, memory_id: int) -> int:
        """Delete every edge where the memory is either endpoint."""
        cur = self._conn.execute(
            "DELETE FROM relationships WHERE from_memory_id=? OR to_memory_id=?",
            (memory_id, memory_id),
        )
        return cur.rowcount

    # -- Traversal & auto-linking --------------------------------------------

    def expand_related(
        self, origins: Sequence[Memory], depth: int = 1, limit: int = 10,
    ) -> List[Memory]:
        """Chain get_related() up to *depth* hops (clamped to 1..3).

        Each hop gives every frontier memory a share of *limit*
        (``ceil(limit / len(frontier))``).  Memories already seen (the
        origins and everything collected so far) are dropped.  Returns the
        union in discovery order.
        """
        depth = min(max(int(depth), 1), MAX_DEPTH)
        limit = max(1, int(limit))
        seen = {m.hash for m in origins}
        collected: List[Memory] = []
        frontier = list(origins)
        for _ in range(depth):
            if not frontier:
                break
            per_node = math.ceil(limit / len(frontier))
            next_frontier: List[Memory] = []
            for memory in frontier:
                try:
                    related = self.get_related(memory.hash, per_node)
                except NotFound:
                    continue
                for rel in related:
                    if rel.hash in seen:
                        continue
                    seen.add(rel.hash)
                    collected.append(rel)
                    next_frontier.append(rel)
            frontier = next_frontier
        return collected

    def auto_link(
        self,
        hash: str,
        tags: Optional[Sequence[str]],
        relate_to: Optional[Sequence[str]] = None,
    ) -> int:
        """Store-time linking. Returns the number of edges created.

        ``similar`` edges go to up to 5 recent memories sharing a tag with
        *tags*; ``related`` edges to up to 10 memories carrying any
        *relate_to* tag.
        """
        edges: List[Dict[str, Any]] = []
        tag_list = normalize_tags(tags)
        if tag_list:
            candidates = self._store.search(tags=tag_list, limit=AUTO_SIMILAR_LIMIT + 1)
            for memory in [m for m in candidates if m.hash != hash][:AUTO_SIMILAR_LIMIT]:
                edges.append({"fromHash": hash, "toHash": memory.hash,
                              "relationshipType": "similar"})
        relate_list = normalize_tags(relate_to)
        if relate_list:
            candidates = self._store.search(tags=relate_list, limit=AUTO_RELATED_LIMIT + 1)
            for memory in [m for m in candidates if m.hash != hash][:AUTO_RELATED_LIMIT]:
                edges.append({"fromHash": hash, "toHash": memory.hash,
                              "relationshipType": "related"})
        return self.link_bulk(edges)

"""
Export/Import — JSON Snapshots for Backup, Migration, and Sharing

A snapshot is one JSON document:

    {
      "schemaVersion": 3,
      "exportedAt": "2026-01-01T00:00:00.000000+00:00",
      "source": "hostname",
      "totalMemories": 2,
      "memories": [{"hash", "content", "tags", "createdAt", "metadata"}, ...],
      "relationships": [{"fromHash", "toHash", "relationshipType", "metadata"}, ...]
    }

Export is filter-only (no ranking) and lists memories oldest first.  Import
is best-effort per entry: malformed entries are collected in
``ImportResult.errors`` while the rest of the batch proceeds.  Everything
goes through the public MemoryStore / RelationshipGraph operations.
"""

from __future__ import annotations

import json
import logging
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from memvault.errors import FormatError, InvalidInput
from memvault.migrations import SCHEMA_VERSION
from memvault.types import (
    ExportFilters,
    ImportResult,
    Relationship,
    _now_iso,
    content_hash,
    normalize_tags,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

Payload = Union[str, bytes, bytearray, Dict[str, Any]]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _coerce_filters(filters) -> ExportFilters:
    if filters is None:
        return ExportFilters()
    if isinstance(filters, ExportFilters):
        return filters
    if isinstance(filters, dict):
        return ExportFilters(
            tags=filters.get("tags"),
            start_date=filters.get("start_date", filters.get("startDate")),
            end_date=filters.get("end_date", filters.get("endDate")),
            days_ago=filters.get("days_ago", filters.get("daysAgo")),
            limit=filters.get("limit"),
        )
    raise InvalidInput(f"Unsupported export filters: {type(filters).__name__}")


def export_memories(
    store,
    filters: Union[ExportFilters, Dict[str, Any], None] = None,
    *,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a snapshot document from the memories matching *filters*.

    With a ``limit``, the most recent matching memories are kept; the
    document always lists memories by ``created_at`` ascending.  Edges are
    exported when their ``from`` endpoint is exported.
    """
    f = _coerce_filters(filters)
    memories = store.list_memories(
        tags=f.tags,
        days_ago=f.days_ago,
        start_date=f.start_date,
        end_date=f.end_date,
        limit=f.limit,
    )
    memories.reverse()
    relationships = store.graph.edges_for([m.hash for m in memories])
    doc = {
        "schemaVersion": SCHEMA_VERSION,
        "exportedAt": _now_iso(),
        "source": source if source is not None else socket.gethostname(),
        "totalMemories": len(memories),
        "memories": [m.to_snapshot() for m in memories],
        "relationships": [r.to_snapshot() for r in relationships],
    }
    logger.info(
        f"Exported {len(memories)} memories and {len(relationships)} relationships"
    )
    return doc


def export_to_file(
    store,
    path: str,
    filters: Union[ExportFilters, Dict[str, Any], None] = None,
    *,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    """Export to a UTF-8 JSON file (indent 2). Returns the document."""
    doc = export_memories(store, filters, source=source)
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(doc, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info(f"[export] {doc['totalMemories']} memories written to {target}")
    return doc


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _parse_payload(payload: Payload) -> Dict[str, Any]:
    """Decode and shape-check a snapshot. Raises FormatError."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError(f"Snapshot is not valid UTF-8: {exc}") from exc
    if isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise FormatError(f"Invalid JSON format: {exc}") from exc
    else:
        data = payload
    if not isinstance(data, dict):
        raise FormatError("Snapshot must be a JSON object")
    if "memories" not in data:
        raise FormatError("Invalid export format: missing memories array")
    if not isinstance(data["memories"], list):
        raise FormatError("Invalid export format: memories must be an array")
    rels = data.get("relationships")
    if rels is not None and not isinstance(rels, list):
        raise FormatError("Invalid export format: relationships must be an array")
    return data


def _validate_entry(
    entry: Any, preserve_timestamps: bool,
) -> Tuple[str, List[str], Dict[str, Any], Optional[str]]:
    """Return (content, tags, metadata, created_at) or raise InvalidInput."""
    if not isinstance(entry, dict):
        raise InvalidInput("Memory entry must be an object")
    content = entry.get("content")
    if not isinstance(content, str) or not content.strip():
        raise InvalidInput("Memory content cannot be empty")
    tags = entry.get("tags")
    if tags is None:
        tags = []
    if not isinstance(tags, list):
        raise InvalidInput("Memory tags must be an array")
    metadata = entry.get("metadata")
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise InvalidInput("Memory metadata must be an object")
    created_at = None
    if preserve_timestamps and entry.get("createdAt"):
        created_at = parse_timestamp(entry["createdAt"])
    return content, normalize_tags(tags), metadata, created_at


def _entry_error(index: int, entry: Any, exc: Exception) -> Dict[str, Any]:
    ref = entry.get("hash") if isinstance(entry, dict) else None
    return {"index": index, "hash": ref, "error": str(exc)}


def _collect_edges(
    data: Dict[str, Any], hash_map: Dict[str, str], result: ImportResult,
) -> List[Relationship]:
    """Snapshot edges (top-level and legacy per-memory) with live hashes."""
    raw: List[Any] = list(data.get("relationships") or [])
    for entry in data["memories"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("relationships"), list):
            continue
        for rel in entry["relationships"]:
            if isinstance(rel, dict):
                raw.append({
                    "fromHash": entry.get("hash"),
                    "toHash": rel.get("relatedMemoryHash"),
                    "relationshipType": rel.get("relationshipType"),
                })
    edges: List[Relationship] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            result.errors.append({"relationship": idx, "error": "Relationship must be an object"})
            continue
        try:
            rel = Relationship.from_dict(item)
        except InvalidInput as exc:
            result.errors.append({"relationship": idx, "error": str(exc)})
            continue
        if not isinstance(rel.relationship_type, str) or not rel.relationship_type.strip():
            result.errors.append({"relationship": idx, "error": "Invalid relationshipType"})
            continue
        if not isinstance(rel.from_hash, str) or not isinstance(rel.to_hash, str):
            result.errors.append({"relationship": idx, "error": "Edge hashes must be strings"})
            continue
        rel.from_hash = hash_map.get(rel.from_hash, rel.from_hash)
        rel.to_hash = hash_map.get(rel.to_hash, rel.to_hash)
        edges.append(rel)
    return edges


def _count_new_edges(store, edges: List[Relationship], planned: set) -> int:
    """Edges link_bulk would create, given the memories an import plans."""
    live: Dict[str, bool] = {}

    def resolves(h: str) -> bool:
        if h in planned:
            return True
        if h not in live:
            live[h] = bool(h.strip()) and store.get_by_hash(h) is not None
        return live[h]

    existing = {
        (e.from_hash, e.to_hash, e.relationship_type)
        for e in store.graph.edges_for([e.from_hash for e in edges if e.from_hash])
    }
    seen = set()
    for rel in edges:
        if not rel.from_hash or not rel.to_hash or rel.from_hash == rel.to_hash:
            continue
        if not resolves(rel.from_hash) or not resolves(rel.to_hash):
            continue
        key = (rel.from_hash, rel.to_hash, rel.relationship_type.strip())
        if key not in existing:
            seen.add(key)
    return len(seen)


def import_memories(
    store,
    payload: Payload,
    *,
    skip_duplicates: bool = False,
    preserve_timestamps: bool = False,
    dry_run: bool = False,
) -> ImportResult:
    """Import a snapshot into *store*.

    Args:
        store: Target MemoryStore.
        payload: JSON text/bytes or an already-decoded document.
        skip_duplicates: Count existing hashes as skipped.  Otherwise they
            count as imported; the stored record is never modified.
        preserve_timestamps: Keep the snapshot's ``createdAt`` for new
            memories (otherwise: now).
        dry_run: Validate and count (memories and relationships) without
            writing.

    Returns:
        ImportResult with counts and per-entry errors.

    Raises:
        FormatError: The document is not a well-formed snapshot (nothing
            is written).
        StorageFailure: The batch could not commit (everything rolled back).
    """
    data = _parse_payload(payload)
    result = ImportResult(dry_run=dry_run)
    version = data.get("schemaVersion")
    if version is not None and version != SCHEMA_VERSION:
        result.notes.append(
            f"Snapshot schemaVersion {version} differs from store version {SCHEMA_VERSION}"
        )

    hash_map: Dict[str, str] = {}
    if dry_run:
        planned = set()
        for idx, entry in enumerate(data["memories"]):
            try:
                content, _tags, _meta, _ts = _validate_entry(entry, preserve_timestamps)
            except InvalidInput as exc:
                result.errors.append(_entry_error(idx, entry, exc))
                continue
            h = content_hash(content)
            exists = h in planned or store.get_by_hash(h) is not None
            if exists and skip_duplicates:
                result.skipped += 1
            else:
                result.imported += 1
            planned.add(h)
            snapshot_hash = entry.get("hash")
            if isinstance(snapshot_hash, str) and snapshot_hash:
                hash_map[snapshot_hash] = h
            hash_map[h] = h
        edges = _collect_edges(data, hash_map, result)
        result.relationships_created = _count_new_edges(store, edges, planned)
        logger.info(
            f"[import] dry run: {result.imported} would be imported, "
            f"{result.skipped} skipped, {result.relationships_created} relationships, "
            f"{len(result.errors)} errors"
        )
        return result

    with store.transaction():
        for idx, entry in enumerate(data["memories"]):
            try:
                content, tags, metadata, created_at = _validate_entry(
                    entry, preserve_timestamps,
                )
                h = content_hash(content)
                with store.transaction():
                    if skip_duplicates and store.get_by_hash(h) is not None:
                        result.skipped += 1
                    else:
                        # Existing records are left untouched
                        store.store(content, tags, metadata=metadata, created_at=created_at)
                        result.imported += 1
            except InvalidInput as exc:
                logger.debug("Import entry %d rejected: %s", idx, exc)
                result.errors.append(_entry_error(idx, entry, exc))
                continue
            snapshot_hash = entry.get("hash")
            if isinstance(snapshot_hash, str) and snapshot_hash:
                hash_map[snapshot_hash] = h
            hash_map[h] = h

        edges = _collect_edges(data, hash_map, result)
        if edges:
            result.relationships_created = store.graph.link_bulk(edges)

    logger.info(
        f"[import] {result.imported} imported, {result.skipped} skipped, "
        f"{result.relationships_created} relationships, {len(result.errors)} errors"
    )
    return result


def import_from_file(store, path: str, **options) -> ImportResult:
    """Import a snapshot from a UTF-8 JSON file. Options as import_memories."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise InvalidInput(f"Import file not found: {path}") from exc
    return import_memories(store, text, **options)

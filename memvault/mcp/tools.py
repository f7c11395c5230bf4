"""
memvault MCP Tools — 8 memory tools for MCP integration.

Thin wrappers around MemoryStore, RelationshipGraph and export_import.
Each tool validates nothing the engine already validates: engine errors
(MemvaultError subclasses) are turned into structured results

    {"status": "error", "error": <kind>, "message": "..."}

and successful calls return ``{"status": "ok", ...}``.

Tool hierarchy:
    SEARCH:  memory_search   — relevance/tag/date search (+ related expansion)
    WRITE:   memory_store, memory_update, memory_delete, memory_link
    STATS:   memory_stats
    DATA:    memory_export, memory_import
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from memvault.config import MemoryConfig
from memvault.errors import InvalidInput, MemvaultError
from memvault.export_import import (
    export_memories,
    export_to_file,
    import_from_file,
    import_memories,
)
from memvault.registry import ToolRegistry
from memvault.store import MemoryStore
from memvault.types import ExportFilters

logger = logging.getLogger(__name__)


def _error(action: str, exc: MemvaultError) -> Dict[str, Any]:
    return {"status": "error", "error": exc.kind, "message": f"{action} failed: {exc}"}


def register_memory_tools(
    registry: ToolRegistry,
    store: MemoryStore,
    config: Optional[MemoryConfig] = None,
) -> ToolRegistry:
    """
    Register the memory tools on *registry*.

    Args:
        registry: ToolRegistry owned by the caller.
        store: Fully initialized MemoryStore.
        config: MemoryConfig for search/export defaults.

    Returns:
        The same registry, for chaining.
    """
    config = config or MemoryConfig()
    graph = store.graph

    # =====================================================================
    # SEARCH
    # =====================================================================

    @registry.tool()
    def memory_search(
        query: Optional[str] = None,
        tags: Optional[List[str]] = None,
        limit: Optional[int] = None,
        days_ago: Optional[int] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        min_relevance: Optional[float] = None,
        include_related: bool = False,
        relationship_depth: int = 1,
    ) -> Dict[str, Any]:
        """Search memories by text relevance, tags and date range.

        Args:
            query: Free text; any word matches (BM25 ranking).
            tags: Keep memories carrying any of these tags.
            limit: Max results (default from config, at least 1).
            days_ago: Only memories since midnight N days ago (UTC).
            start_date: ISO date/time lower bound (overrides days_ago).
            end_date: ISO date/time upper bound (date-only = end of day).
            min_relevance: Drop results scoring below this (0-1; unscored = 0).
            include_related: Also return memories linked to the results.
            relationship_depth: Hops to follow for related memories (1-3).

        Returns:
            memories, total, and related_memories when requested.
        """
        try:
            n = config.search.default_limit if limit is None else limit
            memories = store.search(
                query=query, tags=tags, limit=n, days_ago=days_ago,
                start_date=start_date, end_date=end_date,
                min_relevance=min_relevance,
            )
            result: Dict[str, Any] = {
                "status": "ok",
                "memories": [m.to_dict() for m in memories],
                "total": len(memories),
                "search_term": query,
                "search_tags": tags,
            }
            if include_related and memories:
                depth = min(max(1, relationship_depth), config.search.max_depth)
                related = graph.expand_related(memories, depth=depth, limit=max(1, n))
                result["related_memories"] = [m.to_dict() for m in related]
                result["relationship_depth"] = depth
            return result
        except MemvaultError as e:
            return _error("Search", e)

    # =====================================================================
    # WRITE
    # =====================================================================

    @registry.tool()
    def memory_store(
        content: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        auto_link: bool = True,
        relate_to: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Store a memory. Identical content returns the existing hash.

        Args:
            content: Text to remember (non-empty).
            tags: Labels (lowercased, de-duplicated).
            metadata: Free-form JSON object kept verbatim.
            auto_link: Link to up to 5 memories sharing a tag ("similar").
            relate_to: Link to up to 10 memories carrying these tags ("related").

        Returns:
            hash and relationships_created.
        """
        try:
            h = store.store(content, tags, metadata=metadata)
            created = graph.auto_link(
                h, tags if auto_link else None, relate_to=relate_to,
            )
            message = f"Memory stored successfully with hash: {h[:8]}..."
            if created:
                message += f" ({created} relationships created)"
            return {
                "status": "ok",
                "hash": h,
                "relationships_created": created,
                "message": message,
            }
        except MemvaultError as e:
            return _error("Store", e)

    @registry.tool()
    def memory_update(
        hash: str,
        content: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Replace a memory's content. Returns the NEW hash.

        Tags and metadata are kept unless given.
        """
        try:
            new_hash = store.update(hash, content, tags, metadata=metadata)
            return {
                "status": "ok",
                "old_hash": hash,
                "new_hash": new_hash,
                "message": f"Memory updated: {hash[:8]}... -> {new_hash[:8]}...",
            }
        except MemvaultError as e:
            return _error("Update", e)

    @registry.tool()
    def memory_delete(
        hash: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Delete one memory by hash, or every memory carrying a tag."""
        try:
            if hash:
                found = store.delete(hash)
                return {
                    "status": "ok" if found else "not_found",
                    "deleted": 1 if found else 0,
                    "message": (
                        f"Memory with hash {hash[:8]}... deleted successfully" if found
                        else f"Memory with hash {hash[:8]}... not found"
                    ),
                }
            if tag:
                deleted = store.delete_by_tag(tag)
                return {
                    "status": "ok",
                    "deleted": deleted,
                    "message": f'Deleted {deleted} memories with tag "{tag}"',
                }
            raise InvalidInput("Either hash or tag must be provided")
        except MemvaultError as e:
            return _error("Delete", e)

    @registry.tool()
    def memory_link(
        from_hash: str,
        to_hash: str,
        relationship_type: str = "related",
    ) -> Dict[str, Any]:
        """Create a typed edge between two memories (no-op if it exists)."""
        try:
            created = graph.link(from_hash, to_hash, relationship_type)
            return {"status": "ok", "created": created}
        except MemvaultError as e:
            return _error("Link", e)

    # =====================================================================
    # STATS
    # =====================================================================

    @registry.tool()
    def memory_stats() -> Dict[str, Any]:
        """Memory store statistics: counts, storage size, schema version."""
        try:
            stats = store.stats()
            stats["status"] = "ok"
            return stats
        except MemvaultError as e:
            return _error("Stats", e)

    # =====================================================================
    # DATA: export, import
    # =====================================================================

    @registry.tool()
    def memory_export(
        output: Optional[str] = None,
        tags: Optional[List[str]] = None,
        days_ago: Optional[int] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Export memories as a JSON snapshot.

        With *output*, the snapshot is written to that file and only a
        summary is returned; otherwise the document is returned inline.
        Capped at the configured export limit.
        """
        try:
            filters = ExportFilters(
                tags=tags, days_ago=days_ago, start_date=start_date,
                end_date=end_date,
                limit=limit if limit is not None else config.search.export_limit,
            )
            if output:
                doc = export_to_file(store, output, filters, source=source)
                return {
                    "status": "ok",
                    "output_path": output,
                    "total_memories": doc["totalMemories"],
                    "exported_at": doc["exportedAt"],
                    "source": doc["source"],
                }
            doc = export_memories(store, filters, source=source)
            return {"status": "ok", "snapshot": doc}
        except MemvaultError as e:
            return _error("Export", e)

    @registry.tool()
    def memory_import(
        data: Optional[str] = None,
        input_path: Optional[str] = None,
        skip_duplicates: bool = False,
        preserve_timestamps: bool = False,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Import a JSON snapshot given inline (*data*) or as a file path."""
        try:
            options = dict(
                skip_duplicates=skip_duplicates,
                preserve_timestamps=preserve_timestamps,
                dry_run=dry_run,
            )
            if data is not None:
                result = import_memories(store, data, **options)
            elif input_path:
                result = import_from_file(store, input_path, **options)
            else:
                raise InvalidInput("Either data or input_path must be provided")
            out = result.to_dict()
            out["status"] = "ok" if result.success else "partial"
            return out
        except MemvaultError as e:
            return _error("Import", e)

    logger.info(f"Registered {len(registry)} memory tools")
    return registry

"""
memvault — A persistent, searchable memory store.

Content-addressed notes in a single SQLite + FTS5 database: tag them, link
them, search them by BM25 relevance, tags and date range, and move them
between stores as JSON snapshots.
"""

__version__ = "1.0.0"

from memvault.errors import (
    ConflictError,
    FormatError,
    InvalidInput,
    MemvaultError,
    MigrationError,
    NotFound,
    StorageFailure,
)
from memvault.types import (
    ExportFilters,
    ImportResult,
    Memory,
    Relationship,
    content_hash,
)
from memvault.store import MemoryStore
from memvault.graph import RelationshipGraph
from memvault.migrations import SCHEMA_VERSION
from memvault.config import MemoryConfig, load_config, open_store
from memvault.registry import ToolRegistry

__all__ = [
    "__version__",
    "Memory",
    "Relationship",
    "ExportFilters",
    "ImportResult",
    "content_hash",
    "MemoryStore",
    "RelationshipGraph",
    "MemoryConfig",
    "load_config",
    "open_store",
    "ToolRegistry",
    "SCHEMA_VERSION",
    "MemvaultError",
    "InvalidInput",
    "NotFound",
    "ConflictError",
    "FormatError",
    "StorageFailure",
    "MigrationError",
]

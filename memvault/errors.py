"""
Error kinds raised by the memory engine.

The engine raises; outer layers (tool wrappers) turn these into structured
``{"status": "error", "error": kind, "message": ...}`` results.
"""

from __future__ import annotations


class MemvaultError(Exception):
    """Base class for all engine errors."""

    kind = "error"


class InvalidInput(MemvaultError, ValueError):
    """Rejected before any mutation: empty content/hash, bad filter values."""

    kind = "invalid_input"


class NotFound(MemvaultError, LookupError):
    """The target hash or tag has no matching live record."""

    kind = "not_found"


class ConflictError(MemvaultError):
    """An update would produce a hash owned by a different live memory."""

    kind = "conflict"


class FormatError(MemvaultError, ValueError):
    """Snapshot payload is not well-formed. Raised before any write."""

    kind = "format_error"


class StorageFailure(MemvaultError):
    """The underlying transaction could not commit (lock timeout, I/O error).

    Callers may retry.
    """

    kind = "storage_failure"


class MigrationError(StorageFailure):
    """A schema migration failed. The store refuses to open."""

    kind = "migration_error"

"""
Memory Data Model

Memories are content-addressed: ``hash`` is a pure function of ``content``.
Changing the content of a memory changes its external identity, and
``MemoryStore.update()`` returns the new hash.  The integer ``id`` is an
internal surrogate used only for storage joins.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from memvault.errors import InvalidInput

DEFAULT_RELATIONSHIP_TYPE = "related"

_DATE_ONLY_LEN = 10  # YYYY-MM-DD


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string (fixed width, sorts as text)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def content_hash(text: str) -> str:
    """MD5 hex digest of the UTF-8 content.

    MD5 is an identity function here, not a security boundary.  It matches
    the digest used by existing snapshots.
    """
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def normalize_tag(tag: str) -> str:
    """Lowercase and strip a single tag."""
    return tag.strip().lower()


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Normalize tags into an ordered set (first occurrence wins)."""
    if not tags:
        return []
    seen: set = set()
    result: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise InvalidInput(f"Tag must be a string, got {type(tag).__name__}")
        t = normalize_tag(tag)
        if t and t not in seen:
            seen.add(t)
            result.append(t)
    return result


def parse_timestamp(
    value: Union[str, datetime, None], *, end_of_day: bool = False,
) -> Optional[str]:
    """Parse a timestamp into the canonical UTC ISO-8601 form.

    Accepts ``datetime`` objects, full ISO strings (including a trailing
    ``Z``) and date-only ``YYYY-MM-DD`` strings.  A date-only value maps to
    midnight, or to the last microsecond of the day when *end_of_day* is set.
    Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidInput("Timestamp cannot be empty")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidInput(f"Invalid timestamp: {value!r}") from None
        if len(text) == _DATE_ONLY_LEN and end_of_day:
            dt = dt + timedelta(days=1) - timedelta(microseconds=1)
    else:
        raise InvalidInput(f"Invalid timestamp type: {type(value).__name__}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def days_ago_start(days: int, now: Optional[datetime] = None) -> str:
    """UTC midnight *days* days before *now*."""
    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        raise InvalidInput(f"days_ago must be a non-negative integer, got {days!r}")
    now = now or datetime.now(timezone.utc)
    start = (now - timedelta(days=days)).replace(
        hour=0, minute=0, second=0, microsecond=0,
    )
    return start.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """A stored note.

    ``relevance`` is set by text searches (``None`` otherwise) and
    ``relationship_type`` by ``get_related()``; neither is persisted.
    """

    id: int = 0
    content: str = ""
    tags: List[str] = field(default_factory=list)
    hash: str = ""
    created_at: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)
    relevance: Optional[float] = None
    relationship_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        d = asdict(self)
        if self.relevance is None:
            d.pop("relevance")
        if self.relationship_type is None:
            d.pop("relationship_type")
        return d

    def to_snapshot(self) -> Dict[str, Any]:
        """Snapshot entry shape (camelCase keys)."""
        return {
            "hash": self.hash,
            "content": self.content,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "metadata": dict(self.metadata),
        }


# ---------------------------------------------------------------------------
# Relationship
# ---------------------------------------------------------------------------


@dataclass
class Relationship:
    """Typed directed edge between two memories, addressed by hash."""

    from_hash: str = ""
    to_hash: str = ""
    relationship_type: str = DEFAULT_RELATIONSHIP_TYPE
    created_at: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Relationship:
        """Build from either snake_case or snapshot camelCase keys."""
        metadata = d.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidInput("Relationship metadata must be an object")
        return cls(
            from_hash=d.get("fromHash", d.get("from_hash", "")) or "",
            to_hash=d.get("toHash", d.get("to_hash", "")) or "",
            relationship_type=(
                d.get("relationshipType", d.get("relationship_type"))
                or DEFAULT_RELATIONSHIP_TYPE
            ),
            metadata=metadata,
        )

    def to_snapshot(self) -> Dict[str, Any]:
        """Snapshot entry shape (camelCase keys)."""
        return {
            "fromHash": self.from_hash,
            "toHash": self.to_hash,
            "relationshipType": self.relationship_type,
            "metadata": dict(self.metadata),
        }


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------


@dataclass
class ExportFilters:
    """Selection filters for export (same shape as search filters)."""

    tags: Optional[List[str]] = None
    start_date: Union[str, datetime, None] = None
    end_date: Union[str, datetime, None] = None
    days_ago: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class ImportResult:
    """Counts from an import operation."""

    imported: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    relationships_created: int = 0
    dry_run: bool = False
    notes: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "relationships_created": self.relationships_created,
            "dry_run": self.dry_run,
            "notes": list(self.notes),
        }


def dumps_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    """Serialize a metadata map for storage."""
    if metadata is None:
        return "{}"
    if not isinstance(metadata, dict):
        raise InvalidInput("metadata must be a JSON object")
    try:
        return json.dumps(metadata, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"metadata is not JSON-serializable: {exc}") from None


def loads_metadata(raw: Optional[str]) -> Dict[str, Any]:
    """Deserialize a stored metadata column (NULL/empty -> {})."""
    if not raw:
        return {}
    value = json.loads(raw)
    return value if isinstance(value, dict) else {}

"""
Full-Text Index — FTS5 projection of memory content and tags.

The index is a regular FTS5 table keyed by the memory id (``rowid``).  It is
kept in sync by explicit write-time hooks, not SQL triggers:

    on_insert(memory_id, content, tags)
    on_update(memory_id, content, tags)
    on_delete(memory_id)

MemoryStore calls these inside the same transaction as the primary mutation,
so a reader never sees the index diverge from the live rows.

Ranking uses FTS5 ``bm25()`` (term frequency, inverse document frequency,
length normalization).  ``relevance()`` maps the raw rank into [0, 1).
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

FTS_TABLE = "memories_fts"

DEFAULT_TOKENIZER = "unicode61 remove_diacritics 2"

# Conservative whitelist for FTS5 tokenizer strings: only alphanumeric, space,
# underscore, dot and hyphen are allowed. Quotes, semicolons and parentheses
# are rejected so config or environment cannot inject SQL.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

# Well-known presets for MEMORY_FTS / --fts-tokenizer
FTS_TOKENIZER_PRESETS = {
    "fr": "unicode61 remove_diacritics 2",
    "en": "porter unicode61 remove_diacritics 2",
    "raw": "unicode61",
}


def validate_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r}; "
            "only [a-zA-Z0-9_ .-] characters allowed"
        )
    return tokenizer


def build_match(query: Optional[str]) -> Optional[str]:
    """Build an FTS5 MATCH expression: any quoted query token matches.

    "git reset" becomes ``"git" OR "reset"``.  Quoting makes every token a
    literal string (no FTS operators leak through).  Returns None when the
    query holds no token with a letter or digit.
    """
    if query is None:
        return None
    # Punctuation-only tokens would become empty phrases
    words = [w for w in query.split() if any(ch.isalnum() for ch in w)]
    if not words:
        return None
    return " OR ".join('"' + w.replace('"', '""') + '"' for w in words)


def relevance(rank: float) -> float:
    """Map an FTS5 bm25() rank (negative, lower is better) into [0, 1)."""
    s = max(0.0, -float(rank))
    return s / (1.0 + s)


def _tags_text(tags: Sequence[str]) -> str:
    return " ".join(tags)


class FtsIndex:
    """Write-time maintained FTS5 index over ``memories`` content and tags."""

    def __init__(self, conn: sqlite3.Connection, tokenizer: Optional[str] = None):
        self._conn = conn
        self.tokenizer = validate_tokenizer(tokenizer or DEFAULT_TOKENIZER)

    # -- Schema ------------------------------------------------------------

    def exists(self) -> bool:
        return self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (FTS_TABLE,),
        ).fetchone() is not None

    def create(self) -> None:
        """Create the FTS5 table (no-op if present)."""
        self._conn.execute(
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} "
            f"USING fts5(content, tags, tokenize='{self.tokenizer}')"
        )

    def stored_tokenizer(self) -> Optional[str]:
        """Tokenizer recorded in the existing table definition, if any."""
        row = self._conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
            (FTS_TABLE,),
        ).fetchone()
        if row is None:
            return None
        match = re.search(r"tokenize='([^']*)'", row[0] or "")
        return match.group(1).strip() if match else "unicode61"

    def check_tokenizer(self) -> bool:
        """Warn when the on-disk tokenizer differs from the configured one."""
        existing = self.stored_tokenizer()
        if existing is None or existing == self.tokenizer:
            return False
        logger.warning(
            f"FTS tokenizer mismatch: existing='{existing}', "
            f"configured='{self.tokenizer}'. Call rebuild_index() to "
            f"recreate the FTS index with the new tokenizer."
        )
        return True

    # -- Write-time hooks (caller owns the transaction) ---------------------

    def on_insert(self, memory_id: int, content: str, tags: Sequence[str]) -> None:
        self._conn.execute(
            f"INSERT INTO {FTS_TABLE}(rowid, content, tags) VALUES (?,?,?)",
            (memory_id, content, _tags_text(tags)),
        )

    def on_update(self, memory_id: int, content: str, tags: Sequence[str]) -> None:
        self.on_delete(memory_id)
        self.on_insert(memory_id, content, tags)

    def on_delete(self, memory_id: int) -> None:
        self._conn.execute(
            f"DELETE FROM {FTS_TABLE} WHERE rowid=?", (memory_id,),
        )

    # -- Maintenance (caller owns the transaction) --------------------------

    def rebuild(self, tokenizer: Optional[str] = None) -> int:
        """Repopulate the index from ``memories`` + ``tags``.

        If *tokenizer* differs from the current one the table is dropped and
        recreated first.  Returns the number of rows indexed.
        """
        if tokenizer and validate_tokenizer(tokenizer) != self.tokenizer:
            logger.info(
                f"FTS tokenizer change: '{self.tokenizer}' → '{tokenizer.strip()}'"
            )
            self._conn.execute(f"DROP TABLE IF EXISTS {FTS_TABLE}")
            self.tokenizer = validate_tokenizer(tokenizer)
            self.create()
        else:
            self._conn.execute(f"DELETE FROM {FTS_TABLE}")
        rows = self._conn.execute("SELECT id, content FROM memories").fetchall()
        for row in rows:
            self.on_insert(row[0], row[1], self._tags_for(row[0]))
        logger.info(f"FTS index rebuilt: {len(rows)} memories indexed")
        return len(rows)

    def optimize(self) -> None:
        """Merge FTS5 b-tree segments (useful after bulk imports)."""
        self._conn.execute(
            f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('optimize')"
        )

    def count(self) -> int:
        return self._conn.execute(f"SELECT COUNT(*) FROM {FTS_TABLE}").fetchone()[0]

    def _tags_for(self, memory_id: int) -> List[str]:
        return [
            r[0] for r in self._conn.execute(
                "SELECT tag FROM tags WHERE memory_id=? ORDER BY position",
                (memory_id,),
            ).fetchall()
        ]

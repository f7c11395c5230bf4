"""
memvault MCP Server — Persistent Searchable Memory for LLMs

Standalone MCP server exposing the memvault tools via the Model Context
Protocol.  Works with any MCP-compatible client over stdio.

Architecture: thin MCP layer delegating to MemoryStore.  The tool catalogue
is an explicit ToolRegistry built here once and installed on FastMCP.

Usage:
    python -m memvault.mcp.server --db /path/to/memory.db
    python -m memvault.mcp.server --fts-tokenizer en
    python -m memvault.mcp.server --config memvault.json -v

Logging goes to stderr: stdout is the MCP transport.
"""

from __future__ import annotations

import argparse
import logging
import sys

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Persistent searchable memory (8 tools).\n"
    "\n"
    "SEARCH: Use memory_search (query, tags, date range; include_related for graph).\n"
    "STORE:  Use memory_store with 2-5 lowercase tags; identical content is\n"
    "        stored once and returns the existing hash.\n"
    "UPDATE: memory_update returns a NEW hash; the old one stops resolving.\n"
    "LINK:   memory_link creates typed edges (related, similar, ...).\n"
    "DATA:   memory_export/memory_import for JSON snapshots.\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the memory MCP server."""
    p = argparse.ArgumentParser(
        prog="memvault-mcp",
        description="memvault MCP Server — persistent searchable memory for LLMs",
    )
    p.add_argument(
        "--config",
        default=None,
        help="JSON config file (MEMORY_* environment variables take precedence)",
    )
    p.add_argument(
        "--db",
        default=None,
        help="SQLite database path (overrides config and $MEMORY_DB)",
    )
    p.add_argument(
        "--fts-tokenizer",
        default=None,
        help=(
            "FTS5 tokenizer preset: fr (accent-insensitive), en (porter stemming), "
            "raw (unicode61), or a custom tokenizer string"
        ),
    )
    p.add_argument(
        "--backup-dir",
        default=None,
        help="Enable rotating backups in this directory",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def build_registry(store, config):
    """Create the ToolRegistry holding every memory tool."""
    from memvault.mcp.tools import register_memory_tools
    from memvault.registry import ToolRegistry

    return register_memory_tools(ToolRegistry(), store, config)


def create_server(args=None):
    """
    Create and configure the FastMCP server with memory tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from memvault.config import load_config, open_store
    from memvault.fts import FTS_TOKENIZER_PRESETS

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    if args.db:
        config.store.db_path = args.db
    if args.fts_tokenizer:
        config.store.fts_tokenizer = FTS_TOKENIZER_PRESETS.get(
            args.fts_tokenizer, args.fts_tokenizer,
        )
    if args.backup_dir:
        config.backup.backup_dir = args.backup_dir

    store = open_store(config)
    registry = build_registry(store, config)

    mcp = FastMCP(
        name="memvault Memory",
        instructions=_MCP_INSTRUCTIONS,
    )
    registry.install(mcp)

    logger.info(
        "memvault MCP server ready: db=%s, fts=%s, backups=%s",
        config.store.db_path, config.store.fts_tokenizer,
        config.backup.backup_dir or "off",
    )
    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    mcp, store = create_server(args)
    try:
        mcp.run()
    finally:
        store.close()


if __name__ == "__main__":
    main()

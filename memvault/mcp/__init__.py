"""MCP server surface for memvault (requires the optional ``mcp`` extra)."""

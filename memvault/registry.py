"""
Tool Registry — explicit catalogue of the operations a server exposes.

A ToolRegistry is built once at process start and handed to whatever needs
it (the MCP server, tests).  There is no module-level registry: two servers
in one process hold two independent registries.

    registry = ToolRegistry()

    @registry.tool()
    def memory_stats() -> dict:
        ...

    registry.call("memory_stats")
    registry.install(mcp)          # register everything on a FastMCP instance
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Ordered mapping of tool name -> callable."""

    def __init__(self):
        self._tools: Dict[str, Callable[..., Any]] = {}

    def tool(self, name: Optional[str] = None) -> Callable:
        """Decorator registering a function under *name* (default: its own)."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            tool_name = name or fn.__name__
            if tool_name in self._tools:
                raise ValueError(f"Tool already registered: {tool_name}")

            @functools.wraps(fn)
            def timed(*args, **kwargs):
                t0 = time.monotonic()
                try:
                    return fn(*args, **kwargs)
                finally:
                    logger.debug(
                        "tool=%s elapsed_ms=%.1f", tool_name,
                        (time.monotonic() - t0) * 1000,
                    )

            self._tools[tool_name] = timed
            return timed

        return decorator

    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> Callable[..., Any]:
        try:
            return self._tools[name]
        except KeyError:
            raise KeyError(f"Unknown tool: {name}") from None

    def call(self, name: str, **kwargs) -> Any:
        """Invoke a tool by name with keyword arguments."""
        return self.get(name)(**kwargs)

    def install(self, mcp) -> int:
        """Register every tool on a FastMCP server. Returns the count."""
        for tool_name, fn in self._tools.items():
            mcp.tool(name=tool_name)(fn)
        logger.info(f"Registered {len(self._tools)} memory MCP tools")
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

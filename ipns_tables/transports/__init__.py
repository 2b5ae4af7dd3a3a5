"""Transport wiring for the IPNS tables MCP server."""

from __future__ import annotations

from .stdio import run_stdio

__all__ = [
    "run_stdio",
]

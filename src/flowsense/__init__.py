"""
FlowSense: household water usage analysis

Segments water meter readings into usage events, classifies them, and serves
usage summaries over MCP and the command line.
"""

from typing import Any

__all__ = ["server"]


def __getattr__(name: str) -> Any:
    """Lazy load server to avoid circular imports at module level."""
    if name == "server":
        from flowsense.server import server

        return server
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

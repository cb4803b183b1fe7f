"""Branch Sync MCP Server

FastMCP server that exposes branch inspection and bulk sync to AI agents.
Tools are namespaced as branchsync_* for provider compatibility.
"""

from branchsync import __version__  # noqa: F401

from .server import mcp

__all__ = ["mcp"]

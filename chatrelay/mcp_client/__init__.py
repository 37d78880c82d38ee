"""MCP client package."""

from __future__ import annotations

from .client import MCPClient

__all__ = ["MCPClient"]

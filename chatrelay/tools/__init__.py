"""Tool capability registry and tool sources."""

from __future__ import annotations

from .builtin import register_builtin_tools
from .errors import (
    ToolError,
    ToolExecutionError,
    ToolInputError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from .mcp_tools import register_mcp_tools
from .registry import ToolCapability, ToolProgress, ToolRegistry, ToolResult

__all__ = [
    "ToolCapability",
    "ToolError",
    "ToolExecutionError",
    "ToolInputError",
    "ToolNotFoundError",
    "ToolProgress",
    "ToolRegistry",
    "ToolResult",
    "ToolTimeoutError",
    "register_builtin_tools",
    "register_mcp_tools",
]

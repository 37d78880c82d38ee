"""
Tool Error Hierarchy

Errors raised by the tool capability registry. Every tool failure during a
turn is reported to the model and persisted as an output-error part; none of
these abort the turn.
"""

from __future__ import annotations


class ToolError(Exception):
    """Base class for tool invocation failures."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """The model asked for a tool that is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool '{tool_name}' not found")


class ToolInputError(ToolError):
    """Tool input failed the structural check."""


class ToolTimeoutError(ToolError):
    """A handler step did not finish within the configured timeout."""

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(tool_name, f"Tool '{tool_name}' timed out after {timeout:g}s")
        self.timeout = timeout


class ToolExecutionError(ToolError):
    """The handler raised or produced no result."""

"""
Tool Capability Registry

Holds every tool the model may call during a turn and runs them:
- Emits OpenAI-compatible tool definitions on demand (minimal wrapper)
- Checks input structurally (mapping + required keys), nothing deeper
- Runs single-shot handlers (coroutines) and progressive handlers
  (async generators whose last yielded value is the final result)
- Bounds every handler step with the configured tool timeout

The registry is filled at start-up and read-only afterwards, so concurrent
turns can invoke tools without coordination.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import (
    ToolError,
    ToolExecutionError,
    ToolInputError,
    ToolNotFoundError,
    ToolTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0

_NOTHING = object()


class ToolCapability(BaseModel):
    """A named tool: schema for the model plus the handler that runs it."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    progressive: bool = False
    handler: Callable[..., Any]

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolProgress(BaseModel):
    kind: Literal["progress"] = "progress"
    data: Any = None


class ToolResult(BaseModel):
    kind: Literal["result"] = "result"
    output: Any = None


ToolUpdate = ToolProgress | ToolResult


class ToolRegistry:
    """Name-keyed registry of tool capabilities."""

    def __init__(self, timeout: float = DEFAULT_TOOL_TIMEOUT) -> None:
        if timeout <= 0:
            raise ValueError("tool timeout must be positive")
        self.timeout = timeout
        self._capabilities: dict[str, ToolCapability] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def register(self, capability: ToolCapability) -> None:
        if capability.name in self._capabilities:
            raise ValueError(f"Tool '{capability.name}' is already registered")
        self._capabilities[capability.name] = capability
        logger.debug(
            "Registered tool '%s' (progressive=%s)",
            capability.name,
            capability.progressive,
        )

    def get(self, name: str) -> ToolCapability:
        capability = self._capabilities.get(name)
        if capability is None:
            raise ToolNotFoundError(name)
        return capability

    def names(self) -> list[str]:
        return list(self._capabilities)

    def subset(self, names: Iterable[str]) -> ToolRegistry:
        """
        A registry offering only the named tools.

        Capabilities are shared, not copied. Raises ToolNotFoundError for an
        unknown name.
        """
        view = ToolRegistry(timeout=self.timeout)
        for name in names:
            view._capabilities[name] = self.get(name)
        return view

    def get_openai_tools(self) -> list[dict[str, Any]]:
        """Build the OpenAI tools list on demand from the current registry."""
        return [cap.to_openai_tool() for cap in self._capabilities.values()]

    def _check_input(self, capability: ToolCapability, tool_input: Any) -> dict[str, Any]:
        if tool_input is None:
            tool_input = {}
        if not isinstance(tool_input, Mapping):
            raise ToolInputError(
                capability.name,
                f"Tool '{capability.name}' expects an object, "
                f"got {type(tool_input).__name__}",
            )

        required = capability.input_schema.get("required", [])
        missing = [key for key in required if key not in tool_input]
        if missing:
            raise ToolInputError(
                capability.name,
                f"Tool '{capability.name}' is missing required "
                f"argument(s): {', '.join(missing)}",
            )
        return dict(tool_input)

    async def invoke(self, name: str, tool_input: Any) -> AsyncIterator[ToolUpdate]:
        """
        Run a tool and yield its updates.

        Yields zero or more ToolProgress values followed by exactly one
        ToolResult. Raises a ToolError subclass on failure; arbitrary handler
        exceptions are wrapped in ToolExecutionError.
        """
        capability = self.get(name)
        args = self._check_input(capability, tool_input)

        if not capability.progressive:
            output = await self._step(capability, capability.handler(args))
            yield ToolResult(output=output)
            return

        agen = capability.handler(args)
        previous: Any = _NOTHING
        try:
            while True:
                try:
                    value = await self._step(capability, agen.__anext__())
                except StopAsyncIteration:
                    break
                # One-item lookahead: only the last value is the result
                if previous is not _NOTHING:
                    yield ToolProgress(data=previous)
                previous = value
        finally:
            await agen.aclose()

        if previous is _NOTHING:
            raise ToolExecutionError(
                capability.name, f"Tool '{capability.name}' produced no result"
            )
        yield ToolResult(output=previous)

    async def _step(self, capability: ToolCapability, awaitable: Any) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except TimeoutError as e:
            raise ToolTimeoutError(capability.name, self.timeout) from e
        except (ToolError, StopAsyncIteration, asyncio.CancelledError):
            raise
        except Exception as e:
            raise ToolExecutionError(capability.name, str(e) or type(e).__name__) from e

    async def run(self, name: str, tool_input: Any) -> Any:
        """Invoke a tool and return only its final output."""
        output: Any = None
        async for update in self.invoke(name, tool_input):
            if isinstance(update, ToolResult):
                output = update.output
        return output

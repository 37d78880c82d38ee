"""
MCP Tool Bridge

Registers tools discovered on connected MCP servers as single-shot
capabilities. No client-side schema conversion: the server's inputSchema is
sent to the model as-is and the server does the real validation.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp import McpError, types

from .errors import ToolExecutionError
from .registry import ToolCapability, ToolRegistry

if TYPE_CHECKING:
    from chatrelay.mcp_client import MCPClient

logger = logging.getLogger(__name__)


def pluck_content(res: types.CallToolResult) -> Any:
    """
    Flatten an MCP CallToolResult into a persistable tool output.

    Structured content is returned as-is. Otherwise text items are joined and
    non-text items become descriptive placeholders.
    """
    if res.structuredContent:
        return res.structuredContent

    if not res.content:
        return "✓ done"

    out: list[str] = []
    for item in res.content:
        if isinstance(item, types.TextContent):
            out.append(item.text)
        elif isinstance(item, types.ImageContent):
            out.append(f"[Image: {item.mimeType}, {len(item.data)} bytes]")
        elif isinstance(item, types.EmbeddedResource):
            if isinstance(item.resource, types.TextResourceContents):
                out.append(f"[Embedded resource: {item.resource.text}]")
            else:
                out.append(f"[Embedded resource: {type(item.resource).__name__}]")
        else:
            out.append(f"[{type(item).__name__}]")
    return "\n".join(out)


def _make_handler(
    client: MCPClient, registry_name: str, tool_name: str
) -> Callable[[dict[str, Any]], Awaitable[Any]]:
    async def handler(args: dict[str, Any]) -> Any:
        try:
            result = await client.call_tool(tool_name, args)
        except McpError as e:
            raise ToolExecutionError(registry_name, e.error.message) from e

        content = pluck_content(result)
        if result.isError:
            raise ToolExecutionError(registry_name, str(content))
        return content

    return handler


async def register_mcp_tools(registry: ToolRegistry, clients: list[MCPClient]) -> int:
    """
    Register every tool of every connected client.

    Disconnected clients are skipped. A name already taken in the registry
    is prefixed as '<server>__<tool>'. Returns how many tools were added.
    """
    count = 0
    for client in clients:
        if not client.is_connected:
            logger.warning(
                "Skipping tool registration for disconnected client '%s'", client.name
            )
            continue

        try:
            tools = await client.list_tools()
        except McpError as e:
            logger.error(
                "Error listing tools from client '%s': %s", client.name, e.error.message
            )
            continue

        for tool in tools:
            registry_name = tool.name
            if registry_name in registry:
                logger.warning("Tool name conflict: '%s' already exists", registry_name)
                registry_name = f"{client.name}__{tool.name}"
            if registry_name in registry:
                logger.error("Skipping duplicate tool '%s'", registry_name)
                continue

            registry.register(
                ToolCapability(
                    name=registry_name,
                    description=tool.description or "",
                    input_schema=tool.inputSchema or {"type": "object", "properties": {}},
                    handler=_make_handler(client, registry_name, tool.name),
                )
            )
            count += 1

        logger.info("Registered %d tools from client '%s'", len(tools), client.name)
    return count

"""
MCP client for tool servers launched over stdio.

Connection behaviour comes from the mcp.connection config section:
- max_reconnect_attempts: connection attempts before giving up
- initial_reconnect_delay / max_reconnect_delay: exponential backoff bounds
- connection_timeout: timeout for the initialize handshake
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client

logger = logging.getLogger(__name__)


class MCPClient:
    """One stdio connection to an MCP server, used only for tool discovery and calls."""

    client_version = "0.1.0"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        connection_config: dict[str, Any] | None = None,
    ) -> None:
        self.name: str = name
        self.config: dict[str, Any] = config
        self.session: ClientSession | None = None
        self.exit_stack: AsyncExitStack = AsyncExitStack()
        self._cleanup_lock = asyncio.Lock()
        self._is_connected = False

        conn_config = connection_config or {}
        self._max_reconnect_attempts: int = conn_config.get("max_reconnect_attempts", 5)
        self._initial_reconnect_delay: float = conn_config.get(
            "initial_reconnect_delay", 1.0
        )
        self._max_reconnect_delay: float = conn_config.get("max_reconnect_delay", 30.0)
        self._connection_timeout: float = conn_config.get("connection_timeout", 30.0)

    def _resolve_command(self) -> str | None:
        """Resolve the configured command to an executable path, or None."""
        command = self.config.get("command")
        if not command:
            return None
        if os.path.isabs(command):
            return command if os.path.exists(command) else None
        return shutil.which(command)

    async def connect(self) -> None:
        """
        Connect with exponential backoff.

        Raises the last connection error once max_reconnect_attempts is used up.
        """
        delay = self._initial_reconnect_delay
        for attempt in range(1, self._max_reconnect_attempts + 1):
            try:
                await self._attempt_connection()
                self._is_connected = True
                return
            except Exception as e:
                self._is_connected = False
                # Drop half-opened transports before retrying
                await self.exit_stack.aclose()
                self.exit_stack = AsyncExitStack()

                if attempt >= self._max_reconnect_attempts:
                    logger.error(
                        "Failed to connect to %s after %d attempts: %s",
                        self.name,
                        self._max_reconnect_attempts,
                        e,
                    )
                    raise

                logger.warning(
                    "Connection attempt %d failed for %s: %s. Retrying in %ss...",
                    attempt,
                    self.name,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)

    async def _attempt_connection(self) -> None:
        command = self._resolve_command()
        if not command:
            raise ValueError(f"Command '{self.config.get('command')}' not found in PATH")

        server_params = StdioServerParameters(
            command=command,
            args=self.config.get("args", []),
            env={**os.environ, **self.config["env"]} if self.config.get("env") else None,
        )

        read_stream, write_stream = await self.exit_stack.enter_async_context(
            stdio_client(server_params)
        )
        client_info = types.Implementation(name=self.name, version=self.client_version)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )
        await asyncio.wait_for(self.session.initialize(), timeout=self._connection_timeout)

        logger.info("MCP client '%s' connected", self.name)

    def _require_session(self) -> ClientSession:
        if not self.session:
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Client {self.name} not connected",
                )
            )
        return self.session

    async def list_tools(self) -> list[types.Tool]:
        session = self._require_session()
        try:
            result = await session.list_tools()
            return result.tools
        except McpError:
            raise
        except Exception as e:
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Failed to list tools: {e!s}",
                )
            ) from e

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        session = self._require_session()
        logger.debug("→ MCP[%s]: calling '%s'", self.name, name)
        try:
            return await session.call_tool(name, arguments)
        except McpError:
            raise
        except Exception as e:
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Tool call failed: {e!s}",
                )
            ) from e

    async def close(self) -> None:
        """Close the client connection and clean up resources."""
        async with self._cleanup_lock:
            self._is_connected = False
            try:
                await self.exit_stack.aclose()
            except Exception as e:
                logger.error("Error during cleanup of client %s: %s", self.name, e)
            self.session = None
            logger.info("MCP client '%s' disconnected", self.name)

    @property
    def is_connected(self) -> bool:
        return self._is_connected

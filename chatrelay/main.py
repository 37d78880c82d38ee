"""
Main application entry point - HTTP/WebSocket interface with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Any

from chatrelay.auth import StaticTokenAuthorizer
from chatrelay.chat import ChatOrchestrator
from chatrelay.clients import LLMClient
from chatrelay.config import Configuration
from chatrelay.history import create_repository
from chatrelay.http_server import ChatServer
from chatrelay.mcp_client import MCPClient

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Config module name -> parent loggers; children inherit the level
MODULE_LOGGER_MAP = {
    "chat": ["chatrelay.chat"],
    "history": ["chatrelay.history"],
    "tools": ["chatrelay.tools"],
    "mcp": ["mcp", "chatrelay.mcp_client"],
    "http": ["chatrelay.http_server", "uvicorn"],
}


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply per-module levels and store feature flags.

    Feature flags end up in logging._module_features, where
    chatrelay.chat.logging_utils.should_log_feature reads them.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    features: dict[str, dict[str, bool]] = {}
    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        level_value = LEVEL_MAP.get(module_config.get("level", global_level), logging.WARNING)
        for logger_name in MODULE_LOGGER_MAP.get(module_name, []):
            logging.getLogger(logger_name).setLevel(level_value)

        features[module_name] = dict(module_config.get("features", {}))

    logging._module_features = features  # type: ignore[attr-defined]


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """Reconfigure logging when the runtime config file changes."""
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            _configure_advanced_logging(logging_config)
            logging.info("Logging configuration updated in real-time")
    except Exception as e:
        logging.error("Failed to update logging configuration: %s", e)


def _build_mcp_clients(config: Configuration) -> list[MCPClient]:
    servers_path = config.get_mcp_servers_path()
    if not os.path.exists(servers_path):
        logging.info("No MCP servers config at %s - running with builtin tools only", servers_path)
        return []

    servers_config = config.load_config(servers_path)
    connection_config = config.get_mcp_connection_config()

    clients: list[MCPClient] = []
    for name, server_config in servers_config.get("mcpServers", {}).items():
        if server_config.get("enabled", False):
            clients.append(MCPClient(name, server_config, connection_config))
        else:
            logging.info("Skipping disabled server: %s", name)
    return clients


async def main() -> None:
    """Main entry point with graceful shutdown handling."""
    config = Configuration()

    logging_config = config.get_logging_config()
    logging.basicConfig(
        level=logging.INFO,
        format=logging_config.get("format", "%(asctime)s - %(levelname)s - %(message)s"),
    )
    _configure_advanced_logging(logging_config)
    config.subscribe_to_changes(_on_logging_config_change)

    clients = _build_mcp_clients(config)
    repo = create_repository(config.get_chat_storage_config())
    authorizer = StaticTokenAuthorizer.from_config(config.get_auth_config())

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with LLMClient(config) as llm_client:
        orchestrator = ChatOrchestrator(
            ChatOrchestrator.ChatOrchestratorConfig(
                clients=clients,
                llm_client=llm_client,
                repo=repo,
                configuration=config,
            )
        )
        server = ChatServer(orchestrator, repo, authorizer, config)

        try:
            await config.start_watching()

            server_task = asyncio.create_task(server.start_server())
            shutdown_task = asyncio.create_task(shutdown_event.wait())
            await asyncio.wait(
                [server_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )

            if shutdown_task.done():
                # Let uvicorn run the lifespan shutdown instead of cancelling it
                server.request_shutdown()
            else:
                shutdown_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await shutdown_task

            await server_task

        except KeyboardInterrupt:
            logging.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logging.error("Application error: %s", e)
            raise
        finally:
            await config.stop_watching()
            logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()

"""Configuration management for the chat relay service."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(__file__)

# Provider name -> environment variable holding its API key
PROVIDER_KEY_MAP = {
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class Configuration:
    """
    Event-driven configuration manager with observer pattern.

    Defaults come from the packaged config.yaml. runtime_config.yaml, when
    present, is deep-merged on top and watched for changes; subscribers are
    notified whenever the merged result changes.
    """

    def __init__(
        self,
        config_path: str | None = None,
        runtime_config_path: str | None = None,
    ) -> None:
        self.load_env()
        self._config_path = config_path or os.path.join(_PACKAGE_DIR, "config.yaml")
        self._default_config = self._load_yaml_config(self._config_path)
        self._runtime_config_path = runtime_config_path or os.environ.get(
            "CHATRELAY_RUNTIME_CONFIG", "runtime_config.yaml"
        )
        self._runtime_config_mtime: float | None = None
        self._current_config: dict[str, Any] = {}

        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._watch_task: asyncio.Task[None] | None = None

        self._reload_config(force=True)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(path: str) -> dict[str, Any]:
        with open(path) as file:
            config = yaml.safe_load(file)
        if not isinstance(config, dict):
            raise ValueError(f"Configuration file {path} must contain a dictionary")
        return cast(dict[str, Any], config)

    def _load_runtime_config(self) -> dict[str, Any]:
        """Runtime overrides, or {} when the file is missing or unreadable."""
        try:
            with open(self._runtime_config_path) as file:
                config = yaml.safe_load(file)
        except FileNotFoundError:
            return {}
        except (yaml.YAMLError, OSError) as e:
            logger.error("Ignoring unreadable runtime config %s: %s", self._runtime_config_path, e)
            return {}
        if not isinstance(config, dict):
            return {}
        return {k: v for k, v in config.items() if not k.startswith("_runtime_config")}

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value
        return result

    def _reload_config(self, force: bool = False) -> bool:
        """Re-merge the runtime config if its mtime changed. Returns True on reload."""
        current_mtime = None
        if os.path.exists(self._runtime_config_path):
            current_mtime = os.path.getmtime(self._runtime_config_path)

        if not force and current_mtime == self._runtime_config_mtime:
            return False

        old_config = self._current_config
        self._runtime_config_mtime = current_mtime
        self._current_config = self._deep_merge(self._default_config, self._load_runtime_config())

        if old_config and self._current_config != old_config:
            self._notify_config_change()
        return True

    def _notify_config_change(self) -> None:
        for callback in list(self._config_change_callbacks):
            try:
                callback(self._current_config.copy())
            except Exception as e:
                logger.error("Error in config change callback: %s", e)

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    async def start_watching(self, interval: float = 1.0) -> None:
        """Start the async file watching task for automatic config updates."""
        if self._watch_task is not None:
            return
        self._watch_task = asyncio.create_task(self._watch_config_file(interval))
        logger.info("Started watching %s for changes", self._runtime_config_path)

    async def stop_watching(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None
            logger.info("Stopped watching runtime configuration file")

    async def _watch_config_file(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                if self._reload_config():
                    logger.info("Runtime configuration file changed - config reloaded")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error watching config file: %s", e)
                await asyncio.sleep(5)

    def save_runtime_config(self, config: dict[str, Any]) -> None:
        """Write runtime overrides (with version metadata) and reload."""
        previous = 0
        with contextlib.suppress(FileNotFoundError, yaml.YAMLError, OSError):
            with open(self._runtime_config_path) as f:
                loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                previous = loaded.get("_runtime_config", {}).get("version", 0)

        runtime_config = config.copy()
        runtime_config["_runtime_config"] = {
            "last_modified": time.time(),
            "version": previous + 1,
            "is_runtime_config": True,
        }
        with open(self._runtime_config_path, "w") as file:
            yaml.safe_dump(runtime_config, file, default_flow_style=False, indent=2)

        self._reload_config(force=True)

    @staticmethod
    def load_config(file_path: str) -> dict[str, Any]:
        """Load MCP server configuration from a JSON file."""
        with open(file_path) as f:
            return json.load(f)

    # ---------- getters ----------

    def get_config_dict(self) -> dict[str, Any]:
        return self._current_config

    def _section(self, *path: str) -> dict[str, Any]:
        current: Any = self._current_config
        for key in path:
            current = current.get(key, {}) if isinstance(current, dict) else {}
        return cast(dict[str, Any], current) if isinstance(current, dict) else {}

    @property
    def active_provider(self) -> str:
        return str(self._section("llm").get("active", "openai"))

    @property
    def llm_api_key(self) -> str:
        """
        API key for the active LLM provider.

        A provider may name its own variable with api_key_env; otherwise the
        standard variable for known providers is used.

        Raises:
            ValueError: If no variable is known or it is not set.
        """
        provider = self.active_provider
        env_key = self._section("llm", "providers", provider).get("api_key_env") or (
            PROVIDER_KEY_MAP.get(provider)
        )
        if not env_key:
            raise ValueError(f"Unknown provider '{provider}' - no API key mapping found")

        api_key = os.getenv(env_key)
        if not api_key:
            raise ValueError(
                f"API key '{env_key}' not found in environment variables "
                f"for provider '{provider}'"
            )
        return api_key

    def get_llm_config(self) -> dict[str, Any]:
        """Configuration of the active LLM provider."""
        providers = self._section("llm", "providers")
        provider = self.active_provider
        if provider not in providers:
            raise ValueError(f"Active provider '{provider}' not found in providers config")
        config = dict(providers[provider])
        config.pop("api_key_env", None)
        return config

    def get_connection_pool_config(self) -> dict[str, Any]:
        pool = self._section("llm", "connection_pool")
        return {
            "max_connections": int(pool.get("max_connections", 50)),
            "max_keepalive_connections": int(pool.get("max_keepalive_connections", 20)),
            "keepalive_expiry_seconds": float(pool.get("keepalive_expiry_seconds", 30.0)),
            "request_timeout_seconds": float(pool.get("request_timeout_seconds", 60.0)),
        }

    def get_logging_config(self) -> dict[str, Any]:
        return self._section("logging")

    def get_chat_service_config(self) -> dict[str, Any]:
        return self._section("chat", "service")

    def get_chat_storage_config(self) -> dict[str, Any]:
        return self._section("chat", "storage")

    def get_max_tool_hops(self) -> int:
        """Maximum number of tool rounds per turn (default: 8)."""
        max_hops = self.get_chat_service_config().get("max_tool_hops", 8)
        if not isinstance(max_hops, int) or isinstance(max_hops, bool) or max_hops < 1:
            raise ValueError("max_tool_hops must be a positive integer")
        return max_hops

    def get_tool_timeout(self) -> float:
        """Per-step tool timeout in seconds (default: 30)."""
        timeout = self.get_chat_service_config().get("tool_timeout_seconds", 30)
        if not isinstance(timeout, int | float) or isinstance(timeout, bool) or timeout <= 0:
            raise ValueError("tool_timeout_seconds must be a positive number")
        return float(timeout)

    def get_checkpoint_config(self) -> dict[str, Any]:
        return self._section("chat", "service", "checkpoint")

    def get_http_config(self) -> dict[str, Any]:
        http_config = self._section("chat", "http")
        return {
            "host": http_config.get("host", "127.0.0.1"),
            "port": int(http_config.get("port", 8000)),
            "cors_origins": list(http_config.get("cors_origins", [])),
        }

    def get_auth_config(self) -> dict[str, Any]:
        return self._section("auth")

    def get_builtin_tools_config(self) -> dict[str, Any]:
        return self._section("tools", "builtin")

    def get_mcp_connection_config(self) -> dict[str, Any]:
        """MCP connection settings with validated defaults."""
        connection_config = self._section("mcp", "connection")

        max_attempts = connection_config.get("max_reconnect_attempts", 5)
        initial_delay = connection_config.get("initial_reconnect_delay", 1.0)
        max_delay = connection_config.get("max_reconnect_delay", 30.0)
        connection_timeout = connection_config.get("connection_timeout", 30.0)

        if max_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if initial_delay <= 0:
            raise ValueError("initial_reconnect_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_reconnect_delay must be >= initial_reconnect_delay")
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")

        return {
            "max_reconnect_attempts": max_attempts,
            "initial_reconnect_delay": initial_delay,
            "max_reconnect_delay": max_delay,
            "connection_timeout": connection_timeout,
        }

    def get_mcp_servers_path(self) -> str:
        return str(self._section("mcp").get("servers_config", "servers_config.json"))

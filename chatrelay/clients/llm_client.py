"""
Event-driven LLM HTTP client for OpenAI-compatible chat completions.

Streams raw chunk dicts from /chat/completions (SSE "data: " lines) and
follows runtime configuration changes: connection-level changes (base_url,
API key, timeout) replace the HTTP client, but only once no stream is active.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from chatrelay.config import Configuration

logger = logging.getLogger(__name__)

# Provider config keys that are connection settings, not request parameters
_EXCLUDED_PAYLOAD_KEYS = frozenset({"base_url", "model", "timeout"})
_CLIENT_BREAKING_KEYS = ("base_url", "timeout")


class LLMClientError(Exception):
    """Upstream model request failed (HTTP error, bad stream, empty stream)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMClient:
    """Streaming chat-completions client that follows configuration changes."""

    def __init__(
        self,
        configuration: Configuration,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.configuration = configuration
        self.config: dict[str, Any] = configuration.get_llm_config()
        self._api_key: str = configuration.llm_api_key
        self._pool_config = configuration.get_connection_pool_config()
        self._active_streams = 0
        self._pending_config: dict[str, Any] | None = None
        self._config_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self.client: httpx.AsyncClient = http_client or self._create_http_client()
        self.configuration.subscribe_to_changes(self._on_config_change)

    def _create_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config["base_url"],
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.config.get("timeout", self._pool_config["request_timeout_seconds"]),
            http2=True,
            limits=httpx.Limits(
                max_connections=self._pool_config["max_connections"],
                max_keepalive_connections=self._pool_config["max_keepalive_connections"],
                keepalive_expiry=self._pool_config["keepalive_expiry_seconds"],
            ),
            trust_env=False,
        )

    @property
    def model(self) -> str:
        return str(self.config.get("model", "unknown"))

    # ---------- configuration changes ----------

    def _on_config_change(self, _new_config: dict[str, Any]) -> None:
        """Event handler for configuration changes."""
        task = asyncio.create_task(self._handle_config_change())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _handle_config_change(self) -> None:
        async with self._config_lock:
            try:
                provider_config = self.configuration.get_llm_config()
                api_key = self.configuration.llm_api_key
            except ValueError as e:
                logger.error("Ignoring invalid LLM configuration change: %s", e)
                return

            if provider_config == self.config and api_key == self._api_key:
                return

            breaking = api_key != self._api_key or any(
                provider_config.get(k) != self.config.get(k) for k in _CLIENT_BREAKING_KEYS
            )
            if not breaking:
                logger.info("LLM request parameters updated (model=%s)", provider_config.get("model"))
                self.config = provider_config
                return

            if self._active_streams > 0:
                logger.warning(
                    "Deferring LLM client replacement due to %d active stream(s)",
                    self._active_streams,
                )
                self._pending_config = {"config": provider_config, "api_key": api_key}
                return

            await self._replace_client(provider_config, api_key)

    async def _replace_client(self, provider_config: dict[str, Any], api_key: str) -> None:
        logger.info("Replacing LLM HTTP client for %s", provider_config.get("base_url"))
        await self.client.aclose()
        self.config = provider_config
        self._api_key = api_key
        self.client = self._create_http_client()

    async def _apply_pending_config(self) -> None:
        async with self._config_lock:
            if self._pending_config and self._active_streams == 0:
                pending, self._pending_config = self._pending_config, None
                await self._replace_client(pending["config"], pending["api_key"])

    # ---------- requests ----------

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Pass every provider parameter through except connection settings."""
        payload: dict[str, Any] = {
            "model": self.config["model"],
            "messages": messages,
            "stream": True,
        }
        for key, value in self.config.items():
            if key not in _EXCLUDED_PAYLOAD_KEYS and value is not None:
                payload[key] = value
        if tools:
            payload["tools"] = tools
        return payload

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[dict[str, Any]]:
        """
        Stream one chat completion and yield each raw chunk dict.

        Raises LLMClientError on a non-200 status, malformed stream data,
        transport failure, or a stream that carries no chunks.
        """
        self._active_streams += 1
        logger.debug("→ LLM: stream started, active streams: %d", self._active_streams)
        try:
            payload = self._build_payload(messages, tools)
            async with self.client.stream(
                "POST",
                "/chat/completions",
                json=payload,
                headers={"Accept": "text/event-stream", "Accept-Encoding": "identity"},
            ) as response:
                if response.status_code != httpx.codes.OK:
                    body = await response.aread()
                    raise LLMClientError(
                        f"Streaming API error {response.status_code}: "
                        f"{body[:500].decode(errors='replace')}",
                        status_code=response.status_code,
                    )

                chunk_count = 0
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[6:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk: dict[str, Any] = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise LLMClientError(f"Invalid JSON in stream chunk: {e}") from e

                    if "error" in chunk:
                        message = chunk["error"].get("message", "unknown error")
                        raise LLMClientError(f"Upstream error: {message}")
                    if "choices" in chunk:
                        chunk_count += 1
                        yield chunk

                if chunk_count == 0:
                    raise LLMClientError("No streaming chunks received from API")

        except httpx.HTTPError as e:
            logger.error("HTTP error during streaming: %s (%s)", e, type(e).__name__)
            raise LLMClientError(f"HTTP error: {e!s}") from e
        finally:
            self._active_streams -= 1
            logger.debug("← LLM: stream ended, active streams: %d", self._active_streams)
            if self._active_streams == 0 and self._pending_config:
                task = asyncio.create_task(self._apply_pending_config())
                self._background_tasks.add(task)
                task.add_done_callback(self._background_tasks.discard)

    async def close(self) -> None:
        """Close the HTTP client and unsubscribe from config changes."""
        self.configuration.unsubscribe_from_changes(self._on_config_change)
        await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

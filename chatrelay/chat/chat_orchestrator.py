"""
Chat Orchestrator

Coordination layer for chat turns:
1. Resolves the thread (lazily created, owner checked)
2. Persists the user message
3. Rebuilds the provider conversation from stored history
4. Starts a detached turn: emitter -> stream tee -> reconciliation buffer
   -> turn recorder

Turns share only the message store and the tool registry. Each turn owns its
buffer, passed explicitly down the pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from chatrelay.history.models import Message, TextPart, Thread, ToolPart
from chatrelay.mcp_client import MCPClient
from chatrelay.tools.builtin import register_builtin_tools
from chatrelay.tools.mcp_tools import register_mcp_tools
from chatrelay.tools.registry import ToolRegistry

from .diagnostics import DiagnosticsSink
from .emitter import ResponseEmitter, tool_result_content
from .errors import MessageConflictError, ThreadAccessError
from .logging_utils import log_performance
from .models import (
    AssistantMessage,
    ChatRequest,
    ConversationHistory,
    FunctionCall,
    StreamEvent,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UserMessage,
)
from .persistence_guard import DEFAULT_FALLBACK_TEXT, PersistenceGuard, assert_persistable
from .reconciliation import ReconciliationBuffer
from .stream_tee import CheckpointPolicy, SendCallback, StreamTee
from .turn_recorder import TurnRecorder

if TYPE_CHECKING:
    from chatrelay.clients.llm_client import LLMClient
    from chatrelay.config import Configuration
    from chatrelay.history.repository import MessageStore

logger = logging.getLogger(__name__)


class TurnHandle:
    """A running turn. The turn completes whether or not anyone reads live()."""

    def __init__(
        self,
        thread_id: str,
        user_message_id: str,
        assistant_message_id: str,
        tee: StreamTee,
    ) -> None:
        self.thread_id = thread_id
        self.user_message_id = user_message_id
        self.assistant_message_id = assistant_message_id
        self._tee = tee

    def live(self) -> AsyncIterator[StreamEvent]:
        return self._tee.live()

    async def forward(self, send: SendCallback) -> bool:
        return await self._tee.forward(send)

    def detach(self) -> None:
        self._tee.detach()

    async def wait(self) -> None:
        await self._tee.wait()

    async def cancel(self) -> None:
        await self._tee.cancel()

    @property
    def done(self) -> bool:
        return self._tee.done


def build_conversation(
    messages: list[Message], system_prompt: str | None = None
) -> ConversationHistory:
    """
    Convert stored messages into the provider conversation.

    Assistant tool parts are replayed as an assistant message carrying the
    tool calls followed by one tool message per call, keeping the text/tool
    interleaving of the stored parts.
    """
    conv = ConversationHistory(
        system_prompt=SystemMessage(content=system_prompt) if system_prompt else None
    )

    for message in messages:
        if message.role == "user":
            conv.add_message(UserMessage(content=message.text()))
            continue

        text: list[str] = []
        calls: list[ToolPart] = []

        def flush() -> None:
            content = "".join(text) or None
            if not calls:
                if content:
                    conv.add_message(AssistantMessage(content=content))
            else:
                conv.add_message(
                    AssistantMessage(
                        content=content,
                        tool_calls=[
                            ToolCall(
                                id=part.tool_call_id,
                                function=FunctionCall(
                                    name=part.tool_name,
                                    arguments=json.dumps(part.input, default=str),
                                ),
                            )
                            for part in calls
                        ],
                    )
                )
                for part in calls:
                    conv.add_message(
                        ToolMessage(
                            content=tool_result_content(part.output, part.error_text),
                            tool_call_id=part.tool_call_id,
                        )
                    )
            text.clear()
            calls.clear()

        for part in message.parts:
            if isinstance(part, TextPart):
                # Text after tool results starts a new assistant message
                if calls:
                    flush()
                text.append(part.text)
            elif part.has_result:
                calls.append(part)
        flush()

    return conv


class ChatOrchestrator:
    """Owns the tool registry and starts turns against the message store."""

    class ChatOrchestratorConfig(BaseModel):
        model_config = ConfigDict(arbitrary_types_allowed=True)

        clients: list[MCPClient]
        llm_client: Any  # LLMClient or any object with stream_chat() and model
        repo: Any  # MessageStore protocol
        configuration: Any  # Configuration
        diagnostics: DiagnosticsSink | None = None

    def __init__(self, service_config: ChatOrchestratorConfig):
        self.clients = service_config.clients
        self.llm_client: LLMClient = service_config.llm_client
        self.repo: MessageStore = service_config.repo
        self.configuration: Configuration = service_config.configuration
        self.diagnostics = service_config.diagnostics or DiagnosticsSink()
        self.guard = PersistenceGuard(self.diagnostics)

        self.chat_conf: dict[str, Any] = self.configuration.get_chat_service_config()
        self.registry = ToolRegistry(timeout=self.configuration.get_tool_timeout())
        self.emitter = ResponseEmitter(
            self.llm_client,
            max_tool_hops=self.configuration.get_max_tool_hops(),
            chat_conf=self.chat_conf,
        )

        self._connected_clients: list[MCPClient] = []
        self._turns: set[TurnHandle] = set()
        self._init_lock = asyncio.Lock()
        self._ready = asyncio.Event()

    async def initialize(self) -> None:
        """Connect MCP clients and register every tool source."""
        async with self._init_lock:
            if self._ready.is_set():
                return

            logger.info("→ Orchestrator: connecting to %d MCP clients", len(self.clients))
            connection_semaphore = asyncio.Semaphore(5)

            async def connect_with_semaphore(client: MCPClient) -> None:
                async with connection_semaphore:
                    await client.connect()

            async with log_performance("MCP client connections"):
                results = await asyncio.gather(
                    *(connect_with_semaphore(c) for c in self.clients),
                    return_exceptions=True,
                )
            for client, result in zip(self.clients, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning("Client '%s' failed to connect: %s", client.name, result)
                else:
                    self._connected_clients.append(client)

            register_builtin_tools(self.registry, self.configuration.get_builtin_tools_config())
            await register_mcp_tools(self.registry, self._connected_clients)

            logger.info(
                "← Orchestrator: ready - %d tools from %d/%d MCP clients",
                len(self.registry),
                len(self._connected_clients),
                len(self.clients),
            )
            self._ready.set()

    async def _resolve_thread(self, user_id: str, request: ChatRequest) -> Thread:
        thread = await self.repo.select_thread(request.thread_id)
        if thread is None:
            thread = await self.repo.insert_thread(
                Thread(id=request.thread_id, user_id=user_id, title=request.message.text[:80])
            )
            logger.info("← Repository: created thread %s for %s", thread.id, user_id)
        if thread.user_id != user_id:
            raise ThreadAccessError(request.thread_id)
        return thread

    def _tools_for(self, request: ChatRequest) -> ToolRegistry:
        """The tools offered to the model for one turn."""
        if request.tool_choice == "none":
            return self.registry.subset([])
        if request.tools is None:
            return self.registry

        unknown = [name for name in request.tools if name not in self.registry]
        if unknown:
            logger.warning("Ignoring unknown tool(s) requested: %s", ", ".join(unknown))
        return self.registry.subset(name for name in request.tools if name in self.registry)

    async def start_turn(self, user_id: str, request: ChatRequest) -> TurnHandle:
        """Persist the user message and start streaming the assistant reply."""
        await self._ready.wait()
        thread = await self._resolve_thread(user_id, request)

        existing = await self.repo.get_message(request.message.id)
        if existing is not None:
            if existing.thread_id != thread.id:
                raise ThreadAccessError(thread.id)
            # Stored messages are frozen; only an identical retry may reuse the id
            if existing.role != "user" or existing.text() != request.message.text:
                raise MessageConflictError(existing.id)
            logger.info("User message %s already stored, retrying the turn", existing.id)
        else:
            user_message = self.guard.guard(
                Message(
                    id=request.message.id,
                    thread_id=thread.id,
                    role="user",
                    parts=[TextPart(text=request.message.text)],
                    metadata=request.metadata,
                )
            )
            assert_persistable(user_message)
            await self.repo.upsert_message(user_message)

        history = await self.repo.select_messages_by_thread(
            thread.id, limit=int(self.chat_conf.get("history_limit", 50))
        )
        conv = build_conversation(history, self.chat_conf.get("system_prompt"))

        tools = self._tools_for(request)

        buffer = ReconciliationBuffer(thread.id, str(uuid.uuid4()), self.diagnostics)
        recorder = TurnRecorder(
            self.repo,
            self.guard,
            buffer,
            model=self.llm_client.model,
            fallback_text=self.chat_conf.get("fallback_text", DEFAULT_FALLBACK_TEXT),
            metadata={"tool_choice": request.tool_choice, "tools_available": len(tools)},
        )
        tee = StreamTee(
            self.emitter.emit(conv, tools),
            buffer,
            on_checkpoint=recorder.checkpoint,
            on_complete=recorder.complete,
            checkpoint_policy=CheckpointPolicy.from_config(
                self.configuration.get_checkpoint_config()
            ),
        )

        handle = TurnHandle(thread.id, request.message.id, buffer.message_id, tee)
        self._turns.add(handle)
        tee.start().add_done_callback(lambda _task: self._turns.discard(handle))

        logger.info(
            "→ Orchestrator: started turn %s in thread %s", buffer.message_id, thread.id
        )
        return handle

    async def cleanup(self) -> None:
        """Wait briefly for running turns, then close MCP clients and the LLM client."""
        logger.info("→ Orchestrator: starting cleanup")

        running = list(self._turns)
        if running:
            timeout = float(self.chat_conf.get("shutdown_timeout_seconds", 10))
            logger.info("Waiting up to %ss for %d running turn(s)", timeout, len(running))
            waiters = {asyncio.ensure_future(t.wait()): t for t in running}
            done, pending = await asyncio.wait(waiters, timeout=timeout)
            for future in done:
                if future.exception() is not None:
                    logger.error("Turn failed during shutdown: %s", future.exception())

            if pending:
                # Cancelled turns persist their partial message as incomplete
                logger.warning("Cancelling %d turn(s) still running at shutdown", len(pending))
                for future in pending:
                    future.cancel()
                results = await asyncio.gather(
                    *(waiters[future].cancel() for future in pending),
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, Exception):
                        logger.error("Turn failed during shutdown: %s", result)

        for client in self._connected_clients:
            await client.close()

        try:
            await self.llm_client.close()
        except Exception as e:
            logger.warning("Error closing LLM client: %s", e)

        logger.info("← Orchestrator: cleanup completed")

    def get_tool_count(self) -> int:
        return len(self.registry)

    @property
    def active_turns(self) -> int:
        return len(self._turns)

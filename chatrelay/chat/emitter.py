"""
Incremental Response Emitter

Drives one assistant turn against the model and turns it into public stream
events:
- Content deltas stream out immediately as text-delta events
- Tool call deltas are accumulated by index until the hop ends
- Each complete call is announced, executed through the tool registry
  (progress forwarded as it arrives) and completed with output or error
- Tool results go back into the conversation and the next hop is requested,
  up to chat.service.max_tool_hops

Tool failures are reported per call and never abort the turn. Any other
exception (model provider failure, cancellation) ends the sequence early and
is turned into a terminal error event by the Stream Tee.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Any

from chatrelay.tools.errors import ToolError
from chatrelay.tools.registry import ToolProgress, ToolRegistry

from .logging_utils import (
    log_llm_reply,
    log_tool_args_error,
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
)
from .models import (
    AssistantMessage,
    ConversationHistory,
    FinishEvent,
    FunctionCall,
    TextDeltaEvent,
    TokenUsage,
    ToolCall,
    ToolCallCompletedEvent,
    ToolCallDelta,
    ToolCallProgressEvent,
    ToolCallStartedEvent,
    ToolMessage,
)

if TYPE_CHECKING:
    from chatrelay.clients.llm_client import LLMClient

    from .models import StreamEvent

logger = logging.getLogger(__name__)


def _new_span_id() -> str:
    return f"span_{uuid.uuid4().hex[:12]}"


def tool_result_content(output: Any, error: str | None) -> str:
    """Render a tool outcome as the content of a tool message for the model."""
    if error is not None:
        return f"Tool execution failed: {error}"
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


class ResponseEmitter:
    """Streams a turn's events; one instance may serve many turns."""

    def __init__(
        self,
        llm_client: LLMClient,
        max_tool_hops: int = 8,
        chat_conf: dict[str, Any] | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.max_tool_hops = max_tool_hops
        self.chat_conf = chat_conf or {}

    async def emit(
        self, conv: ConversationHistory, tools: ToolRegistry
    ) -> AsyncGenerator[StreamEvent]:
        """Yield the events of one turn, ending with exactly one FinishEvent."""
        tools_payload = tools.get_openai_tools() or None
        usage = TokenUsage()
        span_id = _new_span_id()
        hops = 0

        while True:
            logger.info("→ LLM: starting streaming request (hop %d)", hops)
            content_parts: list[str] = []
            current_tool_calls: list[dict[str, Any]] = []
            finish_reason: str | None = None

            async for chunk in self.llm_client.stream_chat(conv.get_dict_format(), tools_payload):
                usage.add(chunk.get("usage"))
                choices: list[dict[str, Any]] = chunk.get("choices") or []
                if not choices:
                    continue

                choice = choices[0]
                delta: dict[str, Any] = choice.get("delta") or {}

                content = delta.get("content")
                if content:
                    content_parts.append(content)
                    yield TextDeltaEvent(span_id=span_id, text=content)

                for tool_call_delta in delta.get("tool_calls") or []:
                    self._accumulate_tool_call_delta(
                        current_tool_calls, ToolCallDelta.model_validate(tool_call_delta)
                    )

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]

            logger.info(
                "← LLM: streaming completed (hop %d), finish_reason=%s", hops, finish_reason
            )

            complete_calls = [
                call
                for call in current_tool_calls
                if call["id"] and call["function"]["name"]
            ]
            hop_content = "".join(content_parts)
            log_llm_reply(
                hop_content,
                complete_calls,
                f"hop {hops}",
                self.llm_client.model,
                self.chat_conf.get("logging", {}).get("llm_reply_truncate_length", 500),
            )

            if not complete_calls:
                yield FinishEvent(finish_reason=finish_reason or "stop", usage=usage, hops=hops)
                return

            if hops >= self.max_tool_hops:
                warning = (
                    f"⚠️ Reached maximum tool call limit ({self.max_tool_hops}). "
                    "Stopping to prevent infinite recursion."
                )
                logger.warning("Maximum tool hops (%d) reached, stopping", self.max_tool_hops)
                yield TextDeltaEvent(
                    span_id=span_id, text=f"\n\n{warning}" if hop_content else warning
                )
                yield FinishEvent(finish_reason="tool_limit_reached", usage=usage, hops=hops)
                return

            conv.add_message(
                AssistantMessage(
                    content=hop_content or None,
                    tool_calls=[
                        ToolCall(
                            id=call["id"],
                            function=FunctionCall(
                                name=call["function"]["name"],
                                arguments=call["function"]["arguments"] or "{}",
                            ),
                        )
                        for call in complete_calls
                    ],
                )
            )

            for index, call in enumerate(complete_calls):
                async for event in self._run_tool_call(conv, tools, call, index, len(complete_calls)):
                    yield event

            hops += 1
            # Text after tool activity belongs to a new span
            span_id = _new_span_id()

    async def _run_tool_call(
        self,
        conv: ConversationHistory,
        tools: ToolRegistry,
        call: dict[str, Any],
        index: int,
        total: int,
    ) -> AsyncGenerator[StreamEvent]:
        call_id: str = call["id"]
        tool_name: str = call["function"]["name"]

        try:
            args: Any = json.loads(call["function"]["arguments"] or "{}")
        except json.JSONDecodeError as e:
            log_tool_args_error(tool_name, e)
            args = {}

        yield ToolCallStartedEvent(tool_call_id=call_id, tool_name=tool_name, input=args)

        log_tool_arguments(tool_name, args, f"call {index + 1}/{total}")
        log_tool_execution_start(tool_name, index, total)

        output: Any = None
        error: str | None = None
        try:
            async for update in tools.invoke(tool_name, args):
                if isinstance(update, ToolProgress):
                    yield ToolCallProgressEvent(tool_call_id=call_id, data=update.data)
                else:
                    output = update.output
        except ToolError as e:
            error = str(e)
            log_tool_execution_error(tool_name, error)
        else:
            log_tool_execution_success(tool_name, output)

        yield ToolCallCompletedEvent(
            tool_call_id=call_id, tool_name=tool_name, output=output, error=error
        )
        conv.add_message(ToolMessage(content=tool_result_content(output, error), tool_call_id=call_id))

    def _accumulate_tool_call_delta(
        self, current_tool_calls: list[dict[str, Any]], delta: ToolCallDelta
    ) -> None:
        """Merge one streamed tool call fragment into the call at its index."""
        index = delta.index if delta.index is not None else len(current_tool_calls)

        while len(current_tool_calls) <= index:
            current_tool_calls.append(
                {"id": None, "type": "function", "function": {"name": None, "arguments": ""}}
            )

        current_call = current_tool_calls[index]
        if delta.id:
            current_call["id"] = delta.id
        if delta.function:
            if delta.function.name:
                current_call["function"]["name"] = delta.function.name
            if delta.function.arguments:
                current_call["function"]["arguments"] += delta.function.arguments

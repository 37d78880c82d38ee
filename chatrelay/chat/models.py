"""
Chat Service Data Models

Data structures for the chat pipeline: LLM API message types, streaming
deltas, the public stream events a turn emits, and the client request body.
All strongly typed with Pydantic.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

# ==============================================================================
# CORE CHAT MESSAGES (LLM API Types)
# ==============================================================================


class SystemMessage(BaseModel):
    """System message for setting context."""

    role: Literal["system"] = "system"
    content: str


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: str


class FunctionCall(BaseModel):
    """Function call within a tool call."""

    name: str
    arguments: str = Field(default="{}")  # JSON string


class ToolCall(BaseModel):
    """Tool call from LLM."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class AssistantMessage(BaseModel):
    """Assistant message with optional tool calls."""

    role: Literal["assistant"] = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None

    @field_validator("tool_calls")
    @classmethod
    def validate_tool_calls(cls, v: list[ToolCall] | None) -> list[ToolCall] | None:
        """Convert empty tool_calls list to None to avoid API errors."""
        if v is not None and len(v) == 0:
            return None
        return v

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict format for LLM client compatibility."""
        result: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            result["tool_calls"] = [tc.model_dump() for tc in self.tool_calls]
        return result


class ToolMessage(BaseModel):
    """Tool response message."""

    role: Literal["tool"] = "tool"
    content: str
    tool_call_id: str


ChatCompletionMessage = SystemMessage | UserMessage | AssistantMessage | ToolMessage


class ConversationHistory(BaseModel):
    """Provider conversation for one turn, grown in place across tool hops."""

    system_prompt: SystemMessage | None = None
    messages: list[ChatCompletionMessage] = Field(default_factory=list)  # type: ignore

    def add_message(self, message: ChatCompletionMessage) -> None:
        self.messages.append(message)

    def get_dict_format(self) -> list[dict[str, Any]]:
        """Get conversation in dictionary format for LLM client."""
        result: list[dict[str, Any]] = []
        if self.system_prompt:
            result.append(self.system_prompt.model_dump())
        for msg in self.messages:
            # AssistantMessage.to_dict drops empty tool_calls
            if isinstance(msg, AssistantMessage):
                result.append(msg.to_dict())
            else:
                result.append(msg.model_dump())
        return result


# ==============================================================================
# STREAMING MODELS
# ==============================================================================


class FunctionCallDelta(BaseModel):
    """Partial function call data in streaming response."""

    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    """Partial tool call data in streaming response."""

    index: int | None = None
    id: str | None = None
    type: Literal["function"] | None = None
    function: FunctionCallDelta | None = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: dict[str, Any] | None) -> None:
        """Accumulate a provider usage dict (per-hop usage sums over the turn)."""
        if not usage:
            return
        self.prompt_tokens += int(usage.get("prompt_tokens") or 0)
        self.completion_tokens += int(usage.get("completion_tokens") or 0)
        self.total_tokens += int(usage.get("total_tokens") or 0)


# ==============================================================================
# PUBLIC STREAM EVENTS
# ==============================================================================


class TextDeltaEvent(BaseModel):
    """A fragment of assistant text belonging to one text span."""

    type: Literal["text-delta"] = "text-delta"
    span_id: str
    text: str


class ToolCallStartedEvent(BaseModel):
    type: Literal["tool-call-started"] = "tool-call-started"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ToolCallProgressEvent(BaseModel):
    """Transient progress value from a progressive tool. Never persisted."""

    type: Literal["tool-call-progress"] = "tool-call-progress"
    tool_call_id: str
    data: Any = None


class ToolCallCompletedEvent(BaseModel):
    type: Literal["tool-call-completed"] = "tool-call-completed"
    tool_call_id: str
    tool_name: str
    output: Any = None
    error: str | None = None


class FinishEvent(BaseModel):
    type: Literal["finish"] = "finish"
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    hops: int = 0


class ErrorEvent(BaseModel):
    """Terminal failure of a turn."""

    type: Literal["error"] = "error"
    error: str
    error_type: str = "general"


StreamEvent = Annotated[
    TextDeltaEvent
    | ToolCallStartedEvent
    | ToolCallProgressEvent
    | ToolCallCompletedEvent
    | FinishEvent
    | ErrorEvent,
    Field(discriminator="type"),
]

STREAM_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


# ==============================================================================
# CLIENT REQUESTS
# ==============================================================================


class ChatRequestMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str = Field(min_length=1)


class ChatRequest(BaseModel):
    """Body of a chat turn request from the client."""

    thread_id: str = Field(min_length=1)
    message: ChatRequestMessage
    metadata: dict[str, Any] = Field(default_factory=dict)
    tool_choice: Literal["auto", "none"] = "auto"
    # Allow-list of tool names for this turn; None offers every registered tool
    tools: list[str] | None = None

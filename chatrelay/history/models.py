#!/usr/bin/env python3
"""
Chat History Data Models

This module contains all Pydantic models for persisted threads and messages.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# ---------- Type definitions ----------

Role = Literal["user", "assistant"]
ToolState = Literal["pending-call", "output-available", "output-error"]

# Tool states that carry a result and therefore must carry the call input too
RESULT_STATES: frozenset[str] = frozenset({"output-available", "output-error"})


# ---------- Content models ----------


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolPart(BaseModel):
    type: Literal["tool"] = "tool"
    tool_call_id: str
    tool_name: str
    input: Any = None
    state: ToolState = "pending-call"
    output: Any | None = None
    error_text: str | None = None

    @property
    def has_result(self) -> bool:
        return self.state in RESULT_STATES


Part = Annotated[TextPart | ToolPart, Field(discriminator="type")]


# ---------- Main models ----------


class Thread(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    title: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    thread_id: str
    role: Role
    parts: list[Part] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def tool_parts(self) -> list[ToolPart]:
        return [p for p in self.parts if isinstance(p, ToolPart)]

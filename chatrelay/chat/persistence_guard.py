"""
Persistence Guard

Last check before an assistant message reaches the store. A tool part that
carries a result must also carry the input of the call that produced it.

guard() repairs: invalid parts are dropped, logged and diagnosed.
assert_persistable() fails loudly: it runs after guard() on every write path,
so a violation there is a programming error in the pipeline itself.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from chatrelay.history.models import Message, TextPart, ToolPart

from .diagnostics import DiagnosticsSink, ReconciliationDiagnostic

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_TEXT = "The response could not be completed."


class PersistenceInvariantError(AssertionError):
    """A message about to be persisted still has a result part without input."""


def is_empty_input(value: Any) -> bool:
    """None, an empty mapping, an empty sequence, or a blank string."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, Mapping | Sequence):
        return len(value) == 0
    return False


def _violates(part: Any) -> bool:
    return isinstance(part, ToolPart) and part.has_result and is_empty_input(part.input)


class PersistenceGuard:
    def __init__(self, diagnostics: DiagnosticsSink) -> None:
        self.diagnostics = diagnostics

    def guard(self, message: Message) -> Message:
        """Return a copy of the message without result parts that lack input."""
        kept = []
        for part in message.parts:
            if not _violates(part):
                kept.append(part)
                continue

            logger.warning(
                "Dropping %s tool part %s[%s] with empty input before persisting %s",
                part.state,
                part.tool_name,
                part.tool_call_id,
                message.id,
            )
            self.diagnostics.emit(
                ReconciliationDiagnostic(
                    kind="guard_repair",
                    reason=f"{part.state} part has empty input",
                    tool_name=part.tool_name,
                    tool_call_id=part.tool_call_id,
                    thread_id=message.thread_id,
                    message_id=message.id,
                )
            )

        if len(kept) == len(message.parts):
            return message
        return message.model_copy(update={"parts": kept})


def assert_persistable(message: Message) -> None:
    for part in message.parts:
        if _violates(part):
            raise PersistenceInvariantError(
                f"Tool part {part.tool_name}[{part.tool_call_id}] in message "
                f"{message.id} has state {part.state} but no input"
            )


def ensure_renderable_parts(
    message: Message, fallback_text: str = DEFAULT_FALLBACK_TEXT
) -> Message:
    """Give an assistant message with no parts a single fallback text part."""
    if message.role != "assistant" or message.parts:
        return message
    return message.model_copy(update={"parts": [TextPart(text=fallback_text)]})


def build_error_metadata(error_type: str, error: str) -> dict[str, Any]:
    return {
        "error_info": {
            "type": error_type,
            "message": error,
            "persisted_at": datetime.now(UTC).isoformat(),
        }
    }

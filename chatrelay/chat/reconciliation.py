"""
Reconciliation Buffer

Turns the public event stream of one turn into the parts of one assistant
message. Tool results are matched to the call that announced them:

    (unseen) --started--> CALL_RECEIVED(input) --completed--> RESULT_RECEIVED
    (unseen) --completed/progress--> ORPHAN

Only RESULT_RECEIVED produces a tool part, and only when the call carried a
non-empty input. Everything else is dropped with one diagnostic; nothing is
ever fabricated to fill a gap.

The buffer belongs to exactly one turn and is fed from a single task.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from chatrelay.history.models import Part, TextPart, ToolPart

from .diagnostics import DiagnosticKind, DiagnosticsSink, ReconciliationDiagnostic
from .models import (
    ErrorEvent,
    FinishEvent,
    TextDeltaEvent,
    ToolCallCompletedEvent,
    ToolCallProgressEvent,
    ToolCallStartedEvent,
)
from .persistence_guard import is_empty_input

logger = logging.getLogger(__name__)


class CallState(enum.Enum):
    CALL_RECEIVED = "call-received"
    RESULT_RECEIVED = "result-received"
    ORPHAN = "orphan"


class _CallRecord:
    __slots__ = ("tool_call_id", "tool_name", "input", "state", "output", "error")

    def __init__(self, tool_call_id: str, tool_name: str, tool_input: Any):
        self.tool_call_id = tool_call_id
        self.tool_name = tool_name
        self.input = tool_input
        self.state = CallState.CALL_RECEIVED
        self.output: Any = None
        self.error: str | None = None

    def to_part(self) -> ToolPart:
        return ToolPart(
            tool_call_id=self.tool_call_id,
            tool_name=self.tool_name,
            input=self.input,
            state="output-error" if self.error is not None else "output-available",
            output=self.output,
            error_text=self.error,
        )


class ReconciliationBuffer:
    """Per-turn accumulator of text spans and tool call/result pairs."""

    def __init__(
        self,
        thread_id: str,
        message_id: str,
        diagnostics: DiagnosticsSink,
    ) -> None:
        self.thread_id = thread_id
        self.message_id = message_id
        self.diagnostics = diagnostics

        # First-seen emission order: ("text", span_id) or ("tool", tool_call_id)
        self._order: list[tuple[str, str]] = []
        self._spans: dict[str, list[str]] = {}
        self._calls: dict[str, _CallRecord] = {}
        self._orphans: set[str] = set()

        self.finish_event: FinishEvent | None = None
        self.error_event: ErrorEvent | None = None
        self._finalized = False

    # ---------- feeding ----------

    def feed(self, event: Any) -> None:
        if self._finalized:
            raise RuntimeError(f"Buffer for message {self.message_id} is already finalized")

        if isinstance(event, TextDeltaEvent):
            self._on_text(event)
        elif isinstance(event, ToolCallStartedEvent):
            self._on_started(event)
        elif isinstance(event, ToolCallProgressEvent):
            self._on_progress(event)
        elif isinstance(event, ToolCallCompletedEvent):
            self._on_completed(event)
        elif isinstance(event, FinishEvent):
            self.finish_event = event
        elif isinstance(event, ErrorEvent):
            self.error_event = event
        else:
            logger.debug("Ignoring unknown event type %s", type(event).__name__)

    def _on_text(self, event: TextDeltaEvent) -> None:
        fragments = self._spans.get(event.span_id)
        if fragments is None:
            fragments = self._spans[event.span_id] = []
            self._order.append(("text", event.span_id))
        fragments.append(event.text)

    def _on_started(self, event: ToolCallStartedEvent) -> None:
        call_id = event.tool_call_id
        if call_id in self._orphans:
            return
        if call_id in self._calls:
            self._diagnose(
                "duplicate_call",
                "tool call id announced more than once",
                call_id,
                event.tool_name,
            )
            return

        self._calls[call_id] = _CallRecord(call_id, event.tool_name, event.input)
        self._order.append(("tool", call_id))

    def _on_progress(self, event: ToolCallProgressEvent) -> None:
        # Progress is transient; it only matters when it reveals an orphan
        if event.tool_call_id not in self._calls:
            self._mark_orphan(event.tool_call_id, None, "progress without a preceding call")

    def _on_completed(self, event: ToolCallCompletedEvent) -> None:
        call_id = event.tool_call_id
        record = self._calls.get(call_id)

        if record is None:
            self._mark_orphan(call_id, event.tool_name, "result without a preceding call")
            return

        if record.state is CallState.RESULT_RECEIVED:
            self._diagnose(
                "duplicate_result",
                "second result for a completed call",
                call_id,
                record.tool_name,
            )
            return
        if record.state is CallState.ORPHAN:
            return

        if is_empty_input(record.input):
            record.state = CallState.ORPHAN
            self._diagnose(
                "empty_input",
                "result for a call recorded without input",
                call_id,
                record.tool_name,
            )
            return

        record.state = CallState.RESULT_RECEIVED
        record.output = event.output
        record.error = event.error

    def _mark_orphan(self, call_id: str, tool_name: str | None, reason: str) -> None:
        if call_id in self._orphans:
            return
        self._orphans.add(call_id)
        self._diagnose("orphan_result", reason, call_id, tool_name)

    def _diagnose(
        self,
        kind: DiagnosticKind,
        reason: str,
        call_id: str,
        tool_name: str | None,
    ) -> None:
        self.diagnostics.emit(
            ReconciliationDiagnostic(
                kind=kind,
                reason=reason,
                tool_name=tool_name,
                tool_call_id=call_id,
                thread_id=self.thread_id,
                message_id=self.message_id,
            )
        )

    # ---------- output ----------

    def _build_parts(self) -> list[Part]:
        parts: list[Part] = []
        for kind, key in self._order:
            if kind == "text":
                text = "".join(self._spans[key])
                if text:
                    parts.append(TextPart(text=text))
            else:
                record = self._calls[key]
                if record.state is CallState.RESULT_RECEIVED:
                    parts.append(record.to_part())
        return parts

    def snapshot(self) -> list[Part]:
        """Parts reconciled so far, without consuming the buffer."""
        return self._build_parts()

    def finalize(self) -> list[Part]:
        """Freeze the buffer into message parts. May be called once."""
        if self._finalized:
            raise RuntimeError(f"Buffer for message {self.message_id} is already finalized")
        self._finalized = True

        for record in self._calls.values():
            if record.state is CallState.CALL_RECEIVED:
                self._diagnose(
                    "missing_result",
                    "call never received a result",
                    record.tool_call_id,
                    record.tool_name,
                )
        return self._build_parts()

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def tool_count(self) -> int:
        """Number of calls that reached a result."""
        return sum(1 for r in self._calls.values() if r.state is CallState.RESULT_RECEIVED)

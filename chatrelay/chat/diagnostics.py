"""
Reconciliation Diagnostics

Structured records for every tool event the pipeline dropped or repaired.
Diagnostics are never shown to the user; they go to the log (one warning per
record, with the record attached as `extra["diagnostic"]`) and to in-process
counters that tests and the /health endpoint can inspect.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DiagnosticKind = Literal[
    "orphan_result",
    "empty_input",
    "duplicate_call",
    "duplicate_result",
    "missing_result",
    "guard_repair",
]


class ReconciliationDiagnostic(BaseModel):
    kind: DiagnosticKind
    reason: str
    tool_name: str | None = None
    tool_call_id: str
    thread_id: str
    message_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DiagnosticsSink:
    """Process-wide sink: logs, counts and keeps the most recent diagnostics."""

    def __init__(self, max_recent: int = 200) -> None:
        self._recent: deque[ReconciliationDiagnostic] = deque(maxlen=max_recent)
        self._counts: Counter[str] = Counter()

    def emit(self, diagnostic: ReconciliationDiagnostic) -> None:
        self._recent.append(diagnostic)
        self._counts[diagnostic.kind] += 1
        logger.warning(
            "Dropped tool event (%s) for %s[%s] in thread %s: %s",
            diagnostic.kind,
            diagnostic.tool_name or "unknown",
            diagnostic.tool_call_id,
            diagnostic.thread_id,
            diagnostic.reason,
            extra={"diagnostic": diagnostic.model_dump(mode="json")},
        )

    def recent(self, kind: str | None = None) -> list[ReconciliationDiagnostic]:
        if kind is None:
            return list(self._recent)
        return [d for d in self._recent if d.kind == kind]

    def counts(self) -> dict[str, Any]:
        return dict(self._counts)

    def clear(self) -> None:
        self._recent.clear()
        self._counts.clear()

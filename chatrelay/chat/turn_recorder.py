"""
Turn Recorder

The only place an assistant message is written. Every write, checkpoint or
final, goes buffer -> guard -> assert_persistable -> upsert_message under the
same message id, so replays of a checkpoint are idempotent and the final
write replaces them. User messages take the same guard -> assert_persistable
steps in ChatOrchestrator.start_turn.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from chatrelay.history.models import Message
from chatrelay.history.repository import MessageStore

from .persistence_guard import (
    DEFAULT_FALLBACK_TEXT,
    PersistenceGuard,
    assert_persistable,
    build_error_metadata,
    ensure_renderable_parts,
)
from .reconciliation import ReconciliationBuffer

logger = logging.getLogger(__name__)


class TurnRecorder:
    def __init__(
        self,
        store: MessageStore,
        guard: PersistenceGuard,
        buffer: ReconciliationBuffer,
        model: str,
        fallback_text: str = DEFAULT_FALLBACK_TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self.buffer = buffer
        self.model = model
        self.fallback_text = fallback_text
        # Per-turn request settings carried on every write
        self.base_metadata = dict(metadata or {})
        self.created_at = datetime.now(UTC)
        self.checkpoints = 0
        self._final_written = False

    def _message(self, parts: list[Any], metadata: dict[str, Any]) -> Message:
        return Message(
            id=self.buffer.message_id,
            thread_id=self.buffer.thread_id,
            role="assistant",
            parts=parts,
            metadata=metadata,
            created_at=self.created_at,
        )

    async def _write(self, message: Message) -> Message:
        guarded = self.guard.guard(message)
        if guarded.metadata.get("status") != "streaming":
            guarded = ensure_renderable_parts(guarded, self.fallback_text)
        assert_persistable(guarded)
        await self.store.upsert_message(guarded)
        return guarded

    async def checkpoint(self) -> None:
        """Upsert the parts reconciled so far with status "streaming"."""
        if self._final_written:
            return
        parts = self.buffer.snapshot()
        if not parts:
            return
        await self._write(
            self._message(
                parts, {**self.base_metadata, "status": "streaming", "model": self.model}
            )
        )
        self.checkpoints += 1
        logger.debug(
            "← Repository: checkpoint %d for message %s (%d parts)",
            self.checkpoints,
            self.buffer.message_id,
            len(parts),
        )

    async def complete(self, error: BaseException | None = None) -> Message:
        """Finalize the buffer and write the message once."""
        if self._final_written:
            raise RuntimeError(f"Message {self.buffer.message_id} was already recorded")
        self._final_written = True

        parts = self.buffer.finalize()
        finish = self.buffer.finish_event
        failure = self.buffer.error_event

        metadata: dict[str, Any] = {
            **self.base_metadata,
            "status": "incomplete" if failure or error else "complete",
            "model": self.model,
            "tool_count": self.buffer.tool_count,
            "finish_reason": finish.finish_reason if finish else None,
            "usage": finish.usage.model_dump() if finish and finish.usage else None,
        }
        if failure:
            metadata.update(build_error_metadata(failure.error_type, failure.error))

        message = await self._write(self._message(parts, metadata))
        logger.info(
            "← Repository: recorded message %s (%s, %d parts)",
            message.id,
            metadata["status"],
            len(message.parts),
        )
        return message

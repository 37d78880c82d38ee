"""
Stream Tee

Splits one turn's event stream in two:
- the buffered side feeds the Reconciliation Buffer synchronously, in
  emission order, from a detached drain task
- the live side is an unbounded queue the client reads from

The drain task owns the turn. A client that disconnects only detaches the
live side; draining, checkpointing and the final write continue. A failing
source becomes one terminal error event on both sides, and whatever the
buffer holds is still persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .errors import classify_error, describe_error
from .models import ErrorEvent, StreamEvent, TextDeltaEvent, ToolCallCompletedEvent
from .reconciliation import ReconciliationBuffer

logger = logging.getLogger(__name__)

# Strong references to detached drain tasks until they finish
_background_tasks: set[asyncio.Task[Any]] = set()

_LIVE_END = object()

CheckpointCallback = Callable[[], Awaitable[None]]
CompleteCallback = Callable[[BaseException | None], Awaitable[None]]
SendCallback = Callable[[Any], Awaitable[None]]


class CheckpointPolicy:
    """
    Decides when a streaming checkpoint is due.

    A checkpoint fires after every completed tool call, and after text once
    either min_chars of new text or interval_ms have accumulated since the
    last checkpoint.
    """

    def __init__(self, enabled: bool = False, interval_ms: int = 1000, min_chars: int = 512):
        self.enabled = enabled
        self.interval_ms = interval_ms
        self.min_chars = min_chars
        self._pending_chars = 0
        self._last = time.monotonic()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> CheckpointPolicy:
        return cls(
            enabled=bool(config.get("enabled", False)),
            interval_ms=int(config.get("interval_ms", 1000)),
            min_chars=int(config.get("min_chars", 512)),
        )

    def should_checkpoint(self, event: Any) -> bool:
        if not self.enabled:
            return False

        if isinstance(event, ToolCallCompletedEvent):
            due = True
        elif isinstance(event, TextDeltaEvent):
            self._pending_chars += len(event.text)
            elapsed_ms = (time.monotonic() - self._last) * 1000.0
            due = self._pending_chars >= self.min_chars or (
                self._pending_chars > 0 and elapsed_ms >= self.interval_ms
            )
        else:
            due = False

        if due:
            self._pending_chars = 0
            self._last = time.monotonic()
        return due


class StreamTee:
    def __init__(
        self,
        source: AsyncIterator[StreamEvent],
        buffer: ReconciliationBuffer,
        on_checkpoint: CheckpointCallback | None = None,
        on_complete: CompleteCallback | None = None,
        checkpoint_policy: CheckpointPolicy | None = None,
    ) -> None:
        self._source = source
        self.buffer = buffer
        self._on_checkpoint = on_checkpoint
        self._on_complete = on_complete
        self._policy = checkpoint_policy or CheckpointPolicy()

        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._live_attached = True
        self._task: asyncio.Task[None] | None = None

    # ---------- buffered side ----------

    def start(self) -> asyncio.Task[None]:
        """Launch the detached drain task (idempotent)."""
        if self._task is None:
            task = asyncio.create_task(
                self._drain(), name=f"stream-tee:{self.buffer.message_id}"
            )
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)
            self._task = task
        return self._task

    async def _drain(self) -> None:
        error: BaseException | None = None
        cancelled = False
        try:
            async for event in self._source:
                self.buffer.feed(event)
                self._offer(event)
                if self._on_checkpoint and self._policy.should_checkpoint(event):
                    await self._checkpoint()
        except asyncio.CancelledError as e:
            # Shutdown: persist what we have, then let the cancellation through
            cancelled = True
            error = e
            self._fail(ErrorEvent(error="The response was interrupted.", error_type="cancelled"))
        except Exception as e:
            error = e
            logger.error(
                "Response stream failed for message %s: %s",
                self.buffer.message_id,
                e,
                exc_info=True,
            )
            self._fail(ErrorEvent(error=describe_error(e), error_type=classify_error(e)))
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()

        try:
            if self._on_complete:
                await self._on_complete(error)
        except Exception:
            logger.exception("Failed to persist message %s", self.buffer.message_id)
            self._offer(
                ErrorEvent(error="The response could not be saved.", error_type="persistence_error")
            )
            raise
        finally:
            self._offer(_LIVE_END)

        if cancelled:
            raise asyncio.CancelledError

    def _fail(self, event: ErrorEvent) -> None:
        if not self.buffer.finalized:
            self.buffer.feed(event)
        self._offer(event)

    async def _checkpoint(self) -> None:
        assert self._on_checkpoint is not None
        try:
            await self._on_checkpoint()
        except Exception:
            # The final write retries the full message anyway
            logger.exception("Checkpoint failed for message %s", self.buffer.message_id)

    async def wait(self) -> None:
        """Wait for the drain task; re-raises a persistence failure."""
        if self._task is None:
            return
        await asyncio.shield(self._task)

    async def cancel(self) -> None:
        """
        Cancel the drain task and wait for it.

        The partial message is persisted as incomplete with error type
        "cancelled" before this returns. A persistence failure is re-raised.
        """
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    # ---------- live side ----------

    def _offer(self, item: Any) -> None:
        if self._live_attached:
            self._queue.put_nowait(item)

    def detach(self) -> None:
        """Stop delivering live events; the buffered side is unaffected."""
        if not self._live_attached:
            return
        self._live_attached = False
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wake a reader blocked on the queue
        self._queue.put_nowait(_LIVE_END)
        logger.debug("Live stream detached for message %s", self.buffer.message_id)

    async def live(self) -> AsyncIterator[StreamEvent]:
        """
        Yield live events until the turn has been persisted.

        Closing or cancelling this iterator detaches the live side.
        """
        try:
            while self._live_attached:
                item = await self._queue.get()
                if item is _LIVE_END:
                    return
                yield item
        finally:
            self.detach()

    async def forward(self, send: SendCallback) -> bool:
        """
        Push live events through send until the turn ends.

        Returns False when send raised (client gone) and the live side was
        detached; the error is not propagated.
        """
        stream = self.live()
        try:
            async for event in stream:
                try:
                    await send(event)
                except Exception as e:
                    logger.debug(
                        "Live send failed for message %s (%s); detaching",
                        self.buffer.message_id,
                        e,
                    )
                    return False
            return True
        finally:
            await stream.aclose()

#!/usr/bin/env python3
"""
Tests for the stream tee and turn recorder: disconnect survival, partial
persistence on failure, checkpoints and cancellation.
"""

import asyncio

from chatrelay.chat.diagnostics import DiagnosticsSink
from chatrelay.chat.models import (
    ErrorEvent,
    FinishEvent,
    TextDeltaEvent,
    TokenUsage,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
)
from chatrelay.chat.persistence_guard import PersistenceGuard
from chatrelay.chat.reconciliation import ReconciliationBuffer
from chatrelay.chat.stream_tee import CheckpointPolicy, StreamTee
from chatrelay.chat.turn_recorder import TurnRecorder
from chatrelay.clients.llm_client import LLMClientError
from chatrelay.history import InMemoryRepo, TextPart, ToolPart


class RecordingRepo(InMemoryRepo):
    def __init__(self):
        super().__init__()
        self.writes = []

    async def upsert_message(self, message):
        self.writes.append(message.model_copy(deep=True))
        await super().upsert_message(message)


class FailingRepo(InMemoryRepo):
    async def upsert_message(self, message):
        raise RuntimeError("disk full")


def _make_tee(source, repo=None, policy=None):
    sink = DiagnosticsSink()
    repo = repo if repo is not None else RecordingRepo()
    buffer = ReconciliationBuffer("t1", "m1", sink)
    recorder = TurnRecorder(repo, PersistenceGuard(sink), buffer, model="test-model")
    tee = StreamTee(
        source,
        buffer,
        on_checkpoint=recorder.checkpoint,
        on_complete=recorder.complete,
        checkpoint_policy=policy,
    )
    return tee, repo


async def _tool_turn(gate=None):
    yield TextDeltaEvent(span_id="s1", text="Looking it up.")
    yield ToolCallStartedEvent(tool_call_id="c1", tool_name="lookup", input={"query": "x"})
    yield ToolCallCompletedEvent(tool_call_id="c1", tool_name="lookup", output={"result": "y"})
    if gate is not None:
        await gate.wait()
    yield TextDeltaEvent(span_id="s2", text="The result is y.")
    yield FinishEvent(finish_reason="stop", usage=TokenUsage(total_tokens=7), hops=1)


def test_live_stream_receives_all_events_and_turn_is_persisted():
    async def run():
        tee, repo = _make_tee(_tool_turn())
        tee.start()
        events = [event async for event in tee.live()]
        await tee.wait()

        assert [e.type for e in events] == [
            "text-delta",
            "tool-call-started",
            "tool-call-completed",
            "text-delta",
            "finish",
        ]
        message = await repo.get_message("m1")
        assert message is not None
        assert message.metadata["status"] == "complete"
        assert message.metadata["finish_reason"] == "stop"
        assert message.metadata["usage"]["total_tokens"] == 7
        assert message.metadata["tool_count"] == 1
        assert [type(p).__name__ for p in message.parts] == ["TextPart", "ToolPart", "TextPart"]

    asyncio.run(run())


def test_disconnect_after_tool_call_still_persists():
    async def run():
        gate = asyncio.Event()
        tee, repo = _make_tee(_tool_turn(gate))
        tee.start()

        seen = []
        stream = tee.live()
        async for event in stream:
            seen.append(event)
            if event.type == "tool-call-completed":
                break
        # Client goes away
        await stream.aclose()
        gate.set()
        await tee.wait()

        assert seen[-1].type == "tool-call-completed"
        message = await repo.get_message("m1")
        assert message is not None
        assert message.metadata["status"] == "complete"
        tool_parts = message.tool_parts()
        assert len(tool_parts) == 1
        assert tool_parts[0].input == {"query": "x"}
        assert tool_parts[0].output == {"result": "y"}
        assert message.text() == "Looking it up.The result is y."

    asyncio.run(run())


def test_forward_returns_false_when_send_fails():
    async def run():
        tee, repo = _make_tee(_tool_turn())
        tee.start()
        sent = []

        async def send(event):
            if len(sent) == 2:
                raise ConnectionError("socket closed")
            sent.append(event)

        delivered = await tee.forward(send)
        await tee.wait()

        assert delivered is False
        assert len(sent) == 2
        message = await repo.get_message("m1")
        assert message.metadata["status"] == "complete"
        assert len(message.tool_parts()) == 1

    asyncio.run(run())


def test_forward_returns_true_for_complete_delivery():
    async def run():
        tee, _ = _make_tee(_tool_turn())
        tee.start()
        sent = []

        async def send(event):
            sent.append(event)

        assert await tee.forward(send) is True
        assert sent[-1].type == "finish"

    asyncio.run(run())


def test_source_error_persists_partial_turn():
    async def failing_turn():
        yield TextDeltaEvent(span_id="s1", text="Partial answer")
        yield ToolCallStartedEvent(tool_call_id="c1", tool_name="lookup", input={"q": 1})
        yield ToolCallCompletedEvent(tool_call_id="c1", tool_name="lookup", output="ok")
        raise LLMClientError("upstream 502", status_code=502)

    async def run():
        tee, repo = _make_tee(failing_turn())
        tee.start()
        events = [event async for event in tee.live()]
        await tee.wait()

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].error_type == "llm_error"

        message = await repo.get_message("m1")
        assert message.metadata["status"] == "incomplete"
        assert message.metadata["error_info"]["type"] == "llm_error"
        assert message.parts[0] == TextPart(text="Partial answer")
        assert isinstance(message.parts[1], ToolPart)
        assert message.parts[1].output == "ok"

    asyncio.run(run())


def test_failure_before_any_output_persists_fallback_text():
    async def broken():
        raise LLMClientError("unreachable")
        yield  # pragma: no cover

    async def run():
        tee, repo = _make_tee(broken())
        tee.start()
        await tee.wait()

        message = await repo.get_message("m1")
        assert message.metadata["status"] == "incomplete"
        assert len(message.parts) == 1
        assert isinstance(message.parts[0], TextPart)
        assert message.parts[0].text

    asyncio.run(run())


def test_checkpoints_upsert_same_message_id():
    async def run():
        policy = CheckpointPolicy(enabled=True, interval_ms=60_000, min_chars=5)
        tee, repo = _make_tee(_tool_turn(), policy=policy)
        tee.start()
        await tee.wait()

        statuses = [w.metadata["status"] for w in repo.writes]
        assert statuses[-1] == "complete"
        assert "streaming" in statuses
        assert {w.id for w in repo.writes} == {"m1"}
        assert len(await repo.select_messages_by_thread("t1")) == 1

    asyncio.run(run())


def test_checkpoint_policy_thresholds():
    policy = CheckpointPolicy(enabled=True, interval_ms=60_000, min_chars=10)
    assert not policy.should_checkpoint(TextDeltaEvent(span_id="s", text="12345"))
    assert policy.should_checkpoint(TextDeltaEvent(span_id="s", text="67890"))
    assert policy.should_checkpoint(
        ToolCallCompletedEvent(tool_call_id="c", tool_name="t", output=1)
    )
    assert not policy.should_checkpoint(FinishEvent())

    disabled = CheckpointPolicy(enabled=False)
    assert not disabled.should_checkpoint(
        ToolCallCompletedEvent(tool_call_id="c", tool_name="t", output=1)
    )


def test_cancelled_turn_is_persisted_then_cancellation_propagates():
    async def run():
        gate = asyncio.Event()
        tee, repo = _make_tee(_tool_turn(gate))
        task = tee.start()
        while tee.buffer.tool_count == 0:
            await asyncio.sleep(0)

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        else:
            raise AssertionError("expected cancellation")

        message = await repo.get_message("m1")
        assert message.metadata["status"] == "incomplete"
        assert message.metadata["error_info"]["type"] == "cancelled"
        assert len(message.tool_parts()) == 1

    asyncio.run(run())


def test_persistence_failure_is_reported_live_and_raised():
    async def run():
        tee, _ = _make_tee(_tool_turn(), repo=FailingRepo())
        tee.start()
        events = [event async for event in tee.live()]

        assert events[-1].type == "error"
        assert events[-1].error_type == "persistence_error"
        try:
            await tee.wait()
        except RuntimeError as e:
            assert "disk full" in str(e)
        else:
            raise AssertionError("expected RuntimeError")

    asyncio.run(run())


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"✓ {name}")
    print("All stream tee tests passed!")

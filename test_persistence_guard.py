#!/usr/bin/env python3
"""
Tests for the persistence guard and its helpers.
"""

from chatrelay.chat.diagnostics import DiagnosticsSink
from chatrelay.chat.persistence_guard import (
    PersistenceGuard,
    PersistenceInvariantError,
    assert_persistable,
    build_error_metadata,
    ensure_renderable_parts,
    is_empty_input,
)
from chatrelay.history.models import Message, TextPart, ToolPart


def _message(*parts):
    return Message(id="m1", thread_id="t1", role="assistant", parts=list(parts))


def test_is_empty_input():
    for value in (None, {}, [], "", "   ", ()):
        assert is_empty_input(value), value
    for value in ({"a": 1}, [0], "x", 0, False):
        assert not is_empty_input(value), value


def test_guard_drops_result_parts_without_input():
    sink = DiagnosticsSink()
    guard = PersistenceGuard(sink)
    good = ToolPart(tool_call_id="c1", tool_name="a", input={"q": 1}, state="output-available")
    bad = ToolPart(tool_call_id="c2", tool_name="b", input={}, state="output-error", error_text="x")
    message = _message(TextPart(text="hi"), good, bad)

    guarded = guard.guard(message)

    assert guarded.parts == [TextPart(text="hi"), good]
    # The original is left untouched
    assert len(message.parts) == 3
    repairs = sink.recent("guard_repair")
    assert len(repairs) == 1
    assert repairs[0].tool_call_id == "c2"
    assert repairs[0].thread_id == "t1"
    assert repairs[0].message_id == "m1"


def test_guard_keeps_pending_calls_and_valid_messages_unchanged():
    sink = DiagnosticsSink()
    guard = PersistenceGuard(sink)
    pending = ToolPart(tool_call_id="c1", tool_name="a", input=None, state="pending-call")
    message = _message(pending)

    assert guard.guard(message) is message
    assert sink.counts() == {}


def test_assert_persistable_fails_loudly():
    assert_persistable(_message(TextPart(text="ok")))

    bad = ToolPart(tool_call_id="c1", tool_name="a", input=None, state="output-available")
    try:
        assert_persistable(_message(bad))
    except PersistenceInvariantError as e:
        assert "c1" in str(e)
    else:
        raise AssertionError("expected PersistenceInvariantError")


def test_ensure_renderable_parts():
    empty = _message()
    filled = ensure_renderable_parts(empty, "fallback")
    assert filled.parts == [TextPart(text="fallback")]

    user = Message(id="u1", thread_id="t1", role="user", parts=[])
    assert ensure_renderable_parts(user) is user

    non_empty = _message(TextPart(text="x"))
    assert ensure_renderable_parts(non_empty) is non_empty


def test_build_error_metadata():
    metadata = build_error_metadata("llm_error", "provider down")
    info = metadata["error_info"]
    assert info["type"] == "llm_error"
    assert info["message"] == "provider down"
    assert "persisted_at" in info


if __name__ == "__main__":
    test_is_empty_input()
    test_guard_drops_result_parts_without_input()
    test_guard_keeps_pending_calls_and_valid_messages_unchanged()
    test_assert_persistable_fails_loudly()
    test_ensure_renderable_parts()
    test_build_error_metadata()
    print("✅ Persistence guard tests passed!")

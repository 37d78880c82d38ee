#!/usr/bin/env python3
"""
Tests for turn orchestration: tool source initialization, thread ownership,
history replay and shutdown.
"""

import asyncio
import os
import tempfile
from unittest.mock import AsyncMock, MagicMock

import yaml
from mcp import types

from chatrelay.chat import (
    ChatOrchestrator,
    ChatRequest,
    MessageConflictError,
    ThreadAccessError,
    build_conversation,
)
from chatrelay.config import Configuration
from chatrelay.history import InMemoryRepo, Message, TextPart, ToolPart
from chatrelay.mcp_client import MCPClient


class OneShotLLM:
    model = "one-shot"

    def __init__(self, text):
        self.text = text
        self.tools_seen = []
        self.close = AsyncMock()

    async def stream_chat(self, messages, tools=None):
        self.tools_seen.append(tools)
        yield {"choices": [{"delta": {"content": self.text}}]}
        yield {"choices": [{"delta": {}, "finish_reason": "stop"}]}


def _mcp_client(name, connect_error=None, tools=()):
    client = MagicMock(spec=MCPClient)
    client.name = name
    client.is_connected = connect_error is None
    client.connect = AsyncMock(side_effect=connect_error)
    client.list_tools = AsyncMock(return_value=list(tools))
    client.close = AsyncMock()
    return client


def _orchestrator(clients=(), llm=None, runtime=None):
    runtime_path = os.path.join(tempfile.mkdtemp(), "runtime_config.yaml")
    if runtime:
        with open(runtime_path, "w") as f:
            yaml.safe_dump(runtime, f)
    return ChatOrchestrator(
        ChatOrchestrator.ChatOrchestratorConfig(
            clients=list(clients),
            llm_client=llm or OneShotLLM("ok"),
            repo=InMemoryRepo(),
            configuration=Configuration(runtime_config_path=runtime_path),
        )
    )


def test_initialize_registers_tools_and_skips_failed_clients():
    remote = types.Tool(name="remote_search", inputSchema={"type": "object"})
    good = _mcp_client("good", tools=[remote])
    bad = _mcp_client("bad", connect_error=ConnectionError("refused"))
    llm = OneShotLLM("ok")
    orchestrator = _orchestrator([good, bad], llm)

    async def run():
        await orchestrator.initialize()
        await orchestrator.initialize()
        assert orchestrator.registry.names() == ["get_current_time", "create_chart", "remote_search"]
        assert orchestrator.get_tool_count() == 3
        good.connect.assert_awaited_once()
        bad.list_tools.assert_not_awaited()

        await orchestrator.cleanup()
        good.close.assert_awaited_once()
        bad.close.assert_not_awaited()
        llm.close.assert_awaited_once()

    asyncio.run(run())


def test_start_turn_persists_user_and_assistant_messages():
    orchestrator = _orchestrator(llm=OneShotLLM("Hi!"))

    async def run():
        await orchestrator.initialize()
        request = ChatRequest.model_validate(
            {"thread_id": "t1", "message": {"id": "u1", "text": "hello"}}
        )
        handle = await orchestrator.start_turn("alice", request)
        assert handle.thread_id == "t1"
        assert handle.user_message_id == "u1"
        await handle.wait()
        assert handle.done
        assert orchestrator.active_turns == 0

        messages = await orchestrator.repo.select_messages_by_thread("t1")
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[1].id == handle.assistant_message_id
        assert messages[1].text() == "Hi!"
        assert (await orchestrator.repo.select_thread("t1")).user_id == "alice"

        try:
            await orchestrator.start_turn("mallory", request)
        except ThreadAccessError as e:
            assert e.thread_id == "t1"
        else:
            raise AssertionError("expected ThreadAccessError")

    asyncio.run(run())


def test_build_conversation_replays_tool_parts_in_order():
    user = Message(thread_id="t", role="user", parts=[TextPart(text="weather?")])
    assistant = Message(
        thread_id="t",
        role="assistant",
        parts=[
            TextPart(text="Checking."),
            ToolPart(
                tool_call_id="c1",
                tool_name="weather",
                input={"city": "Oslo"},
                state="output-available",
                output={"temp": 3},
            ),
            ToolPart(
                tool_call_id="c2",
                tool_name="weather",
                input={"city": "Rome"},
                state="output-error",
                error_text="timeout",
            ),
            ToolPart(tool_call_id="c3", tool_name="weather", input={"city": "x"}),
            TextPart(text="Oslo is cold."),
        ],
    )

    conv = build_conversation([user, assistant], "Be helpful.")
    messages = conv.get_dict_format()

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "tool", "assistant"]
    assert messages[2]["content"] == "Checking."
    assert [c["id"] for c in messages[2]["tool_calls"]] == ["c1", "c2"]
    assert messages[3] == {"role": "tool", "content": '{"temp": 3}', "tool_call_id": "c1"}
    assert messages[4]["content"] == "Tool execution failed: timeout"
    assert messages[5] == {"role": "assistant", "content": "Oslo is cold."}


class HangingLLM:
    """Streams one text chunk, then blocks until cancelled."""

    model = "hanging"

    def __init__(self):
        self.started = asyncio.Event()
        self.close = AsyncMock()

    async def stream_chat(self, messages, tools=None):
        yield {"choices": [{"delta": {"content": "partial answer"}}]}
        self.started.set()
        await asyncio.Event().wait()


def _request(thread_id, message_id, text, **extra):
    return ChatRequest.model_validate(
        {"thread_id": thread_id, "message": {"id": message_id, "text": text}, **extra}
    )


async def _expect_conflict(orchestrator, request):
    try:
        await orchestrator.start_turn("alice", request)
    except MessageConflictError as e:
        assert e.message_id == request.message.id
    else:
        raise AssertionError("expected MessageConflictError")


def test_stored_messages_cannot_be_overwritten_by_reused_ids():
    orchestrator = _orchestrator(llm=OneShotLLM("assistant answer"))

    async def run():
        await orchestrator.initialize()
        first = await orchestrator.start_turn("alice", _request("t1", "u1", "question"))
        await first.wait()
        assistant_id = first.assistant_message_id

        # Reusing the assistant's id must leave the finished message intact
        await _expect_conflict(orchestrator, _request("t1", assistant_id, "hijack"))
        assistant = await orchestrator.repo.get_message(assistant_id)
        assert assistant.role == "assistant"
        assert assistant.text() == "assistant answer"
        assert assistant.metadata["status"] == "complete"

        # A different text under an existing user message id is rejected too
        await _expect_conflict(orchestrator, _request("t1", "u1", "edited question"))
        assert (await orchestrator.repo.get_message("u1")).text() == "question"

        # An identical retry reuses the stored user message and runs a new turn
        retry = await orchestrator.start_turn("alice", _request("t1", "u1", "question"))
        await retry.wait()
        messages = await orchestrator.repo.select_messages_by_thread("t1")
        assert [m.role for m in messages] == ["user", "assistant", "assistant"]
        assert messages[2].id == retry.assistant_message_id

    asyncio.run(run())


def test_tool_choice_and_allow_list_limit_offered_tools():
    llm = OneShotLLM("ok")
    orchestrator = _orchestrator(llm=llm)

    async def run():
        await orchestrator.initialize()

        none_turn = await orchestrator.start_turn(
            "alice", _request("t1", "u1", "no tools please", tool_choice="none")
        )
        await none_turn.wait()
        assert llm.tools_seen[-1] is None

        allowed = await orchestrator.start_turn(
            "alice",
            _request("t1", "u2", "only the clock", tools=["get_current_time", "missing_tool"]),
        )
        await allowed.wait()
        assert [t["function"]["name"] for t in llm.tools_seen[-1]] == ["get_current_time"]

        default = await orchestrator.start_turn("alice", _request("t1", "u3", "anything"))
        await default.wait()
        assert len(llm.tools_seen[-1]) == orchestrator.get_tool_count()

        none_message = await orchestrator.repo.get_message(none_turn.assistant_message_id)
        assert none_message.metadata["tool_choice"] == "none"
        assert none_message.metadata["tools_available"] == 0
        allowed_message = await orchestrator.repo.get_message(allowed.assistant_message_id)
        assert allowed_message.metadata["tool_choice"] == "auto"
        assert allowed_message.metadata["tools_available"] == 1

    asyncio.run(run())


def test_cleanup_cancels_turns_that_outlive_the_shutdown_timeout():
    llm = HangingLLM()
    orchestrator = _orchestrator(
        llm=llm,
        runtime={"chat": {"service": {"shutdown_timeout_seconds": 0.05}}},
    )

    async def run():
        await orchestrator.initialize()
        handle = await orchestrator.start_turn("alice", _request("t1", "u1", "long task"))
        await llm.started.wait()

        await orchestrator.cleanup()

        assert handle.done
        assert orchestrator.active_turns == 0
        llm.close.assert_awaited_once()
        message = await orchestrator.repo.get_message(handle.assistant_message_id)
        assert message.metadata["status"] == "incomplete"
        assert message.metadata["error_info"]["type"] == "cancelled"
        assert message.text() == "partial answer"

    asyncio.run(run())


if __name__ == "__main__":
    test_initialize_registers_tools_and_skips_failed_clients()
    test_start_turn_persists_user_and_assistant_messages()
    test_build_conversation_replays_tool_parts_in_order()
    test_stored_messages_cannot_be_overwritten_by_reused_ids()
    test_tool_choice_and_allow_list_limit_offered_tools()
    test_cleanup_cancels_turns_that_outlive_the_shutdown_timeout()
    print("✅ Orchestrator tests passed!")

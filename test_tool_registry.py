#!/usr/bin/env python3
"""
Tests for the tool capability registry and the built-in tools.
"""

import asyncio

from chatrelay.tools import (
    ToolCapability,
    ToolExecutionError,
    ToolInputError,
    ToolNotFoundError,
    ToolProgress,
    ToolRegistry,
    ToolResult,
    ToolTimeoutError,
    register_builtin_tools,
)


async def _echo(args):
    return {"echo": args["text"]}


async def _counter(args):
    for i in range(args["n"]):
        yield {"step": i}
    yield {"done": args["n"]}


def _registry(timeout=5.0):
    registry = ToolRegistry(timeout=timeout)
    registry.register(
        ToolCapability(
            name="echo",
            description="Echo text back",
            input_schema={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
            handler=_echo,
        )
    )
    registry.register(
        ToolCapability(
            name="counter",
            input_schema={"type": "object", "required": ["n"]},
            progressive=True,
            handler=_counter,
        )
    )
    return registry


async def _collect(registry, name, args):
    return [update async for update in registry.invoke(name, args)]


def test_single_shot_invoke_yields_one_result():
    updates = asyncio.run(_collect(_registry(), "echo", {"text": "hi"}))
    assert updates == [ToolResult(output={"echo": "hi"})]


def test_progressive_invoke_last_value_is_result():
    updates = asyncio.run(_collect(_registry(), "counter", {"n": 2}))
    assert updates == [
        ToolProgress(data={"step": 0}),
        ToolProgress(data={"step": 1}),
        ToolResult(output={"done": 2}),
    ]
    assert asyncio.run(_registry().run("counter", {"n": 3})) == {"done": 3}


def test_unknown_tool_raises_not_found():
    try:
        asyncio.run(_collect(_registry(), "missing", {}))
    except ToolNotFoundError as e:
        assert e.tool_name == "missing"
    else:
        raise AssertionError("expected ToolNotFoundError")


def test_input_must_be_object_with_required_keys():
    for bad in ("text", [1, 2], {}):
        try:
            asyncio.run(_collect(_registry(), "echo", bad))
        except ToolInputError:
            pass
        else:
            raise AssertionError(f"expected ToolInputError for {bad!r}")


def test_slow_tool_times_out():
    async def slow(args):
        await asyncio.sleep(1)
        return "late"

    registry = ToolRegistry(timeout=0.05)
    registry.register(ToolCapability(name="slow", handler=slow))
    try:
        asyncio.run(registry.run("slow", {"x": 1}))
    except ToolTimeoutError as e:
        assert e.tool_name == "slow"
    else:
        raise AssertionError("expected ToolTimeoutError")


def test_handler_exception_is_wrapped():
    async def broken(args):
        raise ValueError("bad things")

    async def silent(args):
        if False:
            yield None

    registry = ToolRegistry()
    registry.register(ToolCapability(name="broken", handler=broken))
    registry.register(ToolCapability(name="silent", progressive=True, handler=silent))

    for name in ("broken", "silent"):
        try:
            asyncio.run(registry.run(name, {"x": 1}))
        except ToolExecutionError as e:
            assert e.tool_name == name
        else:
            raise AssertionError(f"expected ToolExecutionError from {name}")


def test_duplicate_registration_rejected():
    registry = _registry()
    try:
        registry.register(ToolCapability(name="echo", handler=_echo))
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


def test_openai_tool_definitions():
    tools = _registry().get_openai_tools()
    assert [t["function"]["name"] for t in tools] == ["echo", "counter"]
    assert tools[0]["type"] == "function"
    assert tools[0]["function"]["parameters"]["required"] == ["text"]


def test_subset_offers_only_named_tools():
    registry = _registry(timeout=2.0)
    view = registry.subset(["echo"])
    assert view.names() == ["echo"]
    assert view.timeout == 2.0
    assert [t["function"]["name"] for t in view.get_openai_tools()] == ["echo"]
    assert asyncio.run(view.run("echo", {"text": "hi"})) == {"echo": "hi"}
    assert "counter" not in view
    assert len(registry) == 2

    assert registry.subset([]).get_openai_tools() == []
    try:
        registry.subset(["nope"])
    except ToolNotFoundError:
        pass
    else:
        raise AssertionError("expected ToolNotFoundError")


def test_builtin_tools_registration_respects_config():
    registry = ToolRegistry()
    assert register_builtin_tools(registry, {"include": ["get_current_time", "nope"]}) == 1
    assert registry.names() == ["get_current_time"]

    disabled = ToolRegistry()
    assert register_builtin_tools(disabled, {"enabled": False}) == 0
    assert len(disabled) == 0


def test_get_current_time():
    registry = ToolRegistry()
    register_builtin_tools(registry, {})
    result = asyncio.run(registry.run("get_current_time", {"timezone": "UTC"}))
    assert result["timezone"] == "UTC"
    assert result["iso"].endswith("+00:00")

    try:
        asyncio.run(registry.run("get_current_time", {"timezone": "Not/AZone"}))
    except ToolInputError:
        pass
    else:
        raise AssertionError("expected ToolInputError")


def test_create_chart_streams_progress_then_result():
    registry = ToolRegistry()
    register_builtin_tools(registry, {})
    args = {
        "title": "Sales",
        "chart_type": "bar",
        "data": [
            {"x_label": "Q1", "series": [{"name": "A", "value": 3}, {"name": "B", "value": 4}]},
            {"x_label": "Q2", "series": [{"name": "A", "value": 5}]},
        ],
    }
    updates = asyncio.run(_collect(registry, "create_chart", args))

    assert [u.data["status"] for u in updates[:-1]] == ["loading", "processing"]
    result = updates[-1]
    assert isinstance(result, ToolResult)
    assert result.output["status"] == "success"
    assert result.output["series"] == ["A", "B"]
    assert result.output["data_points"] == 2

    bad = dict(args, chart_type="radar")
    try:
        asyncio.run(registry.run("create_chart", bad))
    except ToolInputError:
        pass
    else:
        raise AssertionError("expected ToolInputError")


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"✓ {name}")
    print("All tool registry tests passed!")

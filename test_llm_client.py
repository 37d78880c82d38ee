#!/usr/bin/env python3
"""
Tests for the streaming LLM client against a mocked HTTP transport.
"""

import asyncio
import json
import os
import tempfile

import httpx
import yaml

from chatrelay.clients import LLMClient, LLMClientError
from chatrelay.config import Configuration


def _configuration():
    tmpdir = tempfile.mkdtemp()
    runtime_path = os.path.join(tmpdir, "runtime_config.yaml")
    with open(runtime_path, "w") as f:
        yaml.safe_dump(
            {
                "llm": {
                    "active": "openai",
                    "providers": {"openai": {"api_key_env": "TEST_LLM_CLIENT_KEY"}},
                }
            },
            f,
        )
    os.environ["TEST_LLM_CLIENT_KEY"] = "sk-test"
    return Configuration(runtime_config_path=runtime_path)


def _sse(*chunks):
    lines = [f"data: {json.dumps(c)}" for c in chunks] + ["data: [DONE]"]
    return "\n\n".join(lines) + "\n\n"


async def _stream(handler, tools=None):
    transport = httpx.MockTransport(handler)
    http_client = httpx.AsyncClient(transport=transport, base_url="https://llm.test/v1")
    async with LLMClient(_configuration(), http_client=http_client) as client:
        return [c async for c in client.stream_chat([{"role": "user", "content": "hi"}], tools)]


def test_stream_chat_yields_chunks_and_sends_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["payload"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"total_tokens": 3}},
        )
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    tools = [{"type": "function", "function": {"name": "t", "parameters": {}}}]
    chunks = asyncio.run(_stream(handler, tools))

    assert [c["choices"][0]["delta"]["content"] for c in chunks[:2]] == ["Hel", "lo"]
    assert chunks[2]["usage"] == {"total_tokens": 3}
    assert seen["path"] == "/v1/chat/completions"
    payload = seen["payload"]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["tools"] == tools
    assert "base_url" not in payload


def test_stream_chat_failures_raise_llm_client_error():
    cases = {
        "status": lambda request: httpx.Response(500, text="boom"),
        "upstream": lambda request: httpx.Response(
            200, text=_sse({"error": {"message": "rate limited"}})
        ),
        "empty": lambda request: httpx.Response(200, text="data: [DONE]\n\n"),
        "json": lambda request: httpx.Response(200, text="data: {not json\n\n"),
    }
    for name, handler in cases.items():
        try:
            asyncio.run(_stream(handler))
        except LLMClientError as e:
            if name == "status":
                assert e.status_code == 500
            if name == "upstream":
                assert "rate limited" in str(e)
        else:
            raise AssertionError(f"expected LLMClientError for {name}")


def test_transport_error_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    try:
        asyncio.run(_stream(handler))
    except LLMClientError as e:
        assert "refused" in str(e)
    else:
        raise AssertionError("expected LLMClientError")


if __name__ == "__main__":
    test_stream_chat_yields_chunks_and_sends_payload()
    test_stream_chat_failures_raise_llm_client_error()
    test_transport_error_is_wrapped()
    print("✅ LLM client tests passed!")

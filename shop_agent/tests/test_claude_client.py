import asyncio
import json

import pytest

from shop_agent.domain.exceptions import ApiError, RateLimitError, ValidationError
from shop_agent.domain.models import ChatMessage, ChatRequest, TextBlock, ToolUseBlock
from shop_agent.providers.claude_client import ClaudeClient
from shop_agent.tools.definitions import ToolDescriptor, ToolOrigin


class SettingsStub:
    anthropic_api_key = "sk-test-0123456789"
    anthropic_base_url = "https://api.anthropic.test/v1"
    anthropic_version = "2023-06-01"
    http_timeout = 1.0


def _sse(*events):
    return [f"data: {json.dumps(e)}" for e in events]


def _fake_client(lines, status_code=200, captured=None):
    class Resp:
        def __init__(self):
            self.status_code = status_code
            self.text = "boom"

        async def aread(self):
            return b"boom"

        async def aiter_lines(self):
            for line in lines:
                yield line

    class StreamCtx:
        async def __aenter__(self):
            return Resp()

        async def __aexit__(self, *a):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None):
            if captured is not None:
                captured.update({"method": method, "url": url, "json": json, "headers": headers})
            return StreamCtx()

    return Client


def _collect(client, req):
    async def run():
        return [ev async for ev in client.stream(req)]

    return asyncio.run(run())


def _request(**kw):
    return ChatRequest(model="shop-chat", messages=[ChatMessage(role="user", content="salut")], **kw)


def test_stream_text_and_tool_use(monkeypatch):
    lines = _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Je "}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "cherche."}},
        {"type": "content_block_stop", "index": 0},
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu_1", "name": "search_shop_catalog", "input": {}}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"query\": "}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "\"chaise\"}"}},
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
        {"type": "message_stop"},
    )
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(lines, captured=captured))
    tool = ToolDescriptor(name="search_shop_catalog", description="search", input_schema={}, origin=ToolOrigin.STOREFRONT)
    events = _collect(ClaudeClient(SettingsStub()), _request(system=["sys"], tools=[tool]))

    assert [e.text for e in events if e.kind == "text"] == ["Je ", "cherche."]
    assert [e.block_type for e in events if e.kind == "block_start"] == ["text", "tool_use"]
    final = events[-1]
    assert final.kind == "message"
    assert final.stop_reason == "tool_use"
    assert final.usage.input_tokens == 12 and final.usage.output_tokens == 7
    assert final.message.content == [
        TextBlock(text="Je cherche."),
        ToolUseBlock(id="tu_1", name="search_shop_catalog", input={"query": "chaise"}),
    ]

    body = captured["json"]
    assert captured["url"] == "https://api.anthropic.test/v1/messages"
    assert captured["headers"]["x-api-key"] == SettingsStub.anthropic_api_key
    assert body["stream"] is True
    assert body["system"] == [{"type": "text", "text": "sys"}]
    assert body["tools"][0]["input_schema"] == {"type": "object", "properties": {}}


def test_stream_defaults_stop_reason(monkeypatch):
    lines = _sse(
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
        {"type": "content_block_stop", "index": 0},
    )
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(["event: ping", ""] + lines))
    events = _collect(ClaudeClient(SettingsStub()), _request())
    assert events[-1].stop_reason == "end_turn"
    assert events[-1].message.text == "ok"


def test_stream_rate_limit(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", _fake_client([], status_code=429))
    with pytest.raises(RateLimitError):
        _collect(ClaudeClient(SettingsStub()), _request())


def test_stream_api_error(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", _fake_client([], status_code=500))
    with pytest.raises(ApiError) as ei:
        _collect(ClaudeClient(SettingsStub()), _request())
    assert ei.value.http_status == 500


def test_stream_error_event(monkeypatch):
    lines = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(lines))
    with pytest.raises(ApiError) as ei:
        _collect(ClaudeClient(SettingsStub()), _request())
    assert ei.value.message == "Overloaded"


def test_stream_requires_api_key():
    class NoKey(SettingsStub):
        anthropic_api_key = None

    with pytest.raises(ValidationError):
        _collect(ClaudeClient(NoKey()), _request())


def test_parse_arguments_keeps_raw():
    assert ClaudeClient._parse_arguments("{bad") == {"_raw": "{bad"}
    assert ClaudeClient._parse_arguments({"a": 1}) == {"a": 1}

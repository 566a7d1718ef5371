from __future__ import annotations

import json

import pytest
from aiohttp import test_utils, web

from grove.adapters.events import Finish, ReasoningDelta, TextDelta, ToolCall
from grove.engine.errors import AuthError, NotFoundError, ProviderError
from grove.engine.providers import (
    AnthropicProvider,
    GenerationRequest,
    ProviderCredentials,
    ProviderRegistry,
)
from grove.engine.providers.anthropic_provider import (
    MessageStreamParser,
    build_headers,
    build_payload,
)

STREAM_EVENTS = [
    {"type": "message_start", "message": {"id": "msg_1"}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "content_block_start", "index": 1, "content_block": {"type": "text"}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Hello"}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": " world"}},
    {"type": "content_block_stop", "index": 1},
    {"type": "content_block_start", "index": 2,
     "content_block": {"type": "tool_use", "id": "toolu_1", "name": "Bash"}},
    {"type": "content_block_delta", "index": 2,
     "delta": {"type": "input_json_delta", "partial_json": '{"command": '}},
    {"type": "content_block_delta", "index": 2,
     "delta": {"type": "input_json_delta", "partial_json": '"ls"}'}},
    {"type": "content_block_stop", "index": 2},
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
    {"type": "message_stop"},
]


def _request(**kwargs) -> GenerationRequest:
    return GenerationRequest(
        messages=[{"role": "user", "content": "hi"}],
        system_prompt="be brief",
        model="claude-test",
        **kwargs,
    )


def test_parser_translates_stream_events() -> None:
    parser = MessageStreamParser()
    envelopes = [env for event in STREAM_EVENTS for env in parser.feed(event)]

    assert envelopes == [
        ReasoningDelta(text="hmm"),
        TextDelta(text="Hello"),
        TextDelta(text=" world"),
        ToolCall(tool_call_id="toolu_1", tool_name="Bash", input={"command": "ls"}),
        Finish(reason="tool_use"),
    ]
    assert parser.finished


def test_parser_raises_on_error_event() -> None:
    with pytest.raises(ProviderError) as exc_info:
        MessageStreamParser().feed(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        )
    assert exc_info.value.message == "Overloaded"
    assert exc_info.value.detail == "overloaded_error"


def test_headers_prefer_api_key() -> None:
    headers = build_headers(ProviderCredentials(access_token="tok", api_key="sk-key"))
    assert headers["x-api-key"] == "sk-key"
    assert "authorization" not in headers


def test_headers_for_oauth_token() -> None:
    headers = build_headers(ProviderCredentials(access_token="tok"))
    assert headers["authorization"] == "Bearer tok"
    assert headers["anthropic-beta"] == "oauth-2025-04-20"


def test_headers_without_credentials() -> None:
    with pytest.raises(AuthError):
        build_headers(ProviderCredentials())


def test_payload_thinking_and_tools() -> None:
    assert "thinking" not in build_payload(_request())
    payload = build_payload(_request(thinking_budget=4000, tools=[{"name": "Bash"}]))
    assert payload["thinking"] == {"type": "enabled", "budget_tokens": 4000}
    assert payload["tools"] == [{"name": "Bash"}]
    assert payload["stream"] is True
    assert payload["system"] == "be brief"


def test_registry_lookup() -> None:
    registry = ProviderRegistry()
    provider = AnthropicProvider()
    registry.register("anthropic", provider)
    assert registry.get("anthropic") is provider
    assert registry.get("missing") is None
    assert registry.list_available() == ["anthropic"]
    with pytest.raises(NotFoundError):
        registry.require("missing")


async def _serve(handler) -> test_utils.TestServer:
    app = web.Application()
    app.router.add_post("/v1/messages", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_stream_against_local_server() -> None:
    seen = {}

    async def handler(request: web.Request) -> web.StreamResponse:
        seen["headers"] = dict(request.headers)
        seen["body"] = await request.json()
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        for event in STREAM_EVENTS:
            await resp.write(
                f"event: {event['type']}\ndata: {json.dumps(event)}\n\n".encode()
            )
        await resp.write_eof()
        return resp

    server = await _serve(handler)
    try:
        provider = AnthropicProvider(base_url=str(server.make_url("")))
        envelopes = [
            env async for env in provider.stream(_request(), ProviderCredentials(access_token="tok"))
        ]
    finally:
        await server.close()

    assert [type(env) for env in envelopes] == [
        ReasoningDelta, TextDelta, TextDelta, ToolCall, Finish,
    ]
    assert seen["headers"]["Authorization"] == "Bearer tok"
    assert seen["body"]["model"] == "claude-test"


@pytest.mark.asyncio
async def test_stream_rejected_credentials() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"error": "unauthorized"}, status=401)

    server = await _serve(handler)
    try:
        provider = AnthropicProvider(base_url=str(server.make_url("")))
        with pytest.raises(AuthError):
            async for _ in provider.stream(_request(), ProviderCredentials(api_key="bad")):
                pass
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_stream_server_error() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"error": "overloaded"}, status=529)

    server = await _serve(handler)
    try:
        provider = AnthropicProvider(base_url=str(server.make_url("")))
        with pytest.raises(ProviderError) as exc_info:
            async for _ in provider.stream(_request(), ProviderCredentials(api_key="k")):
                pass
        assert exc_info.value.status == 529
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_stream_cut_short_is_an_error() -> None:
    async def handler(request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        await resp.write(b'data: {"type": "content_block_delta", "index": 0, '
                         b'"delta": {"type": "text_delta", "text": "partial"}}\n\n')
        await resp.write_eof()
        return resp

    server = await _serve(handler)
    try:
        provider = AnthropicProvider(base_url=str(server.make_url("")))
        received = []
        with pytest.raises(ProviderError):
            async for env in provider.stream(_request(), ProviderCredentials(api_key="k")):
                received.append(env)
        assert received == [TextDelta(text="partial")]
    finally:
        await server.close()

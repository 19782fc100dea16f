# SPDX-License-Identifier: Apache-2.0
"""
Claude adapter: system folding, the default max_tokens, typed stream events
and error type mapping.
"""

import pytest

from llm_gateway.adapters import ClaudeAdapter
from llm_gateway.adapters.anthropic_adapter import DEFAULT_CLAUDE_MAX_TOKENS
from llm_gateway.config import ClaudeConfig
from llm_gateway.context import make_ctx
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.types import ChatRequest, Message, StreamEventType, Usage

from tests.conftest import json_response, sse_response

pytestmark = pytest.mark.asyncio

MODEL = "claude-3-haiku-20240307"

MESSAGE = {
    "id": "msg_01",
    "type": "message",
    "role": "assistant",
    "model": MODEL,
    "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
    "stop_reason": "end_turn",
    "stop_sequence": None,
    "usage": {"input_tokens": 12, "output_tokens": 4},
}


def _adapter(upstream):
    return ClaudeAdapter(ClaudeConfig(name="claude", api_key="sk-ant-test"), http_client=upstream.client())


def _request(**kw):
    return ChatRequest(
        model=MODEL,
        messages=[Message("system", "be kind"), Message("system", "be brief"), Message("user", "hi")],
        **kw,
    )


async def test_generate_folds_system_and_defaults_max_tokens(upstream):
    upstream.reply(json_response(200, MESSAGE))
    adapter = _adapter(upstream)

    result = await adapter.generate(make_ctx(), _request())

    assert result.text == "Hello there"
    assert result.finish_reason == "end_turn"
    assert result.usage == Usage(12, 4, 16)

    req = upstream.last
    assert req.url.path == "/v1/messages"
    assert req.headers["x-api-key"] == "sk-ant-test"
    assert req.headers["anthropic-version"] == "2023-06-01"
    body = upstream.last_json()
    assert body["max_tokens"] == DEFAULT_CLAUDE_MAX_TOKENS == 4096
    assert body["system"] == "be kind\n\nbe brief"
    assert body["messages"] == [{"role": "user", "content": "hi"}]


async def test_explicit_sampling_fields(upstream):
    upstream.reply(json_response(200, MESSAGE))
    adapter = _adapter(upstream)

    await adapter.generate(make_ctx(), _request(max_tokens=64, temperature=0.5, stop=["END"]))

    body = upstream.last_json()
    assert body["max_tokens"] == 64
    assert body["temperature"] == 0.5
    assert body["stop_sequences"] == ["END"]


async def test_stream_typed_events(upstream):
    upstream.reply(
        sse_response(
            [
                {"type": "message_start", "message": {**MESSAGE, "content": [], "stop_reason": None,
                                                      "usage": {"input_tokens": 12, "output_tokens": 1}}},
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                {"type": "ping"},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
                {"type": "content_block_stop", "index": 0},
                {"type": "message_delta", "delta": {"stop_reason": "end_turn", "stop_sequence": None},
                 "usage": {"output_tokens": 5}},
                {"type": "message_stop"},
            ],
            named=True,
        )
    )
    adapter = _adapter(upstream)

    events = [e async for e in await adapter.generate_stream(make_ctx(), _request(stream=True))]

    assert [e.delta for e in events if e.type is StreamEventType.DELTA] == ["Hel", "lo"]
    done = events[-1]
    assert done.type is StreamEventType.DONE
    assert done.finish_reason == "end_turn"
    assert done.usage == Usage(12, 5, 17)
    assert upstream.last_json()["stream"] is True


async def test_stream_error_event_is_in_band(upstream):
    upstream.reply(
        sse_response(
            [
                {"type": "message_start", "message": {**MESSAGE, "content": [], "stop_reason": None}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "par"}},
                {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            ],
            named=True,
        )
    )
    adapter = _adapter(upstream)

    events = [e async for e in await adapter.generate_stream(make_ctx(), _request(stream=True))]

    assert events[0].delta == "par"
    last = events[-1]
    assert last.type is StreamEventType.ERROR
    assert last.error_kind is ErrorKind.UPSTREAM_UNAVAILABLE
    assert sum(1 for e in events if e.is_terminal) == 1


@pytest.mark.parametrize(
    "status, etype, kind",
    [
        (401, "authentication_error", ErrorKind.UNAUTHORIZED),
        (403, "permission_error", ErrorKind.UNAUTHORIZED),
        (429, "rate_limit_error", ErrorKind.RATE_LIMITED_UPSTREAM),
        (529, "overloaded_error", ErrorKind.UPSTREAM_UNAVAILABLE),
        (404, "not_found_error", ErrorKind.INVALID_MODEL),
        (400, "invalid_request_error", ErrorKind.INVALID_REQUEST),
    ],
)
async def test_error_types(upstream, status, etype, kind):
    upstream.reply(json_response(status, {"type": "error", "error": {"type": etype, "message": "nope"}}))
    adapter = _adapter(upstream)

    with pytest.raises(LLMError) as ei:
        await adapter.generate(make_ctx(), _request())
    assert ei.value.kind is kind
    assert ei.value.details["vendor_code"] == etype
    assert ei.value.message == "nope"


async def test_static_catalog_and_health_probe(upstream):
    upstream.reply(json_response(200, MESSAGE))
    adapter = _adapter(upstream)

    models = await adapter.list_models(make_ctx())
    assert MODEL in {m.id for m in models}
    assert adapter.pricing_catalog()[MODEL].output_price == 0.00125

    await adapter.health_check(make_ctx())
    body = upstream.last_json()
    assert body["model"] == MODEL
    assert body["max_tokens"] == 1

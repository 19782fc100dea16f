# SPDX-License-Identifier: Apache-2.0
"""
Baichuan and ChatGLM: OpenAI wire format, vendor base URLs, static catalogs
and vendor error codes.
"""

import pytest

from llm_gateway.adapters import BaichuanAdapter, ChatGLMAdapter
from llm_gateway.config import BaichuanConfig, ChatGLMConfig
from llm_gateway.context import make_ctx
from llm_gateway.errors import ErrorKind, LLMError

from tests.conftest import chat_request, json_response, sse_response

pytestmark = pytest.mark.asyncio


def _completion(model, text="ok"):
    return {
        "id": "cmpl",
        "object": "chat.completion",
        "created": 0,
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3},
    }


async def test_baichuan_uses_vendor_base_url(upstream):
    upstream.reply(json_response(200, _completion("Baichuan4", "你好")))
    adapter = BaichuanAdapter(BaichuanConfig(name="bc", api_key="bc-key"), http_client=upstream.client())

    result = await adapter.generate(make_ctx(), chat_request(model="Baichuan4"))

    assert result.text == "你好"
    assert str(upstream.last.url) == "https://api.baichuan-ai.com/v1/chat/completions"
    assert upstream.last.headers["authorization"] == "Bearer bc-key"


async def test_chatglm_stream_has_no_stream_options(upstream):
    upstream.reply(
        sse_response(
            [
                {"id": "c", "object": "chat.completion.chunk", "created": 0, "model": "glm-4",
                 "choices": [{"index": 0, "delta": {"content": "hi"}, "finish_reason": None}]},
                {"id": "c", "object": "chat.completion.chunk", "created": 0, "model": "glm-4",
                 "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
                 "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}},
                "[DONE]",
            ]
        )
    )
    adapter = ChatGLMAdapter(ChatGLMConfig(name="glm", api_key="glm-key"), http_client=upstream.client())

    events = [e async for e in await adapter.generate_stream(make_ctx(), chat_request(model="glm-4", stream=True))]

    assert str(upstream.last.url) == "https://open.bigmodel.cn/api/paas/v4/chat/completions"
    assert "stream_options" not in upstream.last_json()
    assert events[-1].usage.total_tokens == 2


@pytest.mark.parametrize(
    "status, code, kind",
    [
        (429, "1113", ErrorKind.QUOTA_EXCEEDED),
        (429, "1302", ErrorKind.RATE_LIMITED_UPSTREAM),
        (401, "1000", ErrorKind.UNAUTHORIZED),
        (400, "1211", ErrorKind.INVALID_MODEL),
        (500, "1305", ErrorKind.UPSTREAM_UNAVAILABLE),
    ],
)
async def test_chatglm_business_codes(upstream, status, code, kind):
    upstream.reply(json_response(status, {"error": {"code": code, "message": "zhipu says no"}}))
    adapter = ChatGLMAdapter(ChatGLMConfig(name="glm", api_key="k"), http_client=upstream.client())

    with pytest.raises(LLMError) as ei:
        await adapter.generate(make_ctx(), chat_request(model="glm-4"))
    assert ei.value.kind is kind
    assert ei.value.details["vendor_code"] == code


async def test_baichuan_quota_code(upstream):
    upstream.reply(json_response(429, {"error": {"code": "insufficient_quota", "message": "no balance"}}))
    adapter = BaichuanAdapter(BaichuanConfig(name="bc", api_key="k"), http_client=upstream.client())

    with pytest.raises(LLMError) as ei:
        await adapter.generate(make_ctx(), chat_request(model="Baichuan4"))
    assert ei.value.kind is ErrorKind.QUOTA_EXCEEDED


async def test_static_catalog_and_probe(upstream):
    upstream.reply(json_response(200, _completion("glm-4")))
    adapter = ChatGLMAdapter(ChatGLMConfig(name="glm", api_key="k"), http_client=upstream.client())

    assert [m.id for m in await adapter.list_models(make_ctx())] == ["glm-4", "glm-4-air", "glm-4-flash"]
    assert len(upstream.requests) == 0

    await adapter.health_check(make_ctx())
    body = upstream.last_json()
    assert body["model"] == "glm-4"
    assert body["max_tokens"] == 1

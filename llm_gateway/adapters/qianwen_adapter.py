# llm_gateway/adapters/qianwen_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Qianwen (Alibaba DashScope) adapter.

DashScope's native text-generation protocol is not OpenAI-shaped, and there
is no official async SDK for it, so this adapter speaks HTTP directly through
``httpx`` (the same transport the OpenAI and Anthropic clients use).

Wire shape
----------
    POST {base}/services/aigc/text-generation/generation
    {
        "model": "qwen-turbo",
        "input": {"messages": [{"role": "user", "content": "hi"}]},
        "parameters": {"temperature": .., "max_tokens": .., "top_p": ..,
                       "stop": [..], "incremental_output": true}
    }

Responses carry ``output.text`` (or ``output.choices``), ``output.finish_reason``
and ``usage.{input,output,total}_tokens``. Streams are SSE ``data:`` lines;
in incremental mode every chunk holds only new text, and a finish reason
other than ``"null"`` marks the last one.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import httpx

from llm_gateway.adapters.base import (
    DONE_SENTINEL,
    HEALTH_PROBE_MAX_TOKENS,
    catalog_pricing,
    iter_sse_data,
    optional_params,
    translate_status_error,
    translate_transport_error,
)
from llm_gateway.config import QianwenConfig
from llm_gateway.context import CallContext
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.types import (
    ChatRequest,
    ChatResult,
    Choice,
    Message,
    ModelInfo,
    Pricing,
    ProviderKind,
    StreamEvent,
    Usage,
)

logger = logging.getLogger(__name__)

__all__ = ["QianwenAdapter", "QIANWEN_MODELS", "QIANWEN_ERROR_OVERRIDES"]

DEFAULT_QIANWEN_BASE_URL = "https://dashscope.aliyuncs.com/api/v1"
GENERATION_PATH = "/services/aigc/text-generation/generation"

QIANWEN_ERROR_OVERRIDES: Mapping[str, ErrorKind] = {
    "InvalidApiKey": ErrorKind.UNAUTHORIZED,
    "Throttling": ErrorKind.RATE_LIMITED_UPSTREAM,
    "Throttling.RateQuota": ErrorKind.RATE_LIMITED_UPSTREAM,
    "Throttling.AllocationQuota": ErrorKind.QUOTA_EXCEEDED,
    "Arrearage": ErrorKind.QUOTA_EXCEEDED,
    "InternalError.Timeout": ErrorKind.TIMEOUT,
    "InvalidParameter": ErrorKind.INVALID_PARAMETERS,
    "ModelNotFound": ErrorKind.INVALID_MODEL,
    "ModelUnavailable": ErrorKind.MODEL_UNAVAILABLE,
}

QIANWEN_MODELS: Tuple[ModelInfo, ...] = (
    ModelInfo(
        id="qwen-turbo",
        name="Qwen Turbo",
        provider=ProviderKind.QIANWEN,
        description="Fast conversational model for everyday chat",
        capabilities=("text", "function_calling"),
        max_tokens=1500,
        context_window=8192,
        pricing=Pricing(0.0008, 0.002, "CNY"),
    ),
    ModelInfo(
        id="qwen-plus",
        name="Qwen Plus",
        provider=ProviderKind.QIANWEN,
        description="Balanced capability and cost",
        capabilities=("text", "function_calling"),
        max_tokens=2000,
        context_window=32_768,
        pricing=Pricing(0.004, 0.012, "CNY"),
    ),
    ModelInfo(
        id="qwen-max",
        name="Qwen Max",
        provider=ProviderKind.QIANWEN,
        description="Most capable Qwen model for complex tasks",
        capabilities=("text", "function_calling", "multimodal"),
        max_tokens=2000,
        context_window=8192,
        pricing=Pricing(0.02, 0.06, "CNY"),
    ),
    ModelInfo(
        id="qwen-max-longcontext",
        name="Qwen Max Long Context",
        provider=ProviderKind.QIANWEN,
        description="Qwen Max with a long context window",
        capabilities=("text", "long_context"),
        max_tokens=2000,
        context_window=30_000,
        pricing=Pricing(0.02, 0.06, "CNY"),
    ),
)


def _usage(raw: Any) -> Optional[Usage]:
    if not isinstance(raw, Mapping):
        return None
    return Usage(
        prompt_tokens=int(raw.get("input_tokens") or 0),
        completion_tokens=int(raw.get("output_tokens") or 0),
        total_tokens=int(raw.get("total_tokens") or 0),
    ).normalized()


def _output_text(output: Mapping[str, Any]) -> str:
    """`output.text` in text mode, `output.choices[0].message.content` in message mode."""
    text = output.get("text")
    if text:
        return str(text)
    choices = output.get("choices") or []
    if choices and isinstance(choices[0], Mapping):
        msg = choices[0].get("message") or {}
        return str(msg.get("content") or "")
    return ""


def _finish_reason(output: Mapping[str, Any]) -> Optional[str]:
    reason = output.get("finish_reason")
    if not reason:
        choices = output.get("choices") or []
        if choices and isinstance(choices[0], Mapping):
            reason = choices[0].get("finish_reason")
    if not reason or reason == "null":
        return None
    return str(reason)


class QianwenAdapter:
    """
    Adapter for Qianwen models on DashScope.

    Parameters
    ----------
    config:
        Qianwen configuration; ``workspace`` becomes ``X-DashScope-WorkspaceId``.
    http_client:
        Optional shared ``httpx.AsyncClient``. When omitted the adapter owns
        (and closes) its own client.
    """

    def __init__(
        self,
        config: QianwenConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._name = config.name or ProviderKind.QIANWEN.value
        self.timeout_s: Optional[float] = config.timeout_s
        self._base_url = (config.base_url or DEFAULT_QIANWEN_BASE_URL).rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_s)

    def kind(self) -> ProviderKind:
        return ProviderKind.QIANWEN

    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self, *, stream: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["X-DashScope-SSE"] = "enable"
            headers["Accept"] = "text/event-stream"
        if self._config.workspace:
            headers["X-DashScope-WorkspaceId"] = self._config.workspace
        return headers

    @staticmethod
    def _body(request: ChatRequest, *, stream: bool) -> Dict[str, Any]:
        parameters = optional_params(request)
        # DashScope has no frequency penalty; presence penalty is accepted.
        parameters.pop("frequency_penalty", None)
        if stream:
            parameters["incremental_output"] = True
        parameters.update(request.extras)
        return {
            "model": request.model,
            "input": {"messages": [m.to_dict() for m in request.messages]},
            "parameters": parameters,
        }

    def _build(self, request: ChatRequest, *, stream: bool) -> httpx.Request:
        return self._http.build_request(
            "POST",
            self._base_url + GENERATION_PATH,
            json=self._body(request, stream=stream),
            headers=self._headers(stream=stream),
            timeout=self.timeout_s,
        )

    def _status_error(self, response: httpx.Response, raw: bytes, model: Optional[str]) -> LLMError:
        err = translate_status_error(
            provider=ProviderKind.QIANWEN,
            model=model,
            status=response.status_code,
            body=raw,
            headers=response.headers,
            overrides=QIANWEN_ERROR_OVERRIDES,
        )
        try:
            request_id = json.loads(raw).get("request_id")
        except (ValueError, AttributeError):
            request_id = None
        if request_id:
            err.details["request_id"] = request_id
        return err

    def _invalid(self, message: str, model: Optional[str]) -> LLMError:
        return LLMError(message, kind=ErrorKind.INVALID_RESPONSE, provider=ProviderKind.QIANWEN, model=model)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def generate(self, ctx: CallContext, request: ChatRequest) -> ChatResult:
        try:
            response = await self._http.send(self._build(request, stream=False))
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, provider=ProviderKind.QIANWEN, model=request.model) from exc

        if response.status_code >= 400:
            raise self._status_error(response, response.content, request.model)

        try:
            data = response.json()
        except ValueError as exc:
            raise self._invalid(f"malformed Qianwen response: {exc}", request.model) from exc
        if not isinstance(data, Mapping) or not isinstance(data.get("output"), Mapping):
            raise self._invalid("Qianwen response has no output", request.model)

        output = data["output"]
        return ChatResult(
            id=str(data.get("request_id") or ""),
            model=request.model,
            choices=(
                Choice(
                    index=0,
                    message=Message("assistant", _output_text(output)),
                    finish_reason=_finish_reason(output) or "",
                ),
            ),
            usage=_usage(data.get("usage")) or Usage(),
        )

    async def generate_stream(self, ctx: CallContext, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        try:
            response = await self._http.send(self._build(request, stream=True), stream=True)
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, provider=ProviderKind.QIANWEN, model=request.model) from exc

        if response.status_code >= 400:
            try:
                raw = await response.aread()
            finally:
                await response.aclose()
            raise self._status_error(response, raw, request.model)

        return self._iter_stream(response, request.model)

    async def _iter_stream(self, response: httpx.Response, model: str) -> AsyncIterator[StreamEvent]:
        usage: Optional[Usage] = None
        try:
            async for payload in iter_sse_data(response.aiter_lines()):
                if payload == DONE_SENTINEL:
                    break
                try:
                    data = json.loads(payload)
                except ValueError as exc:
                    yield StreamEvent.from_exception(self._invalid(f"malformed Qianwen event: {exc}", model))
                    return
                if not isinstance(data, Mapping):
                    yield StreamEvent.from_exception(self._invalid("Qianwen event is not an object", model))
                    return
                if data.get("code") and not data.get("output"):
                    # In-band failure after the 200 header.
                    err = translate_status_error(
                        provider=ProviderKind.QIANWEN,
                        model=model,
                        status=response.status_code,
                        body=data,
                        overrides=QIANWEN_ERROR_OVERRIDES,
                    )
                    yield StreamEvent.from_exception(err)
                    return

                output = data.get("output") or {}
                usage = _usage(data.get("usage")) or usage
                text = _output_text(output)
                if text:
                    yield StreamEvent.delta_event(text, index=0)
                finish = _finish_reason(output)
                if finish:
                    yield StreamEvent.done(finish, usage)
                    return
        except httpx.HTTPError as exc:
            err = translate_transport_error(exc, provider=ProviderKind.QIANWEN, model=model, streaming=True)
            logger.debug("%s stream failed: %s", self._name, err)
            yield StreamEvent.from_exception(err)
            return
        finally:
            await response.aclose()
        yield StreamEvent.done(None, usage)

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]:
        return list(QIANWEN_MODELS)

    async def health_check(self, ctx: CallContext) -> None:
        """One-token completion on the cheapest model."""
        probe = ChatRequest(
            model="qwen-turbo",
            messages=[Message("user", "ping")],
            max_tokens=HEALTH_PROBE_MAX_TOKENS,
        )
        await self.generate(ctx, probe)

    def pricing_catalog(self) -> Mapping[str, Pricing]:
        return catalog_pricing(list(QIANWEN_MODELS))

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

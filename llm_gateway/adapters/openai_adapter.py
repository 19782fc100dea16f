# llm_gateway/adapters/openai_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
OpenAI Chat Completions adapter (plus the OpenAI-compatible vendors).

Built on the official ``openai`` Python client (``AsyncOpenAI``). The client's
own retries are disabled; the dispatch core surfaces the first failure and
leaves retry decisions to callers.

Baichuan and ChatGLM expose OpenAI-compatible ``/chat/completions``
endpoints, so they reuse this adapter with their own base URL, catalog and
error-code overrides.

Usage
-----
    adapter = OpenAIAdapter(OpenAIConfig(name="p1", api_key="sk-..."))
    result = await adapter.generate(make_ctx(), ChatRequest(
        model="gpt-4o-mini",
        messages=[Message("user", "Hello!")],
    ))
    print(result.text)
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import httpx
import openai
from openai import AsyncOpenAI

from llm_gateway.adapters.base import (
    HEALTH_PROBE_MAX_TOKENS,
    catalog_pricing,
    optional_params,
    translate_status_error,
)
from llm_gateway.config import BaichuanConfig, ChatGLMConfig, ProviderConfig
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

__all__ = ["OpenAIAdapter", "BaichuanAdapter", "ChatGLMAdapter"]


# Static decoration for ids returned by GET /models.
_DISPLAY_NAMES = {
    "gpt-4": "GPT-4",
    "gpt-4-turbo": "GPT-4 Turbo",
    "gpt-4-turbo-preview": "GPT-4 Turbo Preview",
    "gpt-4o": "GPT-4o",
    "gpt-4o-mini": "GPT-4o Mini",
    "gpt-3.5-turbo": "GPT-3.5 Turbo",
    "gpt-3.5-turbo-16k": "GPT-3.5 Turbo 16K",
    "text-embedding-3-large": "Text Embedding 3 Large",
    "text-embedding-3-small": "Text Embedding 3 Small",
    "text-embedding-ada-002": "Text Embedding Ada 002",
}

_DESCRIPTIONS = {
    "gpt-4": "Most capable GPT-4 model for complex tasks",
    "gpt-4-turbo": "Faster, cheaper GPT-4",
    "gpt-4o": "Multimodal GPT-4 model",
    "gpt-4o-mini": "Lightweight GPT-4o",
    "gpt-3.5-turbo": "Fast, economical chat model",
    "text-embedding-3-large": "High quality text embeddings",
    "text-embedding-3-small": "Lightweight text embeddings",
}

_CAPABILITIES = {
    "gpt-4o": ("text", "image", "function_calling"),
    "gpt-4": ("text", "function_calling"),
    "gpt-4-turbo": ("text", "function_calling", "json_mode"),
    "gpt-3.5-turbo": ("text", "function_calling"),
    "text-embedding-3-large": ("embedding",),
    "text-embedding-3-small": ("embedding",),
}

# (max_tokens, context_window)
_LIMITS = {
    "gpt-4": (8192, 8192),
    "gpt-4-turbo": (128_000, 128_000),
    "gpt-4o": (128_000, 128_000),
    "gpt-4o-mini": (128_000, 128_000),
    "gpt-3.5-turbo": (4096, 4096),
}

_PRICING = {
    "gpt-4": Pricing(0.03, 0.06, "USD"),
    "gpt-4-turbo": Pricing(0.01, 0.03, "USD"),
    "gpt-4o": Pricing(0.005, 0.015, "USD"),
    "gpt-4o-mini": Pricing(0.00015, 0.0006, "USD"),
    "gpt-3.5-turbo": Pricing(0.0015, 0.002, "USD"),
}


def _usage(raw: Any) -> Optional[Usage]:
    if raw is None:
        return None
    return Usage(
        prompt_tokens=int(getattr(raw, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(raw, "completion_tokens", 0) or 0),
        total_tokens=int(getattr(raw, "total_tokens", 0) or 0),
    ).normalized()


class OpenAIAdapter:
    """
    Adapter backed by the OpenAI Chat Completions API.

    Parameters
    ----------
    config:
        Provider configuration. ``base_url`` falls back to the vendor default.
    client:
        Pre-built ``AsyncOpenAI`` (or compatible) client; overrides config.
    http_client:
        Optional ``httpx.AsyncClient`` handed to the SDK; used by tests to
        inject a mock transport and by hosts to share connection pools.
    """

    provider_kind = ProviderKind.OPENAI
    default_base_url = "https://api.openai.com/v1"
    # stream_options is OpenAI-only; compatible vendors reject it.
    include_stream_usage = True
    error_overrides: Mapping[str, ErrorKind] = {
        "invalid_api_key": ErrorKind.UNAUTHORIZED,
        "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
        "model_not_found": ErrorKind.INVALID_MODEL,
        "context_length_exceeded": ErrorKind.INVALID_REQUEST,
        "rate_limit_exceeded": ErrorKind.RATE_LIMITED_UPSTREAM,
    }

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._name = config.name or self.provider_kind.value
        self.timeout_s: Optional[float] = config.timeout_s
        self._client = client if client is not None else self._build_client(config, http_client)

    def _build_client(self, config: ProviderConfig, http_client: Optional[httpx.AsyncClient]) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=config.api_key,
            organization=getattr(config, "organization", None),
            project=getattr(config, "project", None),
            base_url=config.base_url or self.default_base_url,
            timeout=config.timeout_s,
            max_retries=0,
            http_client=http_client,
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def kind(self) -> ProviderKind:
        return self.provider_kind

    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request_kwargs(self, request: ChatRequest, *, stream: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [m.to_dict() for m in request.messages],
        }
        kwargs.update(optional_params(request))
        if stream:
            kwargs["stream"] = True
            if self.include_stream_usage:
                kwargs["stream_options"] = {"include_usage": True}
        if request.extras:
            kwargs["extra_body"] = dict(request.extras)
        return kwargs

    def _translate_error(self, err: Exception, model: Optional[str], *, streaming: bool = False) -> LLMError:
        """
        Map ``openai`` client errors into the gateway taxonomy.

        Status errors go through the shared status/body-code table; transport
        failures split into timeouts, connect failures and (mid-stream)
        closed streams.
        """
        if isinstance(err, LLMError):
            return err.with_origin(provider=self.provider_kind, model=model)

        if isinstance(err, openai.APIStatusError):
            response = getattr(err, "response", None)
            return translate_status_error(
                provider=self.provider_kind,
                model=model,
                status=int(err.status_code),
                body=err.body if err.body is not None else getattr(err, "message", None),
                headers=getattr(response, "headers", None),
                overrides=self.error_overrides,
            )

        if isinstance(err, openai.APITimeoutError) or isinstance(err, httpx.TimeoutException):
            return LLMError(
                f"{self.provider_kind.value} request timed out",
                kind=ErrorKind.TIMEOUT,
                provider=self.provider_kind,
                model=model,
            )

        if isinstance(err, openai.APIConnectionError):
            return LLMError(
                str(err) or f"{self.provider_kind.value} connection error",
                kind=ErrorKind.API_CALL_FAILED,
                provider=self.provider_kind,
                model=model,
            )

        if streaming and isinstance(err, (httpx.TransportError, httpx.StreamError)):
            return LLMError(
                str(err) or "stream closed by upstream",
                kind=ErrorKind.STREAM_CLOSED,
                provider=self.provider_kind,
                model=model,
            )

        if isinstance(err, ValueError):
            # json.JSONDecodeError and pydantic validation failures
            return LLMError(
                f"malformed {self.provider_kind.value} response: {err}",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.provider_kind,
                model=model,
            )

        if isinstance(err, openai.APIError):
            # In-band error events on a stream carry an error body but no status.
            kind = self.error_overrides.get(str(getattr(err, "code", "") or ""))
            return LLMError(
                err.message or f"{self.provider_kind.value} API error",
                kind=kind or ErrorKind.API_CALL_FAILED,
                provider=self.provider_kind,
                model=model,
            )

        return LLMError(
            str(err) or f"{self.provider_kind.value} adapter error",
            kind=ErrorKind.API_CALL_FAILED,
            provider=self.provider_kind,
            model=model,
            details={"error": type(err).__name__},
        )

    def _result_from_response(self, resp: Any, model: str) -> ChatResult:
        raw_choices = getattr(resp, "choices", None) or []
        if not raw_choices:
            raise LLMError(
                f"{self.provider_kind.value} returned no choices",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=self.provider_kind,
                model=model,
            )
        choices: List[Choice] = []
        for i, ch in enumerate(raw_choices):
            msg = getattr(ch, "message", None)
            choices.append(
                Choice(
                    index=int(getattr(ch, "index", i) or i),
                    message=Message(
                        role=getattr(msg, "role", None) or "assistant",
                        content=getattr(msg, "content", None) or "",
                    ),
                    finish_reason=str(getattr(ch, "finish_reason", "") or ""),
                )
            )
        return ChatResult(
            id=str(getattr(resp, "id", "") or ""),
            model=getattr(resp, "model", None) or model,
            choices=tuple(choices),
            usage=_usage(getattr(resp, "usage", None)) or Usage(),
            created=int(getattr(resp, "created", 0) or 0),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def generate(self, ctx: CallContext, request: ChatRequest) -> ChatResult:
        kwargs = self._request_kwargs(request, stream=False)
        try:
            resp = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, request.model) from exc
        return self._result_from_response(resp, request.model)

    async def generate_stream(self, ctx: CallContext, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """
        Open a streaming completion.

        Errors establishing the stream are raised here; everything after the
        response headers arrive is reported in-band by the returned iterator.
        """
        kwargs = self._request_kwargs(request, stream=True)
        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, request.model) from exc
        return self._iter_stream(stream, request.model)

    async def _iter_stream(self, stream: Any, model: str) -> AsyncIterator[StreamEvent]:
        # The SDK ends iteration on `data: [DONE]`; the terminal event is
        # emitted after that so it can carry the trailing usage chunk.
        finish_reason: Optional[str] = None
        usage: Optional[Usage] = None
        try:
            async for chunk in stream:
                chunk_usage = _usage(getattr(chunk, "usage", None))
                if chunk_usage is not None:
                    usage = chunk_usage
                for choice in getattr(chunk, "choices", None) or []:
                    delta = getattr(choice, "delta", None)
                    text = getattr(delta, "content", None) if delta is not None else None
                    if text:
                        yield StreamEvent.delta_event(text, index=int(getattr(choice, "index", 0) or 0))
                    if getattr(choice, "finish_reason", None):
                        finish_reason = str(choice.finish_reason)
        except Exception as exc:  # noqa: BLE001
            err = self._translate_error(exc, model, streaming=True)
            logger.debug("%s stream failed: %s", self._name, err)
            yield StreamEvent.from_exception(err)
            return
        finally:
            await stream.close()
        yield StreamEvent.done(finish_reason, usage)

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]:
        try:
            page = await self._client.models.list()
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, None) from exc
        models: List[ModelInfo] = []
        for item in getattr(page, "data", None) or []:
            mid = str(getattr(item, "id", "") or "")
            if not mid:
                continue
            max_tokens, window = _LIMITS.get(mid, (4096, 4096))
            models.append(
                ModelInfo(
                    id=mid,
                    name=_DISPLAY_NAMES.get(mid, mid),
                    provider=self.provider_kind,
                    description=_DESCRIPTIONS.get(mid, ""),
                    capabilities=_CAPABILITIES.get(mid, ("text",)),
                    max_tokens=max_tokens,
                    context_window=window,
                    pricing=_PRICING.get(mid),
                )
            )
        return models

    async def health_check(self, ctx: CallContext) -> None:
        """GET /models: authenticated and free."""
        try:
            await self._client.models.list()
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, None) from exc

    def pricing_catalog(self) -> Mapping[str, Pricing]:
        return dict(_PRICING)

    async def close(self) -> None:
        await self._client.close()


class _CompatibleAdapter(OpenAIAdapter):
    """
    OpenAI-compatible vendor without a trustworthy model listing.

    Serves a static catalog and health-checks with a one-token completion
    against the first catalog model.
    """

    include_stream_usage = False
    catalog: tuple = ()

    def _build_client(self, config: ProviderConfig, http_client: Optional[httpx.AsyncClient]) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url or self.default_base_url,
            timeout=config.timeout_s,
            max_retries=0,
            http_client=http_client,
        )

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]:
        return list(self.catalog)

    async def health_check(self, ctx: CallContext) -> None:
        probe = ChatRequest(
            model=self.catalog[0].id,
            messages=[Message("user", "ping")],
            max_tokens=HEALTH_PROBE_MAX_TOKENS,
        )
        await self.generate(ctx, probe)

    def pricing_catalog(self) -> Mapping[str, Pricing]:
        return catalog_pricing(list(self.catalog))


class BaichuanAdapter(_CompatibleAdapter):
    provider_kind = ProviderKind.BAICHUAN
    default_base_url = "https://api.baichuan-ai.com/v1"
    error_overrides: Mapping[str, ErrorKind] = {
        "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
        "rate_limit_exceeded": ErrorKind.RATE_LIMITED_UPSTREAM,
        "invalid_api_key": ErrorKind.UNAUTHORIZED,
    }
    catalog = (
        ModelInfo(
            id="Baichuan4",
            name="Baichuan 4",
            provider=ProviderKind.BAICHUAN,
            capabilities=("text",),
            max_tokens=4096,
            context_window=32_768,
        ),
        ModelInfo(
            id="Baichuan3-Turbo",
            name="Baichuan 3 Turbo",
            provider=ProviderKind.BAICHUAN,
            capabilities=("text",),
            max_tokens=4096,
            context_window=32_768,
        ),
        ModelInfo(
            id="Baichuan2-Turbo",
            name="Baichuan 2 Turbo",
            provider=ProviderKind.BAICHUAN,
            capabilities=("text",),
            max_tokens=4096,
            context_window=32_768,
        ),
    )

    def __init__(self, config: BaichuanConfig, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)


class ChatGLMAdapter(_CompatibleAdapter):
    provider_kind = ProviderKind.CHATGLM
    default_base_url = "https://open.bigmodel.cn/api/paas/v4"
    # Zhipu business codes ride inside {"error": {"code": "..."}}
    error_overrides: Mapping[str, ErrorKind] = {
        "1000": ErrorKind.UNAUTHORIZED,
        "1001": ErrorKind.UNAUTHORIZED,
        "1113": ErrorKind.QUOTA_EXCEEDED,
        "1211": ErrorKind.INVALID_MODEL,
        "1302": ErrorKind.RATE_LIMITED_UPSTREAM,
        "1303": ErrorKind.RATE_LIMITED_UPSTREAM,
        "1304": ErrorKind.QUOTA_EXCEEDED,
        "1305": ErrorKind.UPSTREAM_UNAVAILABLE,
    }
    catalog = (
        ModelInfo(
            id="glm-4",
            name="GLM-4",
            provider=ProviderKind.CHATGLM,
            capabilities=("text", "function_calling"),
            max_tokens=4096,
            context_window=128_000,
        ),
        ModelInfo(
            id="glm-4-air",
            name="GLM-4 Air",
            provider=ProviderKind.CHATGLM,
            capabilities=("text", "function_calling"),
            max_tokens=4096,
            context_window=128_000,
        ),
        ModelInfo(
            id="glm-4-flash",
            name="GLM-4 Flash",
            provider=ProviderKind.CHATGLM,
            capabilities=("text",),
            max_tokens=4096,
            context_window=128_000,
        ),
    )

    def __init__(self, config: ChatGLMConfig, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)


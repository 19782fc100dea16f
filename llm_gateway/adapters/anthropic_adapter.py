# llm_gateway/adapters/anthropic_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Claude adapter on the Anthropic Messages API.

Uses the official ``anthropic`` Python client (``AsyncAnthropic``), which
sends ``x-api-key`` and the configured ``anthropic-version`` header.

Anthropic nuances handled here:
- ``system`` is a top-level field, not a message role; system messages are
  folded into it.
- ``max_tokens`` is mandatory; 4096 is injected when the caller left it unset.
- ``stop`` is sent as ``stop_sequences``; frequency/presence penalties are
  not accepted and are dropped.
- Streaming arrives as typed events: ``message_start`` (input usage),
  ``content_block_delta`` (text), ``message_delta`` (stop reason, output
  usage) and ``message_stop`` (end of message).
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import anthropic
import httpx
from anthropic import AsyncAnthropic

from llm_gateway.adapters.base import HEALTH_PROBE_MAX_TOKENS, catalog_pricing, translate_status_error
from llm_gateway.config import ClaudeConfig
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

__all__ = ["ClaudeAdapter", "DEFAULT_CLAUDE_MAX_TOKENS", "CLAUDE_MODELS"]

DEFAULT_CLAUDE_BASE_URL = "https://api.anthropic.com"
DEFAULT_CLAUDE_VERSION = "2023-06-01"
DEFAULT_CLAUDE_MAX_TOKENS = 4096

CLAUDE_MODELS: Tuple[ModelInfo, ...] = (
    ModelInfo(
        id="claude-3-5-sonnet-20241022",
        name="Claude 3.5 Sonnet",
        provider=ProviderKind.CLAUDE,
        description="Claude 3.5 Sonnet, balanced capability and speed",
        capabilities=("text", "vision", "function_calling"),
        max_tokens=8192,
        context_window=200_000,
        pricing=Pricing(0.003, 0.015, "USD"),
    ),
    ModelInfo(
        id="claude-3-opus-20240229",
        name="Claude 3 Opus",
        provider=ProviderKind.CLAUDE,
        description="Most capable Claude 3 model for complex tasks",
        capabilities=("text", "vision", "function_calling"),
        max_tokens=4096,
        context_window=200_000,
        pricing=Pricing(0.015, 0.075, "USD"),
    ),
    ModelInfo(
        id="claude-3-haiku-20240307",
        name="Claude 3 Haiku",
        provider=ProviderKind.CLAUDE,
        description="Fast, economical Claude model",
        capabilities=("text", "vision"),
        max_tokens=4096,
        context_window=200_000,
        pricing=Pricing(0.00025, 0.00125, "USD"),
    ),
)

_HEALTH_MODEL = "claude-3-haiku-20240307"

_ERROR_OVERRIDES: Mapping[str, ErrorKind] = {
    "authentication_error": ErrorKind.UNAUTHORIZED,
    "permission_error": ErrorKind.UNAUTHORIZED,
    "rate_limit_error": ErrorKind.RATE_LIMITED_UPSTREAM,
    "overloaded_error": ErrorKind.UPSTREAM_UNAVAILABLE,
    "api_error": ErrorKind.UPSTREAM_UNAVAILABLE,
    "not_found_error": ErrorKind.INVALID_MODEL,
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
    "request_too_large": ErrorKind.INVALID_REQUEST,
}


def _field(obj: Any, name: str) -> Any:
    """Attribute or key access; undeclared event fields arrive as dicts."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


class ClaudeAdapter:
    """
    Adapter for Anthropic Claude models.

    Parameters
    ----------
    config:
        Claude configuration; ``api_version`` is sent as ``anthropic-version``.
    client:
        Pre-built ``AsyncAnthropic`` client; overrides config.
    http_client:
        Optional ``httpx.AsyncClient`` handed to the SDK.
    """

    def __init__(
        self,
        config: ClaudeConfig,
        *,
        client: Optional[AsyncAnthropic] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._name = config.name or ProviderKind.CLAUDE.value
        self.timeout_s: Optional[float] = config.timeout_s
        self._client = client or AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url or DEFAULT_CLAUDE_BASE_URL,
            timeout=config.timeout_s,
            max_retries=0,
            default_headers={"anthropic-version": config.api_version or DEFAULT_CLAUDE_VERSION},
            http_client=http_client,
        )

    def kind(self) -> ProviderKind:
        return ProviderKind.CLAUDE

    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _split_system(messages: List[Message]) -> Tuple[List[Dict[str, str]], Optional[str]]:
        system_parts: List[str] = []
        out: List[Dict[str, str]] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
                continue
            out.append({"role": m.role, "content": m.content})
        if len(system_parts) > 1:
            logger.debug("Merged %d system messages for Claude", len(system_parts))
        return out, ("\n\n".join(system_parts) if system_parts else None)

    def _request_kwargs(self, request: ChatRequest, *, stream: bool) -> Dict[str, Any]:
        messages, system = self._split_system(request.messages)
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens if request.max_tokens is not None else DEFAULT_CLAUDE_MAX_TOKENS,
        }
        if system:
            kwargs["system"] = system
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.top_p is not None:
            kwargs["top_p"] = request.top_p
        if request.stop:
            kwargs["stop_sequences"] = list(request.stop)
        if stream:
            kwargs["stream"] = True
        if request.extras:
            kwargs["extra_body"] = dict(request.extras)
        return kwargs

    def _translate_error(self, err: Exception, model: Optional[str], *, streaming: bool = False) -> LLMError:
        if isinstance(err, LLMError):
            return err.with_origin(provider=ProviderKind.CLAUDE, model=model)

        if isinstance(err, anthropic.APIStatusError):
            # Stream `error` events surface as status errors on a 200 response;
            # the body type decides the kind.
            response = getattr(err, "response", None)
            return translate_status_error(
                provider=ProviderKind.CLAUDE,
                model=model,
                status=int(err.status_code),
                body=err.body if err.body is not None else getattr(err, "message", None),
                headers=getattr(response, "headers", None),
                overrides=_ERROR_OVERRIDES,
            )

        if isinstance(err, (anthropic.APITimeoutError, httpx.TimeoutException)):
            return LLMError(
                "Claude request timed out",
                kind=ErrorKind.TIMEOUT,
                provider=ProviderKind.CLAUDE,
                model=model,
            )

        if isinstance(err, anthropic.APIConnectionError):
            return LLMError(
                str(err) or "Claude connection error",
                kind=ErrorKind.API_CALL_FAILED,
                provider=ProviderKind.CLAUDE,
                model=model,
            )

        if streaming and isinstance(err, (httpx.TransportError, httpx.StreamError)):
            return LLMError(
                str(err) or "Claude stream closed",
                kind=ErrorKind.STREAM_CLOSED,
                provider=ProviderKind.CLAUDE,
                model=model,
            )

        if isinstance(err, ValueError):
            return LLMError(
                f"malformed Claude response: {err}",
                kind=ErrorKind.INVALID_RESPONSE,
                provider=ProviderKind.CLAUDE,
                model=model,
            )

        return LLMError(
            str(err) or "Claude adapter error",
            kind=ErrorKind.API_CALL_FAILED,
            provider=ProviderKind.CLAUDE,
            model=model,
            details={"error": type(err).__name__},
        )

    @staticmethod
    def _usage(raw: Any) -> Usage:
        prompt = int(_field(raw, "input_tokens") or 0)
        completion = int(_field(raw, "output_tokens") or 0)
        return Usage(prompt, completion, prompt + completion)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def generate(self, ctx: CallContext, request: ChatRequest) -> ChatResult:
        kwargs = self._request_kwargs(request, stream=False)
        try:
            resp = await self._client.messages.create(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, request.model) from exc

        blocks = getattr(resp, "content", None) or []
        text = "".join(
            _field(b, "text") or "" for b in blocks if _field(b, "type") == "text"
        )
        return ChatResult(
            id=str(getattr(resp, "id", "") or ""),
            model=getattr(resp, "model", None) or request.model,
            choices=(
                Choice(
                    index=0,
                    message=Message("assistant", text),
                    finish_reason=str(getattr(resp, "stop_reason", "") or ""),
                ),
            ),
            usage=self._usage(getattr(resp, "usage", None)),
        )

    async def generate_stream(self, ctx: CallContext, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(request, stream=True)
        try:
            stream = await self._client.messages.create(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise self._translate_error(exc, request.model) from exc
        return self._iter_stream(stream, request.model)

    async def _iter_stream(self, stream: Any, model: str) -> AsyncIterator[StreamEvent]:
        prompt_tokens = 0
        completion_tokens = 0
        stop_reason: Optional[str] = None
        try:
            async for event in stream:
                etype = _field(event, "type")
                if etype == "message_start":
                    usage = _field(_field(event, "message"), "usage")
                    prompt_tokens = int(_field(usage, "input_tokens") or prompt_tokens)
                    completion_tokens = int(_field(usage, "output_tokens") or completion_tokens)
                elif etype == "content_block_delta":
                    delta = _field(event, "delta")
                    if _field(delta, "type") == "text_delta" and _field(delta, "text"):
                        yield StreamEvent.delta_event(str(_field(delta, "text")), index=0)
                elif etype == "message_delta":
                    stop_reason = _field(_field(event, "delta"), "stop_reason") or stop_reason
                    completion_tokens = int(_field(_field(event, "usage"), "output_tokens") or completion_tokens)
                elif etype == "message_stop":
                    # Some proxies inline the final message on the stop event.
                    final = _field(event, "message")
                    if final is not None:
                        stop_reason = _field(final, "stop_reason") or stop_reason
                        usage = _field(final, "usage")
                        prompt_tokens = int(_field(usage, "input_tokens") or prompt_tokens)
                        completion_tokens = int(_field(usage, "output_tokens") or completion_tokens)
                    break
        except Exception as exc:  # noqa: BLE001
            err = self._translate_error(exc, model, streaming=True)
            logger.debug("%s stream failed: %s", self._name, err)
            yield StreamEvent.from_exception(err)
            return
        finally:
            await stream.close()
        yield StreamEvent.done(
            stop_reason,
            Usage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens),
        )

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]:
        return list(CLAUDE_MODELS)

    async def health_check(self, ctx: CallContext) -> None:
        """One-token completion against the cheapest model."""
        probe = ChatRequest(
            model=_HEALTH_MODEL,
            messages=[Message("user", "ping")],
            max_tokens=HEALTH_PROBE_MAX_TOKENS,
        )
        await self.generate(ctx, probe)

    def pricing_catalog(self) -> Mapping[str, Pricing]:
        return catalog_pricing(list(CLAUDE_MODELS))

    async def close(self) -> None:
        await self._client.close()

# llm_gateway/adapters/base.py
# SPDX-License-Identifier: Apache-2.0
"""
Adapter contract and the helpers every vendor adapter shares.

Adapters are self-contained: each one owns its client, its wire mapping and
its error translation. What they share lives here:

- :class:`LLMAdapter`, the structural protocol the dispatcher relies on.
- Request field selection (only set fields are sent).
- Status + body-code error translation with vendor overrides.
- SSE ``data:`` line framing for adapters that speak HTTP directly.
- Transport exception mapping for ``httpx``.
"""

from __future__ import annotations

import json
import logging
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

import httpx

from llm_gateway.context import CallContext
from llm_gateway.errors import ErrorKind, LLMError, extract_retry_after_ms, kind_for_status
from llm_gateway.types import ChatRequest, ChatResult, ModelInfo, Pricing, ProviderKind, StreamEvent

logger = logging.getLogger(__name__)

__all__ = [
    "LLMAdapter",
    "DONE_SENTINEL",
    "HEALTH_PROBE_MAX_TOKENS",
    "optional_params",
    "error_body_fields",
    "translate_status_error",
    "translate_transport_error",
    "iter_sse_data",
    "catalog_pricing",
]

DONE_SENTINEL = "[DONE]"
HEALTH_PROBE_MAX_TOKENS = 1


@runtime_checkable
class LLMAdapter(Protocol):
    """
    What the dispatcher needs from a vendor adapter.

    ``generate_stream`` returns an async iterator that yields zero or more
    delta events followed by exactly one terminal event. Errors raised
    before the first event (bad status, connection refused) propagate as
    :class:`LLMError`; errors after that are yielded in-band.
    """

    timeout_s: Optional[float]

    def kind(self) -> ProviderKind: ...

    def name(self) -> str: ...

    async def generate(self, ctx: CallContext, request: ChatRequest) -> ChatResult: ...

    async def generate_stream(self, ctx: CallContext, request: ChatRequest) -> AsyncIterator[StreamEvent]: ...

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]: ...

    async def health_check(self, ctx: CallContext) -> None: ...

    def pricing_catalog(self) -> Mapping[str, Pricing]: ...

    async def close(self) -> None: ...


def optional_params(request: ChatRequest, *, stop_field: str = "stop") -> Dict[str, Any]:
    """
    Sampling fields that were actually set, keyed by vendor field names.

    Vendors differ in how they treat explicit nulls/zeros, so unset values are
    left out entirely.
    """
    out: Dict[str, Any] = {}
    if request.temperature is not None:
        out["temperature"] = request.temperature
    if request.max_tokens is not None:
        out["max_tokens"] = request.max_tokens
    if request.top_p is not None:
        out["top_p"] = request.top_p
    if request.frequency_penalty is not None:
        out["frequency_penalty"] = request.frequency_penalty
    if request.presence_penalty is not None:
        out["presence_penalty"] = request.presence_penalty
    if request.stop:
        out[stop_field] = list(request.stop)
    return out


def error_body_fields(body: Any) -> tuple:
    """
    Pull ``(code, message)`` out of a vendor error body.

    Understands the three shapes seen in practice:
    ``{"error": {"code"|"type": .., "message": ..}}`` (OpenAI-style and
    Claude), an already unwrapped inner object, and flat
    ``{"code": .., "message": ..}`` (DashScope).
    """
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except ValueError:
            return None, None
    if not isinstance(body, Mapping):
        return None, None
    inner = body.get("error")
    if isinstance(inner, Mapping):
        body = inner
    code = body.get("code") or body.get("type")
    message = body.get("message")
    return (str(code) if code not in (None, "") else None), (str(message) if message else None)


def translate_status_error(
    *,
    provider: ProviderKind,
    model: Optional[str],
    status: int,
    body: Any,
    headers: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, ErrorKind]] = None,
) -> LLMError:
    """
    Map an HTTP error response into exactly one :class:`ErrorKind`.

    A vendor body code listed in ``overrides`` wins over the status baseline,
    so e.g. a 429 carrying a quota code surfaces as ``quota_exceeded``.
    """
    code, message = error_body_fields(body)
    kind = None
    if code and overrides:
        kind = overrides.get(code)
    if kind is None:
        kind = kind_for_status(status)
    details: Dict[str, Any] = {"status": status}
    if code:
        details["vendor_code"] = code
    return LLMError(
        message or f"{provider.value} returned HTTP {status}",
        kind=kind,
        provider=provider,
        model=model,
        details=details,
        retry_after_ms=extract_retry_after_ms(headers),
        status_code=status,
    )


def translate_transport_error(
    err: Exception,
    *,
    provider: ProviderKind,
    model: Optional[str],
    streaming: bool = False,
) -> LLMError:
    """Map ``httpx`` transport failures; mid-stream read failures become ``stream_closed``."""
    if isinstance(err, httpx.TimeoutException):
        kind = ErrorKind.TIMEOUT
    elif streaming and isinstance(err, (httpx.ReadError, httpx.RemoteProtocolError, httpx.StreamError)):
        kind = ErrorKind.STREAM_CLOSED
    else:
        kind = ErrorKind.API_CALL_FAILED
    return LLMError(
        str(err) or f"{provider.value} transport error",
        kind=kind,
        provider=provider,
        model=model,
        details={"error": type(err).__name__},
    )


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Yield the trimmed payload of each ``data:`` line.

    Comment lines, ``event:``/``id:`` fields and blank separators are
    skipped. Whitespace after ``data:`` is optional, as DashScope omits it.
    """
    async for raw in lines:
        line = raw.strip()
        if not line or not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload:
            yield payload


def catalog_pricing(models: List[ModelInfo]) -> Dict[str, Pricing]:
    return {m.id: m.pricing for m in models if m.pricing is not None}

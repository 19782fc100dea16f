# llm_gateway/mock_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Scripted in-process adapter for tests and demos.

Nothing here touches the network. Behaviour is driven by the constructor
arguments and by the per-call scripts queued with :meth:`MockAdapter.push`
and :meth:`MockAdapter.push_stream`:

    adapter = MockAdapter(name="p1")
    adapter.push(LLMError("busy", kind=ErrorKind.UPSTREAM_UNAVAILABLE))
    adapter.push_stream([StreamEvent.delta_event("he"), StreamEvent.done()])

Queued items are consumed in order; when the queue is empty the adapter
echoes the last user message back.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Deque, Iterable, List, Mapping, Optional, Sequence, Union

from llm_gateway.context import CallContext
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

__all__ = ["MockAdapter"]

ScriptItem = Union[ChatResult, BaseException]
StreamItem = Union[StreamEvent, BaseException]


class MockAdapter:
    """
    Deterministic adapter double.

    Args:
        name: Provider instance name.
        kind: Reported provider kind (pricing and metrics key off it).
        latency_s: Sleep before answering; also between stream events.
        timeout_s: Adapter-level timeout the dispatcher should apply.
        usage: Usage reported by the default echo reply.
        models: Catalog returned by :meth:`list_models`.
        health_error: Raised by :meth:`health_check` when set.
    """

    def __init__(
        self,
        *,
        name: str = "mock",
        kind: ProviderKind = ProviderKind.OPENAI,
        latency_s: float = 0.0,
        timeout_s: Optional[float] = 30.0,
        usage: Usage = Usage(prompt_tokens=1, completion_tokens=1, total_tokens=2),
        models: Sequence[ModelInfo] = (),
        pricing: Optional[Mapping[str, Pricing]] = None,
        health_error: Optional[BaseException] = None,
    ) -> None:
        self._name = name
        self._kind = kind
        self.latency_s = latency_s
        self.timeout_s = timeout_s
        self.usage = usage
        self.models = list(models)
        self._pricing = dict(pricing or {})
        self.health_error = health_error
        self._script: Deque[ScriptItem] = deque()
        self._streams: Deque[List[StreamItem]] = deque()
        self.calls = 0
        self.stream_calls = 0
        self.requests: List[ChatRequest] = []
        self.closed = False

    # -- scripting ----------------------------------------------------------

    def push(self, *items: ScriptItem) -> None:
        self._script.extend(items)

    def push_stream(self, events: Iterable[StreamItem]) -> None:
        self._streams.append(list(events))

    # -- LLMAdapter ---------------------------------------------------------

    def kind(self) -> ProviderKind:
        return self._kind

    def name(self) -> str:
        return self._name

    async def generate(self, ctx: CallContext, request: ChatRequest) -> ChatResult:
        self.calls += 1
        self.requests.append(request)
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self._script:
            item = self._script.popleft()
            if isinstance(item, BaseException):
                raise item
            return item
        return self._echo(request)

    async def generate_stream(self, ctx: CallContext, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        self.stream_calls += 1
        self.requests.append(request)
        if self._streams:
            script = self._streams.popleft()
        else:
            reply = self._echo(request)
            script = [StreamEvent.delta_event(reply.text), StreamEvent.done("stop", reply.usage)]
        if script and isinstance(script[0], BaseException):
            raise script[0]
        return self._play(script)

    async def _play(self, script: List[StreamItem]) -> AsyncIterator[StreamEvent]:
        for item in script:
            if self.latency_s:
                await asyncio.sleep(self.latency_s)
            if isinstance(item, BaseException):
                raise item
            yield item

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]:
        return list(self.models)

    async def health_check(self, ctx: CallContext) -> None:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self.health_error is not None:
            raise self.health_error

    def pricing_catalog(self) -> Mapping[str, Pricing]:
        return dict(self._pricing)

    async def close(self) -> None:
        self.closed = True

    # -- helpers ------------------------------------------------------------

    def _echo(self, request: ChatRequest) -> ChatResult:
        text = ""
        for m in reversed(request.messages):
            if m.role == "user":
                text = m.content
                break
        return ChatResult(
            id=f"mock-{self.calls + self.stream_calls}",
            model=request.model,
            choices=(Choice(index=0, message=Message("assistant", text), finish_reason="stop"),),
            usage=self.usage,
        )

# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures for the dispatch core test suite.

Vendor HTTP is faked with ``httpx.MockTransport``; every adapter accepts the
resulting ``httpx.AsyncClient`` through ``http_client=``. Handlers record the
requests they saw so tests can assert on the outgoing wire format.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import httpx
import pytest

from llm_gateway.types import ChatRequest, Message


class FakeClock:
    """Manually advanced monotonic clock for limiters and breakers."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Upstream:
    """
    Scripted vendor endpoint.

    Queue responses with :meth:`reply`; each incoming request pops the next
    one (the last one repeats). Seen requests are kept in ``requests``.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._responses: List[httpx.Response] = []

    def reply(self, *responses: httpx.Response) -> "Upstream":
        self._responses.extend(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            return httpx.Response(500, json={"error": {"message": "no scripted response"}})
        if len(self._responses) > 1:
            return self._responses.pop(0)
        return self._responses[0]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.last.content)


def json_response(status: int, body: Any, headers: Optional[Mapping[str, str]] = None) -> httpx.Response:
    return httpx.Response(status, json=body, headers=dict(headers or {}))


def sse_response(
    events: Iterable[Union[str, Mapping[str, Any]]],
    *,
    named: bool = False,
    prefix: str = "data: ",
) -> httpx.Response:
    """
    Build an SSE body. Mappings are JSON-encoded; strings are sent as-is.

    With ``named=True`` each mapping gets an ``event: <type>`` line, which the
    Anthropic client needs to route typed events.
    """
    chunks: List[str] = []
    for ev in events:
        if isinstance(ev, str):
            chunks.append(f"{prefix}{ev}\n\n")
            continue
        line = f"{prefix}{json.dumps(ev)}\n\n"
        if named:
            line = f"event: {ev.get('type')}\n" + line
        chunks.append(line)
    return httpx.Response(
        200,
        content="".join(chunks).encode("utf-8"),
        headers={"content-type": "text/event-stream"},
    )


def chat_request(model: str = "gpt-4o-mini", text: str = "hi", **kwargs: Any) -> ChatRequest:
    return ChatRequest(model=model, messages=[Message("user", text)], **kwargs)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_request() -> Callable[..., ChatRequest]:
    return chat_request

# llm_gateway/types.py
# SPDX-License-Identifier: Apache-2.0
"""
Uniform request / result / event shapes shared by every adapter.

Adapters translate these into a vendor wire format and back; nothing in here
knows about any particular vendor.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from llm_gateway.errors import ErrorKind, LLMError

__all__ = [
    "ProviderKind",
    "Message",
    "ChatRequest",
    "Usage",
    "Choice",
    "ChatResult",
    "StreamEventType",
    "StreamEvent",
    "ModelInfo",
    "Pricing",
]

ALLOWED_ROLES = ("system", "user", "assistant")


class ProviderKind(str, Enum):
    OPENAI = "openai"
    AZURE_OPENAI = "azure_openai"
    QIANWEN = "qianwen"
    CLAUDE = "claude"
    BAICHUAN = "baichuan"
    CHATGLM = "chatglm"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Any) -> "ProviderKind":
        """Resolve a kind from its string value; unknown kinds are refused."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise LLMError(
                f"unknown provider kind: {value!r}",
                kind=ErrorKind.INVALID_CONFIG,
            ) from None


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        out = {"role": self.role, "content": self.content}
        if self.name:
            out["name"] = self.name
        return out


@dataclass
class ChatRequest:
    """
    Vendor-neutral chat completion request.

    Optional sampling fields left as None are omitted from the outgoing
    vendor payload rather than sent as zero values. ``extras`` is passed
    through to the vendor body untouched.
    """
    model: str
    messages: List[Message]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[List[str]] = None
    stream: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ChatRequest":
        messages = [
            m if isinstance(m, Message) else Message(
                role=str(m.get("role", "")),
                content=str(m.get("content", "")),
                name=m.get("name"),
            )
            for m in data.get("messages") or []
        ]
        stop = data.get("stop")
        if isinstance(stop, str):
            stop = [stop]
        return cls(
            model=str(data.get("model") or ""),
            messages=messages,
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            top_p=data.get("top_p"),
            frequency_penalty=data.get("frequency_penalty"),
            presence_penalty=data.get("presence_penalty"),
            stop=list(stop) if stop else None,
            stream=bool(data.get("stream", False)),
            extras=dict(data.get("extras") or {}),
        )

    def validate(self) -> None:
        if not self.model:
            raise LLMError("model is required", kind=ErrorKind.INVALID_REQUEST)
        if not self.messages:
            raise LLMError(
                "messages must not be empty",
                kind=ErrorKind.INVALID_REQUEST,
                model=self.model,
            )
        for i, m in enumerate(self.messages):
            if m.role not in ALLOWED_ROLES:
                raise LLMError(
                    f"messages[{i}] has unknown role {m.role!r}",
                    kind=ErrorKind.INVALID_REQUEST,
                    model=self.model,
                )
        checks: Tuple[Tuple[str, Optional[float], float, float], ...] = (
            ("temperature", self.temperature, 0.0, 2.0),
            ("top_p", self.top_p, 0.0, 1.0),
            ("frequency_penalty", self.frequency_penalty, -2.0, 2.0),
            ("presence_penalty", self.presence_penalty, -2.0, 2.0),
        )
        for label, value, lo, hi in checks:
            if value is not None and not (lo <= float(value) <= hi):
                raise LLMError(
                    f"{label} must be within [{lo}, {hi}]",
                    kind=ErrorKind.INVALID_PARAMETERS,
                    model=self.model,
                    details={"param": label, "value": value},
                )
        if self.max_tokens is not None and int(self.max_tokens) < 1:
            raise LLMError(
                "max_tokens must be >= 1",
                kind=ErrorKind.INVALID_PARAMETERS,
                model=self.model,
                details={"param": "max_tokens", "value": self.max_tokens},
            )


@dataclass(frozen=True)
class Usage:
    """Token usage as reported by the vendor."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def normalized(self) -> "Usage":
        p = max(0, int(self.prompt_tokens or 0))
        c = max(0, int(self.completion_tokens or 0))
        t = max(0, int(self.total_tokens or 0))
        return Usage(prompt_tokens=p, completion_tokens=c, total_tokens=max(t, p + c))


@dataclass(frozen=True)
class Choice:
    index: int
    message: Message
    finish_reason: str = ""


@dataclass(frozen=True)
class ChatResult:
    id: str
    model: str
    choices: Tuple[Choice, ...]
    usage: Usage = Usage()
    created: int = field(default_factory=lambda: int(time.time()))

    @property
    def text(self) -> str:
        return self.choices[0].message.content if self.choices else ""

    @property
    def finish_reason(self) -> str:
        return self.choices[0].finish_reason if self.choices else ""


class StreamEventType(str, Enum):
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """
    One element of a generation stream.

    ``DELTA`` events carry only the newly generated text. Exactly one
    terminal event (``DONE`` or ``ERROR``) ends every stream.
    """
    type: StreamEventType
    delta: str = ""
    index: int = 0
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type is not StreamEventType.DELTA

    @classmethod
    def delta_event(cls, text: str, *, index: int = 0, usage: Optional[Usage] = None) -> "StreamEvent":
        return cls(type=StreamEventType.DELTA, delta=text, index=index, usage=usage)

    @classmethod
    def done(cls, finish_reason: Optional[str] = None, usage: Optional[Usage] = None) -> "StreamEvent":
        return cls(type=StreamEventType.DONE, finish_reason=finish_reason, usage=usage)

    @classmethod
    def error(cls, kind: ErrorKind, message: str) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, error_kind=ErrorKind(kind), error_message=message)

    @classmethod
    def from_exception(cls, err: LLMError) -> "StreamEvent":
        return cls.error(err.kind, err.message or err.kind.value)


@dataclass(frozen=True)
class Pricing:
    """Prices per 1,000 tokens."""
    input_price: float
    output_price: float
    currency: str = "USD"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: ProviderKind
    description: str = ""
    capabilities: Tuple[str, ...] = ()
    max_tokens: int = 0
    context_window: int = 0
    pricing: Optional[Pricing] = None

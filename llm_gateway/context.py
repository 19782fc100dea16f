# llm_gateway/context.py
# SPDX-License-Identifier: Apache-2.0
"""
Per-call context: correlation, deadlines and free-form attributes.

The dispatcher threads a :class:`CallContext` through every call. Cooperative
cancellation itself rides on asyncio task cancellation; the context only
carries the identifiers and the absolute deadline.

Usage:
    ctx = make_ctx(correlation_key="chat-42", timeout_ms=30_000)
    print(remaining_ms(ctx))
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

__all__ = [
    "CallContext",
    "make_ctx",
    "now_ms",
    "remaining_ms",
    "effective_timeout_s",
]


def now_ms() -> int:
    """Return current epoch time in milliseconds."""
    return int(time.time() * 1000)


def _default_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class CallContext:
    """
    Context for one dispatcher call.

    Attributes:
        request_id:
            Correlation ID for tracing; generated when omitted.
        correlation_key:
            Caller-supplied key under which the call is abortable. Calls
            without one run normally but cannot be aborted by key.
        deadline_ms:
            Absolute epoch ms. None means "no caller deadline".
        attrs:
            Extra JSON-serializable attributes for middleware.
    """
    request_id: str = field(default_factory=_default_request_id)
    correlation_key: Optional[str] = None
    deadline_ms: Optional[int] = None
    attrs: Mapping[str, Any] = field(default_factory=dict)

    def with_deadline(self, deadline_ms: Optional[int]) -> "CallContext":
        return replace(self, deadline_ms=deadline_ms)


def make_ctx(
    *,
    request_id: Optional[str] = None,
    correlation_key: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    attrs: Optional[Mapping[str, Any]] = None,
) -> CallContext:
    """Build a context with a relative timeout turned into an absolute deadline."""
    deadline = now_ms() + int(timeout_ms) if timeout_ms is not None else None
    return CallContext(
        request_id=request_id or _default_request_id(),
        correlation_key=correlation_key,
        deadline_ms=deadline,
        attrs=dict(attrs or {}),
    )


def remaining_ms(ctx: Optional[CallContext]) -> Optional[int]:
    """Milliseconds left before the deadline, never negative. None if unbounded."""
    if ctx is None or ctx.deadline_ms is None:
        return None
    return max(0, ctx.deadline_ms - now_ms())


def effective_timeout_s(ctx: Optional[CallContext], adapter_timeout_s: Optional[float]) -> Optional[float]:
    """min(caller deadline, adapter timeout) in seconds; None if both unbounded."""
    budgets = []
    rem = remaining_ms(ctx)
    if rem is not None:
        budgets.append(rem / 1000.0)
    if adapter_timeout_s:
        budgets.append(float(adapter_timeout_s))
    return min(budgets) if budgets else None

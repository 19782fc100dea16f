# llm_gateway/errors.py
# SPDX-License-Identifier: Apache-2.0
"""
Normalized error taxonomy for the dispatch core.

Every failure that leaves the core is an :class:`LLMError` carrying exactly one
:class:`ErrorKind`. Adapters translate vendor status codes and error bodies
into a kind; the dispatcher adds its own local kinds (admission, cancellation,
registry misses).

Callers branch on ``err.kind`` (or the string ``err.code``), and may use
:func:`retryable` / :func:`authz` to decide what to do next. The core itself
never retries.
"""

from __future__ import annotations

import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping, Optional

__all__ = [
    "ErrorKind",
    "LLMError",
    "retryable",
    "authz",
    "kind_for_status",
    "extract_retry_after_ms",
]


class ErrorKind(str, Enum):
    INVALID_CONFIG = "invalid_config"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_REQUEST = "invalid_request"
    INVALID_MODEL = "invalid_model"
    INVALID_PARAMETERS = "invalid_parameters"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED_UPSTREAM = "rate_limited_upstream"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_UNAVAILABLE = "model_unavailable"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    STREAM_CLOSED = "stream_closed"
    API_CALL_FAILED = "api_call_failed"
    ADMISSION_DENIED = "admission_denied"
    ADMISSION_OVERLOADED = "admission_overloaded"
    CANCELLED = "cancelled"
    # Dispatcher-local lookups
    PROVIDER_NOT_FOUND = "provider_not_found"
    NOT_FOUND = "not_found"

    def __str__(self) -> str:
        return self.value


_RETRYABLE = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.UPSTREAM_UNAVAILABLE,
        ErrorKind.API_CALL_FAILED,
        ErrorKind.RATE_LIMITED_UPSTREAM,
    }
)

_AUTHZ = frozenset({ErrorKind.UNAUTHORIZED, ErrorKind.MISSING_CREDENTIAL})


class LLMError(Exception):
    """
    Base exception for everything the dispatch core raises.

    Attributes:
        message:
            Human-readable description (safe for logs and clients).
        kind:
            One :class:`ErrorKind`.
        provider:
            Owning provider kind (``ProviderKind`` value) when known.
        model:
            Originating model id when known.
        details:
            Additional JSON-safe context. Never contains credentials.
        retry_after_ms:
            Upstream backoff hint, when the vendor sent one.
        status_code:
            Upstream HTTP status, when the error came off the wire.
    """

    def __init__(
        self,
        message: str = "",
        *,
        kind: ErrorKind = ErrorKind.API_CALL_FAILED,
        provider: Optional[Any] = None,
        model: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        retry_after_ms: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.provider = provider
        self.model = model
        self.details = dict(details or {})
        self.retry_after_ms = retry_after_ms
        self.status_code = status_code

    @property
    def code(self) -> str:
        return self.kind.value

    def with_origin(self, *, provider: Any = None, model: Optional[str] = None) -> "LLMError":
        """Fill in provider/model if the raiser did not know them."""
        if self.provider is None and provider is not None:
            self.provider = provider
        if self.model is None and model:
            self.model = model
        return self

    def __str__(self) -> str:
        base = self.message or self.kind.value
        base += f" [code={self.kind.value}]"
        if self.provider is not None:
            base += f" provider={getattr(self.provider, 'value', self.provider)}"
        if self.model:
            base += f" model={self.model}"
        if self.status_code is not None:
            base += f" status={self.status_code}"
        if self.retry_after_ms is not None:
            base += f" retry_after_ms={self.retry_after_ms}"
        return base

    def __repr__(self) -> str:
        return f"LLMError(kind={self.kind.value!r}, message={self.message!r})"


def retryable(err: BaseException) -> bool:
    """True for transient upstream failures a caller may retry."""
    return isinstance(err, LLMError) and err.kind in _RETRYABLE


def authz(err: BaseException) -> bool:
    """True for credential and permission problems."""
    return isinstance(err, LLMError) and err.kind in _AUTHZ


def kind_for_status(status: int) -> ErrorKind:
    """Baseline HTTP status mapping shared by every adapter."""
    if status in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status == 429:
        return ErrorKind.RATE_LIMITED_UPSTREAM
    if status == 503:
        return ErrorKind.UPSTREAM_UNAVAILABLE
    if status == 400 or status == 422:
        return ErrorKind.INVALID_REQUEST
    if status == 404:
        return ErrorKind.INVALID_MODEL
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if 500 <= status <= 599:
        return ErrorKind.UPSTREAM_UNAVAILABLE
    return ErrorKind.API_CALL_FAILED


def extract_retry_after_ms(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    """
    Parse a ``Retry-After`` header.

    Handles both integer seconds and the HTTP-date form. Returns None when the
    header is absent or unparseable.
    """
    if not headers:
        return None
    val = headers.get("retry-after") or headers.get("Retry-After")
    if val is None:
        return None
    val_str = str(val).strip()
    try:
        return max(0, int(float(val_str))) * 1000
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(val_str)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0, int(when.timestamp() - time.time())) * 1000

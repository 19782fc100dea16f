# SPDX-License-Identifier: Apache-2.0
"""
Error taxonomy: status mapping, body-code overrides and classifiers.
"""

import pytest

from llm_gateway.adapters.base import error_body_fields, translate_status_error
from llm_gateway.errors import (
    ErrorKind,
    LLMError,
    authz,
    extract_retry_after_ms,
    kind_for_status,
    retryable,
)
from llm_gateway.types import ProviderKind


@pytest.mark.parametrize(
    "status, kind",
    [
        (401, ErrorKind.UNAUTHORIZED),
        (403, ErrorKind.UNAUTHORIZED),
        (429, ErrorKind.RATE_LIMITED_UPSTREAM),
        (503, ErrorKind.UPSTREAM_UNAVAILABLE),
        (500, ErrorKind.UPSTREAM_UNAVAILABLE),
        (400, ErrorKind.INVALID_REQUEST),
        (404, ErrorKind.INVALID_MODEL),
        (504, ErrorKind.TIMEOUT),
        (418, ErrorKind.API_CALL_FAILED),
    ],
)
def test_status_baseline(status, kind):
    """Every adapter shares the same HTTP status baseline."""
    assert kind_for_status(status) is kind


def test_vendor_code_overrides_status():
    """A known vendor code wins over the status: a quota 429 is not a rate limit."""
    err = translate_status_error(
        provider=ProviderKind.QIANWEN,
        model="qwen-turbo",
        status=429,
        body={"code": "Throttling.AllocationQuota", "message": "quota used up"},
        overrides={"Throttling.AllocationQuota": ErrorKind.QUOTA_EXCEEDED},
    )
    assert err.kind is ErrorKind.QUOTA_EXCEEDED
    assert err.status_code == 429
    assert err.details == {"status": 429, "vendor_code": "Throttling.AllocationQuota"}
    assert err.message == "quota used up"
    assert err.provider is ProviderKind.QIANWEN


def test_unknown_vendor_code_falls_back_to_status():
    """Codes missing from the override table do not change the baseline."""
    err = translate_status_error(
        provider=ProviderKind.OPENAI,
        model=None,
        status=503,
        body={"error": {"code": "something_new", "message": "down"}},
        overrides={"invalid_api_key": ErrorKind.UNAUTHORIZED},
    )
    assert err.kind is ErrorKind.UPSTREAM_UNAVAILABLE


def test_retry_after_header_is_carried():
    """Retry-After seconds become retry_after_ms on the error."""
    err = translate_status_error(
        provider=ProviderKind.OPENAI,
        model="gpt-4o",
        status=429,
        body=b"not json",
        headers={"retry-after": "3"},
    )
    assert err.kind is ErrorKind.RATE_LIMITED_UPSTREAM
    assert err.retry_after_ms == 3000
    assert "HTTP 429" in err.message


def test_error_body_shapes():
    """Wrapped, unwrapped and flat bodies all yield (code, message)."""
    assert error_body_fields({"error": {"type": "rate_limit_error", "message": "slow"}}) == (
        "rate_limit_error",
        "slow",
    )
    assert error_body_fields({"code": "InvalidApiKey", "message": "bad"}) == ("InvalidApiKey", "bad")
    assert error_body_fields(b'{"error": {"code": 1113, "message": "owed"}}') == ("1113", "owed")
    assert error_body_fields("<html>") == (None, None)
    assert error_body_fields(None) == (None, None)


def test_retry_after_parsing():
    assert extract_retry_after_ms(None) is None
    assert extract_retry_after_ms({"Retry-After": "1.5"}) == 1000
    assert extract_retry_after_ms({"retry-after": "garbage"}) is None


def test_classifiers():
    """retryable() covers transient upstream kinds; authz() only credentials."""
    assert retryable(LLMError("x", kind=ErrorKind.TIMEOUT))
    assert retryable(LLMError("x", kind=ErrorKind.UPSTREAM_UNAVAILABLE))
    assert not retryable(LLMError("x", kind=ErrorKind.QUOTA_EXCEEDED))
    assert not retryable(ValueError("x"))
    assert authz(LLMError("x", kind=ErrorKind.UNAUTHORIZED))
    assert authz(LLMError("x", kind=ErrorKind.MISSING_CREDENTIAL))
    assert not authz(LLMError("x", kind=ErrorKind.RATE_LIMITED_UPSTREAM))


def test_with_origin_only_fills_missing_fields():
    err = LLMError("boom", kind=ErrorKind.TIMEOUT, model="m1")
    err.with_origin(provider=ProviderKind.CLAUDE, model="m2")
    assert err.provider is ProviderKind.CLAUDE
    assert err.model == "m1"
    assert err.code == "timeout"
    assert "[code=timeout]" in str(err)

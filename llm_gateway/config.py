# llm_gateway/config.py
# SPDX-License-Identifier: Apache-2.0
"""
Typed provider configuration.

One dataclass variant per :class:`ProviderKind`. Each instance also carries the
admission policy (rate limiter + breaker) and optional pricing overrides for
the named provider it configures.

Loading these from files or the environment belongs to the host service;
:func:`config_from_mapping` / :func:`load_configs` cover the plain-dict and
JSON cases used by the CLI and tests.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Type

from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.types import Pricing, ProviderKind

__all__ = [
    "RateLimitPolicy",
    "BreakerPolicy",
    "ProviderConfig",
    "OpenAIConfig",
    "AzureOpenAIConfig",
    "QianwenConfig",
    "ClaudeConfig",
    "BaichuanConfig",
    "ChatGLMConfig",
    "CONFIG_TYPES",
    "config_from_mapping",
    "load_configs",
]

DEFAULT_TIMEOUT_S = 30.0

RATE_LIMIT_STRATEGIES = ("token_bucket", "sliding_window", "adaptive", "none")


@dataclass(frozen=True)
class RateLimitPolicy:
    """Selects and parameterizes the per-provider rate limiter."""
    strategy: str = "token_bucket"
    # token bucket / adaptive base
    rate: float = 10.0
    burst: int = 20
    # sliding window
    window_s: float = 60.0
    max_requests: int = 100
    sub_windows: int = 6
    # adaptive
    min_rate: float = 1.0
    max_rate: float = 50.0
    adjustment_factor: float = 0.1
    error_threshold: float = 0.1
    adjustment_interval_s: float = 30.0
    error_window_s: float = 300.0

    def validate(self) -> None:
        if self.strategy not in RATE_LIMIT_STRATEGIES:
            raise LLMError(
                f"unknown rate limit strategy {self.strategy!r}",
                kind=ErrorKind.INVALID_CONFIG,
            )
        if self.strategy == "none":
            return
        if self.rate <= 0 or self.burst < 1:
            raise LLMError("rate must be > 0 and burst >= 1", kind=ErrorKind.INVALID_CONFIG)
        if self.window_s <= 0 or self.max_requests < 1 or self.sub_windows < 1:
            raise LLMError("invalid sliding window parameters", kind=ErrorKind.INVALID_CONFIG)
        if not (0 < self.min_rate <= self.max_rate):
            raise LLMError("min_rate must be > 0 and <= max_rate", kind=ErrorKind.INVALID_CONFIG)


@dataclass(frozen=True)
class BreakerPolicy:
    """
    Circuit breaker parameters.

    The trip predicate is ``consecutive_failures >= N`` when that field is set,
    otherwise ``requests >= min_requests and failures/requests >= failure_ratio``.
    """
    max_requests: int = 1
    interval_s: float = 0.0
    timeout_s: float = 60.0
    min_requests: int = 3
    failure_ratio: float = 0.6
    consecutive_failures: Optional[int] = None


@dataclass
class ProviderConfig:
    """Fields common to every provider variant."""
    kind: ClassVar[ProviderKind]

    name: str = ""
    api_key: str = ""
    base_url: str = ""
    timeout_s: float = DEFAULT_TIMEOUT_S
    rate_limit: Optional[RateLimitPolicy] = None
    breaker: Optional[BreakerPolicy] = None
    pricing: Dict[str, Pricing] = field(default_factory=dict)

    def validate(self, expected: Optional[ProviderKind] = None) -> None:
        if expected is not None and expected is not self.kind:
            raise LLMError(
                f"config {type(self).__name__} does not match kind {expected.value!r}",
                kind=ErrorKind.INVALID_CONFIG,
                provider=expected,
            )
        if not self.api_key or not self.api_key.strip():
            raise LLMError(
                "api key is required",
                kind=ErrorKind.MISSING_CREDENTIAL,
                provider=self.kind,
            )
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise LLMError(
                "timeout_s must be > 0",
                kind=ErrorKind.INVALID_CONFIG,
                provider=self.kind,
            )
        if self.rate_limit is not None:
            self.rate_limit.validate()

    def __repr__(self) -> str:
        # Keys stay out of reprs and therefore out of logs.
        return (
            f"{type(self).__name__}(name={self.name!r}, kind={self.kind.value!r}, "
            f"base_url={self.base_url!r}, timeout_s={self.timeout_s})"
        )


@dataclass(repr=False)
class OpenAIConfig(ProviderConfig):
    kind: ClassVar[ProviderKind] = ProviderKind.OPENAI

    organization: Optional[str] = None
    project: Optional[str] = None


@dataclass(repr=False)
class AzureOpenAIConfig(ProviderConfig):
    kind: ClassVar[ProviderKind] = ProviderKind.AZURE_OPENAI

    resource_name: str = ""
    deployment_name: str = ""
    api_version: str = ""

    def validate(self, expected: Optional[ProviderKind] = None) -> None:
        super().validate(expected)
        if not self.deployment_name:
            raise LLMError(
                "azure deployment_name is required",
                kind=ErrorKind.INVALID_CONFIG,
                provider=self.kind,
            )
        if not self.base_url and not self.resource_name:
            raise LLMError(
                "azure resource_name or base_url is required",
                kind=ErrorKind.INVALID_CONFIG,
                provider=self.kind,
            )


@dataclass(repr=False)
class QianwenConfig(ProviderConfig):
    kind: ClassVar[ProviderKind] = ProviderKind.QIANWEN

    workspace: Optional[str] = None


@dataclass(repr=False)
class ClaudeConfig(ProviderConfig):
    kind: ClassVar[ProviderKind] = ProviderKind.CLAUDE

    api_version: str = "2023-06-01"


@dataclass(repr=False)
class BaichuanConfig(ProviderConfig):
    kind: ClassVar[ProviderKind] = ProviderKind.BAICHUAN


@dataclass(repr=False)
class ChatGLMConfig(ProviderConfig):
    kind: ClassVar[ProviderKind] = ProviderKind.CHATGLM


CONFIG_TYPES: Mapping[ProviderKind, Type[ProviderConfig]] = {
    ProviderKind.OPENAI: OpenAIConfig,
    ProviderKind.AZURE_OPENAI: AzureOpenAIConfig,
    ProviderKind.QIANWEN: QianwenConfig,
    ProviderKind.CLAUDE: ClaudeConfig,
    ProviderKind.BAICHUAN: BaichuanConfig,
    ProviderKind.CHATGLM: ChatGLMConfig,
}


def _policy(cls, data: Any):
    if data is None or isinstance(data, cls):
        return data
    if not isinstance(data, Mapping):
        raise LLMError(f"{cls.__name__} must be a mapping", kind=ErrorKind.INVALID_CONFIG)
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise LLMError(
            f"unknown {cls.__name__} fields: {sorted(unknown)}",
            kind=ErrorKind.INVALID_CONFIG,
        )
    return cls(**dict(data))


def config_from_mapping(data: Mapping[str, Any]) -> ProviderConfig:
    """
    Build a typed config from a plain mapping.

    The ``kind`` key selects the variant; unknown kinds and unknown fields are
    rejected with ``invalid_config``. Pricing overrides are given as
    ``{"model": {"input_price": .., "output_price": .., "currency": ..}}``.
    """
    raw = dict(data)
    kind = ProviderKind.parse(raw.pop("kind", None))
    cls = CONFIG_TYPES[kind]

    raw["rate_limit"] = _policy(RateLimitPolicy, raw.get("rate_limit"))
    raw["breaker"] = _policy(BreakerPolicy, raw.get("breaker"))
    pricing = raw.get("pricing") or {}
    raw["pricing"] = {
        model: p if isinstance(p, Pricing) else Pricing(**dict(p))
        for model, p in pricing.items()
    }

    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise LLMError(
            f"unknown config fields for {kind.value}: {sorted(unknown)}",
            kind=ErrorKind.INVALID_CONFIG,
            provider=kind,
        )
    return cls(**raw)


def load_configs(path: str) -> List[ProviderConfig]:
    """Read ``{"providers": [ {...}, ... ]}`` from a JSON file."""
    with open(path, "r", encoding="utf-8") as fh:
        try:
            doc = json.load(fh)
        except json.JSONDecodeError as exc:
            raise LLMError(
                f"config file {path} is not valid JSON: {exc}",
                kind=ErrorKind.INVALID_CONFIG,
            ) from exc
    providers = doc.get("providers") if isinstance(doc, Mapping) else None
    if not isinstance(providers, list):
        raise LLMError(
            f"config file {path} must contain a 'providers' list",
            kind=ErrorKind.INVALID_CONFIG,
        )
    return [config_from_mapping(p) for p in providers]

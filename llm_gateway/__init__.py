# llm_gateway/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
LLM Dispatch Core - Public API

Provider-agnostic chat completions with per-provider admission control
(rate limiting, circuit breaking), per-call telemetry and cost, and
cancellation of in-flight generations by correlation key.
All public types are re-exported here for clean imports.
"""

from llm_gateway.errors import (
    ErrorKind,
    LLMError,
    retryable,
    authz,
)
from llm_gateway.types import (
    ProviderKind,
    Message,
    ChatRequest,
    Usage,
    Choice,
    ChatResult,
    StreamEventType,
    StreamEvent,
    ModelInfo,
    Pricing,
)
from llm_gateway.context import (
    CallContext,
    make_ctx,
)
from llm_gateway.config import (
    RateLimitPolicy,
    BreakerPolicy,
    ProviderConfig,
    OpenAIConfig,
    AzureOpenAIConfig,
    QianwenConfig,
    ClaudeConfig,
    BaichuanConfig,
    ChatGLMConfig,
    config_from_mapping,
    load_configs,
)
from llm_gateway.adapters import (
    LLMAdapter,
    OpenAIAdapter,
    AzureOpenAIAdapter,
    QianwenAdapter,
    ClaudeAdapter,
    BaichuanAdapter,
    ChatGLMAdapter,
)
from llm_gateway.ratelimit import (
    RateLimiter,
    NoopLimiter,
    TokenBucketLimiter,
    SlidingWindowLimiter,
    AdaptiveLimiter,
)
from llm_gateway.breaker import (
    BreakerState,
    BreakerSettings,
    CircuitBreaker,
    MultiCircuitBreaker,
)
from llm_gateway.pricing import CostCalculator
from llm_gateway.metrics import (
    CallMetric,
    MetricsSink,
    NoopMetrics,
    MetricsExporter,
    InMemoryCollector,
    MetricsSnapshot,
    Alert,
    AlertThresholds,
    LoggingAlertSink,
)
from llm_gateway.factory import AdapterFactory
from llm_gateway.cancellation import CancellationRegistry
from llm_gateway.dispatcher import Dispatcher, DispatchStream

__version__ = "0.1.0"

__all__ = [
    "ErrorKind",
    "LLMError",
    "retryable",
    "authz",
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
    "CallContext",
    "make_ctx",
    "RateLimitPolicy",
    "BreakerPolicy",
    "ProviderConfig",
    "OpenAIConfig",
    "AzureOpenAIConfig",
    "QianwenConfig",
    "ClaudeConfig",
    "BaichuanConfig",
    "ChatGLMConfig",
    "config_from_mapping",
    "load_configs",
    "LLMAdapter",
    "OpenAIAdapter",
    "AzureOpenAIAdapter",
    "QianwenAdapter",
    "ClaudeAdapter",
    "BaichuanAdapter",
    "ChatGLMAdapter",
    "RateLimiter",
    "NoopLimiter",
    "TokenBucketLimiter",
    "SlidingWindowLimiter",
    "AdaptiveLimiter",
    "BreakerState",
    "BreakerSettings",
    "CircuitBreaker",
    "MultiCircuitBreaker",
    "CostCalculator",
    "CallMetric",
    "MetricsSink",
    "NoopMetrics",
    "MetricsExporter",
    "InMemoryCollector",
    "MetricsSnapshot",
    "Alert",
    "AlertThresholds",
    "LoggingAlertSink",
    "AdapterFactory",
    "CancellationRegistry",
    "Dispatcher",
    "DispatchStream",
    "__version__",
]

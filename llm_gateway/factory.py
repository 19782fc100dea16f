# llm_gateway/factory.py
# SPDX-License-Identifier: Apache-2.0
"""
Adapter construction from typed provider configs.

    factory = AdapterFactory()
    adapter = factory.create(OpenAIConfig(name="p1", api_key="sk-..."))

``create`` validates the config, checks that its variant matches the kind it
claims (or the kind the caller expects), and dispatches to the registered
builder. Extra kinds or replacement builders (test doubles, proxies) can be
plugged in with :meth:`AdapterFactory.register`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Type

import httpx

from llm_gateway.adapters import (
    AzureOpenAIAdapter,
    BaichuanAdapter,
    ChatGLMAdapter,
    ClaudeAdapter,
    LLMAdapter,
    OpenAIAdapter,
    QianwenAdapter,
)
from llm_gateway.config import CONFIG_TYPES, ProviderConfig
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.types import ProviderKind

logger = logging.getLogger(__name__)

__all__ = ["AdapterBuilder", "AdapterFactory"]

AdapterBuilder = Callable[..., LLMAdapter]

_BUILTIN: Dict[ProviderKind, AdapterBuilder] = {
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.AZURE_OPENAI: AzureOpenAIAdapter,
    ProviderKind.QIANWEN: QianwenAdapter,
    ProviderKind.CLAUDE: ClaudeAdapter,
    ProviderKind.BAICHUAN: BaichuanAdapter,
    ProviderKind.CHATGLM: ChatGLMAdapter,
}


class AdapterFactory:
    """
    Maps provider kinds to adapter builders.

    Args:
        http_client: Optional shared ``httpx.AsyncClient`` handed to every
            adapter this factory builds. Mostly useful in tests, where it
            carries an ``httpx.MockTransport``.
    """

    def __init__(self, *, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._http_client = http_client
        self._lock = threading.Lock()
        self._builders: Dict[ProviderKind, AdapterBuilder] = dict(_BUILTIN)

    def register(self, kind: Any, builder: AdapterBuilder) -> None:
        """Install or replace the builder for ``kind``."""
        k = ProviderKind.parse(kind)
        with self._lock:
            self._builders[k] = builder
        logger.debug("adapter builder registered for %s", k.value)

    def supported_kinds(self) -> List[ProviderKind]:
        with self._lock:
            return sorted(self._builders, key=lambda k: k.value)

    def create(self, config: ProviderConfig, *, kind: Any = None) -> LLMAdapter:
        if not isinstance(config, ProviderConfig):
            raise LLMError(
                f"expected a ProviderConfig, got {type(config).__name__}",
                kind=ErrorKind.INVALID_CONFIG,
            )
        claimed = getattr(config, "kind", None)
        if not isinstance(claimed, ProviderKind):
            raise LLMError(
                f"{type(config).__name__} does not declare a provider kind",
                kind=ErrorKind.INVALID_CONFIG,
            )
        expected = ProviderKind.parse(kind) if kind is not None else claimed

        variant: Optional[Type[ProviderConfig]] = CONFIG_TYPES.get(expected)
        if variant is not None and not isinstance(config, variant):
            raise LLMError(
                f"config {type(config).__name__} does not match kind {expected.value!r}",
                kind=ErrorKind.INVALID_CONFIG,
                provider=expected,
            )
        config.validate(expected)

        with self._lock:
            builder = self._builders.get(expected)
        if builder is None:
            raise LLMError(
                f"unsupported provider kind {expected.value!r}",
                kind=ErrorKind.INVALID_CONFIG,
                provider=expected,
            )
        if self._http_client is not None:
            return builder(config, http_client=self._http_client)
        return builder(config)

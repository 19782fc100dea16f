# llm_gateway/adapters/azure_openai_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Azure OpenAI adapter.

Azure serves the OpenAI Chat Completions wire format under a deployment
path (``/openai/deployments/<deployment>/chat/completions?api-version=<v>``)
and authenticates with an ``api-key`` header. ``AsyncAzureOpenAI`` handles
both; request and response mapping is inherited from :class:`OpenAIAdapter`.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional

import httpx
from openai import AsyncAzureOpenAI

from llm_gateway.adapters.base import HEALTH_PROBE_MAX_TOKENS
from llm_gateway.adapters.openai_adapter import _PRICING, OpenAIAdapter
from llm_gateway.config import AzureOpenAIConfig, ProviderConfig
from llm_gateway.context import CallContext
from llm_gateway.errors import ErrorKind
from llm_gateway.types import ChatRequest, Message, ModelInfo, Pricing, ProviderKind

logger = logging.getLogger(__name__)

__all__ = ["AzureOpenAIAdapter", "DEFAULT_AZURE_API_VERSION", "azure_endpoint"]

DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"


def azure_endpoint(config: AzureOpenAIConfig) -> str:
    """Explicit base URL, else ``https://<resource>.openai.azure.com``."""
    if config.base_url:
        return config.base_url.rstrip("/")
    return f"https://{config.resource_name}.openai.azure.com"


class AzureOpenAIAdapter(OpenAIAdapter):
    """
    OpenAI adapter speaking Azure's deployment-scoped URL convention.

    The deployment, not the request's ``model`` field, decides which model
    answers; ``model`` is still sent for parity with OpenAI.
    """

    provider_kind = ProviderKind.AZURE_OPENAI
    include_stream_usage = False
    error_overrides: Mapping[str, ErrorKind] = {
        "401": ErrorKind.UNAUTHORIZED,
        "429": ErrorKind.RATE_LIMITED_UPSTREAM,
        "DeploymentNotFound": ErrorKind.INVALID_MODEL,
        "content_filter": ErrorKind.INVALID_REQUEST,
        "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
    }

    def __init__(
        self,
        config: AzureOpenAIConfig,
        *,
        client: Optional[AsyncAzureOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_version = config.api_version or DEFAULT_AZURE_API_VERSION
        self.endpoint = azure_endpoint(config)
        self.deployment = config.deployment_name
        super().__init__(config, client=client, http_client=http_client)

    def _build_client(self, config: ProviderConfig, http_client: Optional[httpx.AsyncClient]) -> AsyncAzureOpenAI:
        return AsyncAzureOpenAI(
            api_key=config.api_key,
            api_version=self.api_version,
            azure_endpoint=self.endpoint,
            azure_deployment=self.deployment,
            timeout=config.timeout_s,
            max_retries=0,
            http_client=http_client,
        )

    async def list_models(self, ctx: CallContext) -> List[ModelInfo]:
        """One entry: the configured deployment."""
        return [
            ModelInfo(
                id=self.deployment,
                name=f"Azure deployment {self.deployment}",
                provider=self.provider_kind,
                capabilities=("text",),
                pricing=_PRICING.get(self.deployment),
            )
        ]

    async def health_check(self, ctx: CallContext) -> None:
        # The model listing sits outside the deployment path, so probe the
        # deployment itself with a one-token completion.
        probe = ChatRequest(
            model=self.deployment,
            messages=[Message("user", "ping")],
            max_tokens=HEALTH_PROBE_MAX_TOKENS,
        )
        await self.generate(ctx, probe)

    def pricing_catalog(self) -> Mapping[str, Pricing]:
        price = _PRICING.get(self.deployment)
        return {self.deployment: price} if price else {}

# llm_gateway/adapters/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Vendor adapters.

One adapter per provider kind; each translates the uniform request/result
shapes into its vendor's wire format and error taxonomy.
"""

from llm_gateway.adapters.base import LLMAdapter
from llm_gateway.adapters.openai_adapter import (
    OpenAIAdapter,
    BaichuanAdapter,
    ChatGLMAdapter,
)
from llm_gateway.adapters.azure_openai_adapter import AzureOpenAIAdapter
from llm_gateway.adapters.anthropic_adapter import ClaudeAdapter
from llm_gateway.adapters.qianwen_adapter import QianwenAdapter

__all__ = [
    "LLMAdapter",
    "OpenAIAdapter",
    "BaichuanAdapter",
    "ChatGLMAdapter",
    "AzureOpenAIAdapter",
    "ClaudeAdapter",
    "QianwenAdapter",
]

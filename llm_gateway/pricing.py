# llm_gateway/pricing.py
# SPDX-License-Identifier: Apache-2.0
"""
Best-effort cost estimation.

    cost = prompt_tokens / 1000 * input_price + completion_tokens / 1000 * output_price

Prices are looked up by ``(kind, model)``. Unknown pairs cost zero; a lookup
never fails. The table is copy-on-write: updates build a new dict under a
lock and swap it in, reads just dereference the current one.
"""

from __future__ import annotations

import threading
from typing import Dict, Mapping, Optional, Tuple

from llm_gateway.types import Pricing, ProviderKind, Usage

__all__ = ["CostCalculator", "DEFAULT_PRICING", "pricing_key"]


def pricing_key(kind: ProviderKind, model: str) -> str:
    return f"{ProviderKind.parse(kind).value}:{model}"


DEFAULT_PRICING: Mapping[str, Pricing] = {
    # OpenAI (USD)
    "openai:gpt-4": Pricing(0.03, 0.06, "USD"),
    "openai:gpt-4-turbo": Pricing(0.01, 0.03, "USD"),
    "openai:gpt-4o": Pricing(0.005, 0.015, "USD"),
    "openai:gpt-4o-mini": Pricing(0.00015, 0.0006, "USD"),
    "openai:gpt-3.5-turbo": Pricing(0.0015, 0.002, "USD"),
    # Qianwen (CNY)
    "qianwen:qwen-turbo": Pricing(0.0008, 0.002, "CNY"),
    "qianwen:qwen-plus": Pricing(0.004, 0.012, "CNY"),
    "qianwen:qwen-max": Pricing(0.02, 0.06, "CNY"),
    # Claude (USD)
    "claude:claude-3-5-sonnet-20241022": Pricing(0.003, 0.015, "USD"),
    "claude:claude-3-opus-20240229": Pricing(0.015, 0.075, "USD"),
    "claude:claude-3-haiku-20240307": Pricing(0.00025, 0.00125, "USD"),
}


class CostCalculator:
    def __init__(self, pricing: Optional[Mapping[str, Pricing]] = None) -> None:
        self._write_lock = threading.Lock()
        self._table: Dict[str, Pricing] = dict(DEFAULT_PRICING if pricing is None else pricing)

    def calculate(self, kind: ProviderKind, model: str, usage: Optional[Usage]) -> Tuple[float, str]:
        """Return ``(cost, currency)``; ``(0.0, "")`` when the pair is unpriced."""
        if usage is None:
            return 0.0, ""
        price = self._table.get(pricing_key(kind, model))
        if price is None:
            return 0.0, ""
        cost = (
            usage.prompt_tokens / 1000.0 * price.input_price
            + usage.completion_tokens / 1000.0 * price.output_price
        )
        return cost, price.currency

    def get_pricing(self, kind: ProviderKind, model: str) -> Optional[Pricing]:
        return self._table.get(pricing_key(kind, model))

    def update_pricing(self, kind: ProviderKind, model: str, pricing: Pricing) -> None:
        key = pricing_key(kind, model)
        with self._write_lock:
            table = dict(self._table)
            table[key] = pricing
            self._table = table

    def seed(self, kind: ProviderKind, catalog: Mapping[str, Pricing], *, overwrite: bool = False) -> int:
        """
        Merge an adapter's catalog prices. Existing entries win unless
        ``overwrite`` is set (used for explicit per-provider overrides).
        """
        added = 0
        with self._write_lock:
            table = dict(self._table)
            for model, price in catalog.items():
                key = pricing_key(kind, model)
                if overwrite or key not in table:
                    table[key] = price
                    added += 1
            self._table = table
        return added

    def snapshot(self) -> Dict[str, Pricing]:
        return dict(self._table)

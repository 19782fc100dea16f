# SPDX-License-Identifier: Apache-2.0
"""
Cost calculation: the per-1k-token law, unknown pairs and runtime updates.
"""

import pytest

from llm_gateway.pricing import DEFAULT_PRICING, CostCalculator, pricing_key
from llm_gateway.types import Pricing, ProviderKind, Usage


@pytest.mark.parametrize(
    "kind, model, usage",
    [
        (ProviderKind.OPENAI, "gpt-4o-mini", Usage(1, 1, 2)),
        (ProviderKind.OPENAI, "gpt-4", Usage(1234, 567, 1801)),
        (ProviderKind.QIANWEN, "qwen-max", Usage(10, 0, 10)),
        (ProviderKind.CLAUDE, "claude-3-haiku-20240307", Usage(0, 999, 999)),
    ],
)
def test_cost_law(kind, model, usage):
    """cost = np/1000 * p_in + nc/1000 * p_out, exactly."""
    calc = CostCalculator()
    price = DEFAULT_PRICING[pricing_key(kind, model)]
    cost, currency = calc.calculate(kind, model, usage)
    assert cost == usage.prompt_tokens / 1000.0 * price.input_price + usage.completion_tokens / 1000.0 * price.output_price
    assert currency == price.currency


def test_s1_cost():
    cost, currency = CostCalculator().calculate(ProviderKind.OPENAI, "gpt-4o-mini", Usage(1, 1, 2))
    assert cost == pytest.approx(7.5e-7)
    assert currency == "USD"


def test_unknown_pair_is_free():
    calc = CostCalculator()
    assert calc.calculate(ProviderKind.OPENAI, "gpt-99", Usage(100, 100, 200)) == (0.0, "")
    assert calc.calculate(ProviderKind.BAICHUAN, "gpt-4o", Usage(100, 100, 200)) == (0.0, "")
    assert calc.calculate(ProviderKind.OPENAI, "gpt-4o", None) == (0.0, "")


def test_qianwen_prices_in_cny():
    _, currency = CostCalculator().calculate(ProviderKind.QIANWEN, "qwen-turbo", Usage(1, 1, 2))
    assert currency == "CNY"


def test_update_pricing_is_copy_on_write():
    calc = CostCalculator()
    before = calc.snapshot()
    calc.update_pricing(ProviderKind.CHATGLM, "glm-4", Pricing(0.1, 0.1, "CNY"))
    assert pricing_key(ProviderKind.CHATGLM, "glm-4") not in before
    assert calc.get_pricing(ProviderKind.CHATGLM, "glm-4") == Pricing(0.1, 0.1, "CNY")
    assert calc.calculate(ProviderKind.CHATGLM, "glm-4", Usage(1000, 1000, 2000)) == (pytest.approx(0.2), "CNY")


def test_seed_keeps_existing_entries_unless_overwrite():
    calc = CostCalculator()
    catalog = {"gpt-4o": Pricing(1.0, 1.0), "gpt-new": Pricing(0.5, 0.5)}
    assert calc.seed(ProviderKind.OPENAI, catalog) == 1
    assert calc.get_pricing(ProviderKind.OPENAI, "gpt-4o") == DEFAULT_PRICING["openai:gpt-4o"]
    assert calc.seed(ProviderKind.OPENAI, catalog, overwrite=True) == 2
    assert calc.get_pricing(ProviderKind.OPENAI, "gpt-4o") == Pricing(1.0, 1.0)

"""Per-model token pricing and cost estimates for live calls."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float


DEFAULT_PRICING = ModelPricing(input=2.50, output=10.00)

MODEL_PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(2.50, 10.00),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4-turbo": ModelPricing(10.00, 30.00),
    "gpt-4": ModelPricing(30.00, 60.00),
    "gpt-4-32k": ModelPricing(60.00, 120.00),
    "gpt-3.5-turbo": ModelPricing(0.50, 1.50),
    "gpt-3.5-turbo-16k": ModelPricing(3.00, 4.00),
    "o1-preview": ModelPricing(15.00, 60.00),
    "o1-mini": ModelPricing(3.00, 12.00),
    "o1": ModelPricing(15.00, 60.00),
    "o3-mini": ModelPricing(1.10, 4.40),
    "claude-3-opus": ModelPricing(15.00, 75.00),
    "claude-3-sonnet": ModelPricing(3.00, 15.00),
    "claude-3-haiku": ModelPricing(0.25, 1.25),
    "claude-3.5-sonnet": ModelPricing(3.00, 15.00),
    "claude-3.5-haiku": ModelPricing(0.80, 4.00),
    "gemini-1.5-pro": ModelPricing(1.25, 5.00),
    "gemini-1.5-flash": ModelPricing(0.075, 0.30),
    "gemini-2.0-flash": ModelPricing(0.10, 0.40),
    "manus": ModelPricing(0.00, 0.00),
}


def get_model_pricing(model_id: Optional[str]) -> ModelPricing:
    """Look up pricing by exact id, then by longest matching prefix.

    Dated snapshots such as ``gpt-4o-mini-2024-07-18`` resolve to their
    family. Unknown models get the default rate.
    """
    if not model_id:
        return DEFAULT_PRICING
    if model_id in MODEL_PRICING:
        return MODEL_PRICING[model_id]

    normalized = model_id.lower()
    matches = [key for key in MODEL_PRICING if normalized.startswith(key)]
    if matches:
        return MODEL_PRICING[max(matches, key=len)]
    return DEFAULT_PRICING


def estimate_cost(model_id: Optional[str], input_tokens: int, output_tokens: int) -> float:
    pricing = get_model_pricing(model_id)
    return (max(input_tokens, 0) * pricing.input + max(output_tokens, 0) * pricing.output) / 1_000_000


def format_cost(cost: float) -> str:
    if cost == 0:
        return "$0.00"
    if cost < 0.001:
        return "<$0.001"
    if cost < 0.01:
        return f"${cost:.4f}"
    if cost < 1:
        return f"${cost:.3f}"
    return f"${cost:.2f}"

"""
Cost Estimation

Maps an operation request to the USD amount to charge up front. The gate
treats this as an external pricing policy: anything implementing
CostEstimator can be plugged in.

Params understood by StaticCostEstimator:
    model          - model name from MODEL_PRICING
    prompt         - text used to estimate input tokens when input_tokens is absent
    input_tokens   - explicit input token count
    output_tokens  - expected output tokens (default DEFAULT_OUTPUT_TOKENS)
    image_count    - images to generate (image models, default 1)
    duration_seconds - seconds of video (video models, default 5)
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Any, Dict, Optional, Protocol
import re

from core.money import to_usd

TOKENS_PER_MILLION = Decimal(1_000_000)
DEFAULT_COST = Decimal("0.001")
DEFAULT_OUTPUT_TOKENS = 1000
DEFAULT_VIDEO_SECONDS = 5

_JAPANESE = re.compile(r"[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FAF]")


class CostEstimator(Protocol):
    """Pricing policy consulted before a charge."""

    def estimate_cost(self, operation_type: str, params: Dict[str, Any]) -> Decimal:
        ...


@dataclass(frozen=True)
class ModelPrice:
    """Per-model price. Text models price per 1M tokens."""
    kind: str  # text | image | video
    input_per_million: Decimal = Decimal("0")
    output_per_million: Decimal = Decimal("0")
    per_image: Decimal = Decimal("0")
    per_second: Decimal = Decimal("0")


MODEL_PRICING: Dict[str, ModelPrice] = {
    "gemini-2.0-flash": ModelPrice("text", Decimal("0.075"), Decimal("0.30")),
    "gemini-1.5-flash": ModelPrice("text", Decimal("0.075"), Decimal("0.30")),
    "gemini-1.5-flash-latest": ModelPrice("text", Decimal("0.075"), Decimal("0.30")),
    "claude-sonnet-4-20250514": ModelPrice("text", Decimal("3.0"), Decimal("15.0")),
    "gemini-3-pro-image-preview": ModelPrice("image", per_image=Decimal("0.134")),
    "veo-2.0-generate-001": ModelPrice("video", per_second=Decimal("0.35")),
}


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count: 2 chars per token for Japanese, 4 for everything else."""
    if not text:
        return 0
    japanese = len(_JAPANESE.findall(text))
    other = len(text) - japanese
    tokens = Decimal(japanese) / 2 + Decimal(other) / 4
    return int(tokens.to_integral_value(rounding=ROUND_CEILING))


class StaticCostEstimator:
    """Price table estimator with a flat fallback for unknown models."""

    def __init__(
        self,
        pricing: Optional[Dict[str, ModelPrice]] = None,
        default_cost: Decimal = DEFAULT_COST,
        operation_defaults: Optional[Dict[str, str]] = None,
    ):
        self.pricing = pricing or MODEL_PRICING
        self.default_cost = to_usd(default_cost)
        # operation_type -> model used when params carry no model
        self.operation_defaults = operation_defaults or {}

    def estimate_cost(self, operation_type: str, params: Dict[str, Any]) -> Decimal:
        model = params.get("model") or self.operation_defaults.get(operation_type)
        price = self.pricing.get(model) if model else None
        if price is None:
            return self.default_cost

        if price.kind == "image":
            cost = price.per_image * int(params.get("image_count", 1))
        elif price.kind == "video":
            cost = price.per_second * Decimal(str(params.get("duration_seconds", DEFAULT_VIDEO_SECONDS)))
        else:
            input_tokens = params.get("input_tokens")
            if input_tokens is None:
                input_tokens = estimate_tokens(params.get("prompt"))
            output_tokens = params.get("output_tokens", DEFAULT_OUTPUT_TOKENS)
            cost = (
                Decimal(int(input_tokens)) * price.input_per_million
                + Decimal(int(output_tokens)) * price.output_per_million
            ) / TOKENS_PER_MILLION

        # Never charge less than the flat minimum
        return max(to_usd(cost), self.default_cost)

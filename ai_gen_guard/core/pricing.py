"""
Cost estimates for generative AI calls.

Text models are priced per million tokens, video per generated second and
images per image. Estimates always round up so the budget guard errs on
the side of denying.
"""

from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Dict


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by a text model."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class TextModelPricing:
    input_cost_per_1m: Decimal
    output_cost_per_1m: Decimal


@dataclass(frozen=True)
class MediaModelPricing:
    """Per-unit price: seconds of video or number of images."""
    cost_per_unit: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    text: Dict[str, TextModelPricing]
    media: Dict[str, MediaModelPricing]

    def get_text_pricing(self, model: str) -> TextModelPricing:
        """Raises ValueError if the text model is not priced."""
        if model not in self.text:
            raise ValueError(f"Unsupported text model: {model}")
        return self.text[model]

    def get_media_pricing(self, model: str) -> MediaModelPricing:
        """Raises ValueError if the media model is not priced."""
        if model not in self.media:
            raise ValueError(f"Unsupported media model: {model}")
        return self.media[model]


PRICING_TABLE = PricingTable(
    text={
        "gemini-2.5-pro": TextModelPricing(Decimal("1.25"), Decimal("10.00")),
        "gemini-2.5-flash": TextModelPricing(Decimal("0.075"), Decimal("0.60")),
        "gpt-4o": TextModelPricing(Decimal("2.50"), Decimal("10.00")),
        "gpt-4o-mini": TextModelPricing(Decimal("0.15"), Decimal("0.60")),
    },
    media={
        # per second of video
        "veo-3.1-generate-preview": MediaModelPricing(Decimal("0.40")),
        "veo-3.1-fast-generate-preview": MediaModelPricing(Decimal("0.15")),
        "sora-2": MediaModelPricing(Decimal("0.10")),
        "sora-2-pro": MediaModelPricing(Decimal("0.30")),
        # per image
        "imagen-4.0-generate-001": MediaModelPricing(Decimal("0.04")),
        "imagen-4.0-fast-generate-001": MediaModelPricing(Decimal("0.02")),
    },
)

_PRECISION = Decimal("0.0001")


def calculate_text_cost(model: str, usage: TokenUsage) -> float:
    """Cost of a text call from its token usage, rounded UP to 4 decimals.

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_text_pricing(model)
    million = Decimal("1000000")
    cost = (
        Decimal(usage.prompt_tokens) / million * pricing.input_cost_per_1m
        + Decimal(usage.completion_tokens) / million * pricing.output_cost_per_1m
    )
    return float(cost.quantize(_PRECISION, rounding=ROUND_UP))


def estimate_video_cost(model: str, duration_seconds: float) -> float:
    """Cost of generating ``duration_seconds`` of video, rounded UP to 4 decimals.

    Raises:
        ValueError: If model is not supported or duration is not positive
    """
    if duration_seconds <= 0:
        raise ValueError("duration_seconds must be > 0")
    pricing = PRICING_TABLE.get_media_pricing(model)
    cost = Decimal(str(duration_seconds)) * pricing.cost_per_unit
    return float(cost.quantize(_PRECISION, rounding=ROUND_UP))


def estimate_image_cost(model: str, count: int = 1) -> float:
    """Cost of generating ``count`` images.

    Raises:
        ValueError: If model is not supported or count is not positive
    """
    if count < 1:
        raise ValueError("count must be >= 1")
    pricing = PRICING_TABLE.get_media_pricing(model)
    return float((pricing.cost_per_unit * count).quantize(_PRECISION, rounding=ROUND_UP))

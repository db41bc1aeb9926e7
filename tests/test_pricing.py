"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

import pytest
from decimal import Decimal

from ai_gen_guard.core.pricing import (
    PRICING_TABLE,
    TokenUsage,
    calculate_text_cost,
    estimate_image_cost,
    estimate_video_cost,
)


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150


class TestPricingTable:
    """Test pricing table lookups."""

    def test_get_text_pricing(self):
        pricing = PRICING_TABLE.get_text_pricing("gemini-2.5-pro")
        assert pricing.input_cost_per_1m == Decimal("1.25")
        assert pricing.output_cost_per_1m == Decimal("10.00")

    def test_get_media_pricing(self):
        assert PRICING_TABLE.get_media_pricing("veo-3.1-generate-preview").cost_per_unit == Decimal("0.40")

    def test_unsupported_models_raise(self):
        with pytest.raises(ValueError, match="Unsupported text model: unknown"):
            PRICING_TABLE.get_text_pricing("unknown")
        with pytest.raises(ValueError, match="Unsupported media model: unknown"):
            PRICING_TABLE.get_media_pricing("unknown")


class TestCostCalculation:
    """Test cost estimates."""

    def test_text_cost(self):
        usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=100_000)
        assert calculate_text_cost("gemini-2.5-pro", usage) == pytest.approx(2.25)

    def test_text_cost_rounds_up(self):
        usage = TokenUsage(prompt_tokens=1, completion_tokens=0)
        assert calculate_text_cost("gemini-2.5-flash", usage) == 0.0001

    def test_zero_tokens_cost_nothing(self):
        assert calculate_text_cost("gpt-4o", TokenUsage(0, 0)) == 0.0

    def test_video_cost(self):
        assert estimate_video_cost("veo-3.1-generate-preview", 8) == pytest.approx(3.20)
        assert estimate_video_cost("veo-3.1-fast-generate-preview", 8) == pytest.approx(1.20)

    def test_video_duration_must_be_positive(self):
        with pytest.raises(ValueError, match="duration_seconds"):
            estimate_video_cost("sora-2", 0)

    def test_image_cost(self):
        assert estimate_image_cost("imagen-4.0-generate-001", 4) == pytest.approx(0.16)
        assert estimate_image_cost("imagen-4.0-fast-generate-001") == pytest.approx(0.02)

    def test_image_count_must_be_positive(self):
        with pytest.raises(ValueError, match="count"):
            estimate_image_cost("imagen-4.0-generate-001", 0)

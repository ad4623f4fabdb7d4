"""
Tests for Cost Estimation and the Plan Catalogue
"""

from decimal import Decimal

from billing.plans import PlanCatalog, CREDIT_PACKAGES
from billing.pricing import StaticCostEstimator, estimate_tokens


class TestEstimateTokens:
    """Test the rough token counter."""

    def test_latin_text(self):
        """Four characters per token, rounded up."""
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_japanese_text(self):
        """Two Japanese characters per token."""
        assert estimate_tokens("こんにちは") == 3

    def test_empty(self):
        """No text, no tokens."""
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0


class TestStaticCostEstimator:
    """Test the default pricing policy."""

    def test_text_model(self):
        """Text models price input and output tokens per million."""
        estimator = StaticCostEstimator()

        cost = estimator.estimate_cost("generate_text", {
            "model": "claude-sonnet-4-20250514",
            "input_tokens": 1000,
            "output_tokens": 1000,
        })

        assert cost == Decimal("0.018")

    def test_image_model(self):
        """Image models price per image."""
        cost = StaticCostEstimator().estimate_cost("generate_image", {
            "model": "gemini-3-pro-image-preview",
            "image_count": 2,
        })

        assert cost == Decimal("0.268")

    def test_video_model_default_duration(self):
        """Video models default to five seconds."""
        cost = StaticCostEstimator().estimate_cost("generate_video", {"model": "veo-2.0-generate-001"})

        assert cost == Decimal("1.75")

    def test_unknown_model_uses_default(self):
        """Unknown models cost the flat default."""
        assert StaticCostEstimator().estimate_cost("anything", {"model": "mystery"}) == Decimal("0.001")

    def test_cheap_call_floored(self):
        """Tiny token counts never cost less than the default."""
        cost = StaticCostEstimator().estimate_cost("generate_text", {
            "model": "gemini-2.0-flash",
            "input_tokens": 1,
            "output_tokens": 1,
        })

        assert cost == Decimal("0.001")

    def test_operation_default_model(self):
        """An operation can name the model used when params carry none."""
        estimator = StaticCostEstimator(operation_defaults={"generate_image": "gemini-3-pro-image-preview"})

        assert estimator.estimate_cost("generate_image", {}) == Decimal("0.134")


class TestPlanCatalog:
    """Test plan lookups."""

    def test_included_credit(self):
        """Plans grant their documented monthly credit."""
        catalog = PlanCatalog()

        assert catalog.get("pro").included_credit_usd == Decimal("50.00")
        assert catalog.get("free").can_ai_generate is False
        assert catalog.get("missing") is None

    def test_price_id_from_environment(self, monkeypatch):
        """Stripe price ids come from STRIPE_PRICE_<PLAN>."""
        monkeypatch.setenv("STRIPE_PRICE_STARTER", "price_live_starter")
        catalog = PlanCatalog()

        assert catalog.by_price_id("price_live_starter").id == "starter"
        assert catalog.by_price_id(None) is None

    def test_packages_mirror_paid_plans(self):
        """Each credit package matches its plan's credit."""
        catalog = PlanCatalog()

        for package in CREDIT_PACKAGES:
            assert catalog.get(package.plan_id).included_credit_usd == package.credit_usd
        assert catalog.get_package(2).name == "75,000 credits"

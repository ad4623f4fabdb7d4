"""
Plan Catalogue

Subscription plans with the USD credit each grants per billing cycle, and the
one-time credit packages. Stripe price ids come from the environment.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional
import os


@dataclass(frozen=True)
class Plan:
    """A subscription plan."""
    id: str
    name: str
    price_jpy: int
    included_credit_usd: Decimal
    can_ai_generate: bool
    stripe_price_id: Optional[str] = None


@dataclass(frozen=True)
class CreditPackage:
    """A one-time credit purchase."""
    id: int
    name: str
    price_jpy: int
    credit_usd: Decimal
    plan_id: str


def _price_id(plan_id: str) -> str:
    return os.environ.get(f"STRIPE_PRICE_{plan_id.upper()}", f"price_{plan_id}")


def load_plans() -> Dict[str, Plan]:
    """Build the catalogue. Price ids are read from the environment at call time."""
    return {
        "free": Plan("free", "Free", 0, Decimal("0"), can_ai_generate=False),
        "starter": Plan("starter", "Starter", 10000, Decimal("16.67"), True, _price_id("starter")),
        "pro": Plan("pro", "Pro", 30000, Decimal("50.00"), True, _price_id("pro")),
        "business": Plan("business", "Business", 50000, Decimal("83.33"), True, _price_id("business")),
        "enterprise": Plan("enterprise", "Enterprise", 100000, Decimal("166.67"), True, _price_id("enterprise")),
        "unlimited": Plan("unlimited", "Unlimited", 500000, Decimal("833.33"), True, _price_id("unlimited")),
    }


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(1, "25,000 credits", 10000, Decimal("16.67"), "starter"),
    CreditPackage(2, "75,000 credits", 30000, Decimal("50.00"), "pro"),
    CreditPackage(3, "125,000 credits", 50000, Decimal("83.33"), "business"),
    CreditPackage(4, "250,000 credits", 100000, Decimal("166.67"), "enterprise"),
    CreditPackage(5, "1,250,000 credits", 500000, Decimal("833.33"), "unlimited"),
]


class PlanCatalog:
    """Lookup by plan id or Stripe price id."""

    DEFAULT_PLAN = "pro"

    def __init__(self, plans: Optional[Dict[str, Plan]] = None):
        self.plans = plans or load_plans()

    def get(self, plan_id: Optional[str]) -> Optional[Plan]:
        return self.plans.get(plan_id) if plan_id else None

    def by_price_id(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        for plan in self.plans.values():
            if plan.stripe_price_id == price_id:
                return plan
        return None

    def get_package(self, package_id: int) -> Optional[CreditPackage]:
        for package in CREDIT_PACKAGES:
            if package.id == package_id:
                return package
        return None

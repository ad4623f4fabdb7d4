"""
Plan Entitlements

Decides whether an account's plan allows paid AI operations at all. Runs
before any cost is estimated or charged: the free plan never generates, and
an account on a plan missing from the catalogue must subscribe again.
"""

from dataclasses import dataclass
from typing import Optional
import structlog

from persistence.repository import SubscriptionRepository
from .plans import PlanCatalog

logger = structlog.get_logger()

FREE_PLAN = "free"

# Subscription states that still carry the plan's entitlements
ENTITLED_STATUSES = frozenset({"active", "trialing", "past_due"})


@dataclass(frozen=True)
class Entitlement:
    """Result of an eligibility check."""
    allowed: bool
    plan_id: str
    need_subscription: bool = False


class PlanEntitlements:
    """Resolves a user's effective plan from stored subscription state."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        catalog: Optional[PlanCatalog] = None,
    ):
        self.subscriptions = subscriptions
        self.catalog = catalog or PlanCatalog()

    def effective_plan(self, user_id: str) -> str:
        record = self.subscriptions.get(user_id)
        if record is None or record.status not in ENTITLED_STATUSES:
            return FREE_PLAN
        return record.plan

    def check(self, user_id: str) -> Entitlement:
        plan_id = self.effective_plan(user_id)
        plan = self.catalog.get(plan_id)

        if plan is None:
            logger.warning("plan_requires_subscription", user_id=user_id, plan=plan_id)
            return Entitlement(False, plan_id, need_subscription=True)

        if not plan.can_ai_generate:
            logger.info("plan_excludes_generation", user_id=user_id, plan=plan_id)
            return Entitlement(False, plan_id)

        return Entitlement(True, plan_id)

"""
CREDIT RAIL - Billing Module

Credit ledger, operation-run idempotency, webhook dedup and provider events.
"""

from .ledger import CreditLedger, CreditSummary
from .runs import OperationRunStore, RunClaim, RunClaimState
from .webhook_gate import WebhookEventGate, LockResult
from .webhooks import BillingEventProcessor, WebhookOutcome
from .stripe_integration import StripeIntegration, StripeIntegrationError
from .events import BillingEvent, parse_event
from .plans import PlanCatalog, Plan, CreditPackage, CREDIT_PACKAGES
from .entitlements import PlanEntitlements, Entitlement
from .pricing import CostEstimator, StaticCostEstimator, estimate_tokens

__all__ = [
    "CreditLedger",
    "CreditSummary",
    "OperationRunStore",
    "RunClaim",
    "RunClaimState",
    "WebhookEventGate",
    "LockResult",
    "BillingEventProcessor",
    "WebhookOutcome",
    "StripeIntegration",
    "StripeIntegrationError",
    "BillingEvent",
    "parse_event",
    "PlanCatalog",
    "Plan",
    "CreditPackage",
    "CREDIT_PACKAGES",
    "PlanEntitlements",
    "Entitlement",
    "CostEstimator",
    "StaticCostEstimator",
    "estimate_tokens",
]

"""
Billing Error Taxonomy

Every user-visible failure of the billing gate maps to one of these classes.
Business outcomes are carried as values (see core.results); these are raised
only at boundaries such as webhook verification and the persistence layer.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing gate errors."""

    code = "billing_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            **self.details,
        }


class InsufficientCreditError(BillingError):
    """Balance is below the estimated cost. The user has to top up."""

    code = "insufficient_credit"
    status_code = 402

    def __init__(self, balance: Any, estimated_cost: Any):
        from .money import to_usd, format_usd

        balance_usd = to_usd(balance)
        cost_usd = to_usd(estimated_cost)
        super().__init__(
            "Insufficient credit for this operation",
            {
                "balance": format_usd(balance_usd),
                "estimated_cost": format_usd(cost_usd),
                "shortfall": format_usd(max(cost_usd - balance_usd, 0)),
            },
        )
        self.balance = balance_usd
        self.estimated_cost = cost_usd


class DuplicateInProgressError(BillingError):
    """An attempt with the same idempotency key is still running."""

    code = "duplicate_in_progress"
    status_code = 409

    def __init__(self, request_id: str):
        super().__init__(
            "An operation with this request id is already in progress",
            {"request_id": request_id},
        )
        self.request_id = request_id


class RequestConflictError(BillingError):
    """The request_id is reserved or already belongs to another account."""

    code = "request_id_conflict"
    status_code = 409

    def __init__(self, request_id: str):
        super().__init__(
            "This request id cannot be used for this account",
            {"request_id": request_id},
        )
        self.request_id = request_id


class PlanRequiredError(BillingError):
    """The account's plan does not include paid operations."""

    code = "plan_required"
    status_code = 403

    def __init__(self, plan_id: str, need_subscription: bool = False):
        super().__init__(
            "A subscription is required" if need_subscription
            else "AI operations are only available on paid plans",
            {"plan": plan_id, "need_subscription": need_subscription},
        )
        self.plan_id = plan_id
        self.need_subscription = need_subscription


class RateLimitedError(BillingError):
    """Too many requests in the current window."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after_ms: int):
        super().__init__(
            "Rate limit exceeded",
            {"retry_after_ms": retry_after_ms},
        )
        self.retry_after_ms = retry_after_ms


class ExternalOperationFailure(BillingError):
    """The paid operation failed after its cost was deducted."""

    code = "operation_failed"
    status_code = 500


class OperationTimeoutError(ExternalOperationFailure):
    """The paid operation did not finish within its time budget."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Operation timed out after {timeout_seconds:g}s",
            {"timeout_seconds": timeout_seconds},
        )


class PersistenceConflict(BillingError):
    """A uniqueness constraint rejected a write (dedup key already taken)."""

    code = "persistence_conflict"
    status_code = 409


class InvalidWebhookEventError(BillingError):
    """Inbound provider event failed signature or shape validation."""

    code = "invalid_webhook_event"
    status_code = 400

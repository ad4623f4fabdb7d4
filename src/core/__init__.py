"""
CREDIT RAIL - Core Module

Domain primitives shared by the ledger, the gate and the API:
money arithmetic, the error taxonomy and typed ledger results.
"""

from .money import to_usd, usd_to_micros, micros_to_usd, format_usd, USD_QUANT
from .errors import (
    BillingError,
    InsufficientCreditError,
    DuplicateInProgressError,
    RequestConflictError,
    PlanRequiredError,
    RateLimitedError,
    ExternalOperationFailure,
    OperationTimeoutError,
    PersistenceConflict,
    InvalidWebhookEventError,
)
from .results import LedgerOutcome, LedgerResult, BalanceCheck
from .config import Settings

__all__ = [
    "to_usd",
    "usd_to_micros",
    "micros_to_usd",
    "format_usd",
    "USD_QUANT",
    "BillingError",
    "InsufficientCreditError",
    "DuplicateInProgressError",
    "RequestConflictError",
    "PlanRequiredError",
    "RateLimitedError",
    "ExternalOperationFailure",
    "OperationTimeoutError",
    "PersistenceConflict",
    "InvalidWebhookEventError",
    "LedgerOutcome",
    "LedgerResult",
    "BalanceCheck",
    "Settings",
]

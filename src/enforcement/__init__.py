"""
CREDIT RAIL - Enforcement Module

The Billing Gate: "No Payment, No Run"

A paid operation executes only after (1) the caller was admitted by the rate
limiter; (2) its plan allowed the operation; (3) its cost was deducted
atomically; and (4) its run was recorded as processing under the caller's
request_id.
"""

from .gate import (
    BillingOrchestrator,
    ExecutionResult,
    ExecutionStatus,
    Executor,
    OrchestratorConfig,
)
from .rate_limit import (
    RateLimiter,
    RateLimitConfig,
    RateLimitDecision,
    RateLimitPreset,
    LocalRateLimitBackend,
    DurableRateLimitBackend,
    create_rate_limit_key,
)
from .reconciliation import ReconciliationConfig, ReconciliationSweeper

__all__ = [
    "BillingOrchestrator",
    "ExecutionResult",
    "ExecutionStatus",
    "Executor",
    "OrchestratorConfig",
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimitPreset",
    "LocalRateLimitBackend",
    "DurableRateLimitBackend",
    "create_rate_limit_key",
    "ReconciliationConfig",
    "ReconciliationSweeper",
]

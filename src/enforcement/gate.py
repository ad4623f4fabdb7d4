"""
Billing Gate

"NO PAYMENT, NO RUN": a paid operation is forwarded to its executor only after
its cost has been deducted and its run has been recorded as processing.

Sequence for every paid entry point:
1. Rate limit (admission only, no state touched)
2. Replay: an existing run for the request_id answers its owner directly
3. Plan eligibility (when entitlements are configured)
4. Estimate cost (pricing policy)
5. Balance pre-check
6. Atomic deduction
7. Create the processing run (exactly one caller wins)
8. Execute with a timeout
9. Success: mark succeeded. Failure or timeout: refund, then mark failed.

A request_id is scoped to the user who first used it. Any other user sending
it gets a 409 and never sees the stored outcome.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import time
import structlog

from billing.entitlements import PlanEntitlements
from billing.ledger import CreditLedger
from billing.pricing import CostEstimator
from billing.runs import OperationRunStore, RunClaimState
from core.errors import (
    BillingError,
    DuplicateInProgressError,
    ExternalOperationFailure,
    InsufficientCreditError,
    OperationTimeoutError,
    PersistenceConflict,
    PlanRequiredError,
    RateLimitedError,
    RequestConflictError,
)
from core.money import to_usd, format_usd
from persistence.models import OperationRunRecord, RunStatus
from .rate_limit import RateLimitDecision, RateLimiter

logger = structlog.get_logger()

Executor = Callable[[Dict[str, Any]], Awaitable[Any]]


class ExecutionStatus(Enum):
    """Gate outcomes. HTTP_STATUS maps each to its response code."""
    SUCCEEDED = "succeeded"
    INSUFFICIENT_CREDIT = "insufficient_credit"
    DUPLICATE_IN_PROGRESS = "duplicate_in_progress"
    REQUEST_CONFLICT = "request_id_conflict"
    PLAN_REQUIRED = "plan_required"
    RATE_LIMITED = "rate_limited"
    OPERATION_FAILED = "operation_failed"


HTTP_STATUS = {
    ExecutionStatus.SUCCEEDED: 200,
    ExecutionStatus.INSUFFICIENT_CREDIT: 402,
    ExecutionStatus.DUPLICATE_IN_PROGRESS: 409,
    ExecutionStatus.REQUEST_CONFLICT: 409,
    ExecutionStatus.PLAN_REQUIRED: 403,
    ExecutionStatus.RATE_LIMITED: 429,
    ExecutionStatus.OPERATION_FAILED: 500,
}


@dataclass
class ExecutionResult:
    """
    Result of a gated execution.

    Carries the payload on success and the error on every other outcome.
    Replays of a finished run are indistinguishable from the first answer.
    """
    status: ExecutionStatus
    request_id: str
    payload: Any = None
    error: Optional[BillingError] = None
    rate_limit: Optional[RateLimitDecision] = None
    latency_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCEEDED

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.status]

    def headers(self) -> Dict[str, str]:
        return self.rate_limit.headers() if self.rate_limit else {}

    def to_dict(self) -> Dict[str, Any]:
        if self.succeeded:
            return {"request_id": self.request_id, "result": self.payload}
        body = {"request_id": self.request_id}
        if self.error is not None:
            body.update(self.error.to_dict())
        return body


@dataclass
class OrchestratorConfig:
    """Configuration for the billing gate."""
    timeout_seconds: float = 120.0  # Executor time budget
    balance_precheck: bool = True  # Reject early without touching the ledger


class BillingOrchestrator:
    """
    The billing gate.

    The deduction happens before the executor is called, so the provider is
    never invoked for an unpaid operation. The run is created after the
    deduction, so a rejected charge never leaves a run behind, and before the
    call, so a crash mid-call is visible as a processing run.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        runs: OperationRunStore,
        rate_limiter: RateLimiter,
        estimator: CostEstimator,
        config: Optional[OrchestratorConfig] = None,
        entitlements: Optional[PlanEntitlements] = None,
    ):
        self.ledger = ledger
        self.runs = runs
        self.rate_limiter = rate_limiter
        self.estimator = estimator
        self.config = config or OrchestratorConfig()
        self.entitlements = entitlements

        # Metrics
        self._total_requests = 0
        self._succeeded_count = 0
        self._failed_count = 0
        self._insufficient_count = 0
        self._rate_limited_count = 0
        self._duplicate_count = 0
        self._replayed_count = 0
        self._conflict_count = 0
        self._plan_denied_count = 0

    async def execute(
        self,
        request_id: str,
        user_id: str,
        operation_type: str,
        params: Dict[str, Any],
        executor: Executor,
    ) -> ExecutionResult:
        """
        Run a paid operation at most once per request_id.

        Args:
            request_id: Caller's idempotency key for this logical attempt
            user_id: Account to charge
            operation_type: Operation name (also the rate-limit endpoint)
            params: Executor input, also passed to the cost estimator
            executor: Async callable performing the paid operation

        Returns:
            ExecutionResult mapping to 200/402/403/409/429/500
        """
        start_time = time.perf_counter()
        self._total_requests += 1

        # Step 1: Admission
        decision = self.rate_limiter.check(user_id, operation_type)
        if not decision.allowed:
            self._rate_limited_count += 1
            return self._result(
                ExecutionStatus.RATE_LIMITED,
                request_id,
                start_time,
                error=RateLimitedError(decision.retry_after_ms),
                rate_limit=decision,
            )

        # Step 2: Known attempt answers from its run
        existing = self.runs.get(request_id)
        if existing is not None:
            return self._from_run(existing, user_id, start_time, decision)

        # Step 3: Plan eligibility
        if self.entitlements is not None:
            entitlement = self.entitlements.check(user_id)
            if not entitlement.allowed:
                self._plan_denied_count += 1
                return self._result(
                    ExecutionStatus.PLAN_REQUIRED,
                    request_id,
                    start_time,
                    error=PlanRequiredError(entitlement.plan_id, entitlement.need_subscription),
                    rate_limit=decision,
                )

        # Step 4: Price the operation
        cost = to_usd(self.estimator.estimate_cost(operation_type, params))

        # Step 5: Cheap rejection before touching the ledger
        if self.config.balance_precheck:
            check = self.ledger.check_balance(user_id, cost)
            if not check.allowed:
                return self._insufficient(request_id, user_id, check.current_balance, cost, start_time, decision)

        # Step 6: Charge
        try:
            charge = self.ledger.deduct_atomic(user_id, cost, request_id, description=operation_type)
        except PersistenceConflict:
            return self._conflict(request_id, user_id, start_time, decision)
        if not charge.success:
            return self._insufficient(request_id, user_id, charge.current_balance, cost, start_time, decision)

        # Step 7: Claim the attempt
        claim = self.runs.create_or_get(user_id, request_id, operation_type, cost, params)
        if claim.state == RunClaimState.CONFLICT:
            if not charge.already_processed:
                self.ledger.refund(user_id, cost, request_id, reason="request id owned by another user")
            return self._conflict(request_id, user_id, start_time, decision)
        if claim.state != RunClaimState.NEW:
            return self._from_run(claim.run, user_id, start_time, decision)
        self.ledger.link_operation_run(request_id, claim.run.id)

        # Step 8: Execute
        exec_start = time.perf_counter()
        try:
            payload = await asyncio.wait_for(executor(params), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            failure: ExternalOperationFailure = OperationTimeoutError(self.config.timeout_seconds)
        except ExternalOperationFailure as e:
            failure = e
        except Exception as e:
            failure = ExternalOperationFailure(str(e) or type(e).__name__)
        else:
            # Step 9a: Commit
            duration_ms = int((time.perf_counter() - exec_start) * 1000)
            if not self.runs.mark_succeeded(request_id, payload, duration_ms):
                # Reconciliation settled the run first; its outcome stands
                stored = self.runs.get(request_id)
                if stored is not None and stored.status != RunStatus.SUCCEEDED:
                    logger.warning(
                        "late_success_discarded",
                        request_id=request_id,
                        user_id=user_id,
                        duration_ms=duration_ms,
                    )
                    self._failed_count += 1
                    return self._from_run(stored, user_id, start_time, decision, replay=False)
            self._succeeded_count += 1
            logger.info(
                "operation_succeeded",
                request_id=request_id,
                user_id=user_id,
                operation_type=operation_type,
                cost=format_usd(cost),
                duration_ms=duration_ms,
            )
            return self._result(ExecutionStatus.SUCCEEDED, request_id, start_time, payload=payload, rate_limit=decision)

        # Step 9b: Compensate
        duration_ms = int((time.perf_counter() - exec_start) * 1000)
        self._compensate(user_id, request_id, cost, failure, duration_ms)
        self._failed_count += 1
        return self._result(
            ExecutionStatus.OPERATION_FAILED,
            request_id,
            start_time,
            error=failure,
            rate_limit=decision,
        )

    def _compensate(
        self,
        user_id: str,
        request_id: str,
        cost: Decimal,
        failure: ExternalOperationFailure,
        duration_ms: int,
    ) -> None:
        """Refund then mark failed. Errors here are logged, never raised over the failure."""
        logger.warning(
            "operation_failed",
            request_id=request_id,
            user_id=user_id,
            error=failure.message,
            duration_ms=duration_ms,
        )
        try:
            self.ledger.refund(user_id, cost, request_id, reason=failure.message[:200])
        except Exception as e:
            logger.error("refund_failed", request_id=request_id, user_id=user_id, error=str(e))

        try:
            self.runs.mark_failed(request_id, failure.message, duration_ms)
        except Exception as e:
            logger.error("mark_failed_failed", request_id=request_id, error=str(e))

    def _from_run(
        self,
        run: OperationRunRecord,
        user_id: str,
        start_time: float,
        decision: RateLimitDecision,
        replay: bool = True,
    ) -> ExecutionResult:
        if run.user_id != user_id:
            return self._conflict(run.request_id, user_id, start_time, decision)

        if run.status in (RunStatus.SUCCEEDED, RunStatus.FAILED) and replay:
            self._replayed_count += 1

        if run.status == RunStatus.SUCCEEDED:
            return self._result(
                ExecutionStatus.SUCCEEDED,
                run.request_id,
                start_time,
                payload=run.output_result,
                rate_limit=decision,
            )

        if run.status == RunStatus.FAILED:
            return self._result(
                ExecutionStatus.OPERATION_FAILED,
                run.request_id,
                start_time,
                error=ExternalOperationFailure(run.error_message or "Operation failed"),
                rate_limit=decision,
            )

        self._duplicate_count += 1
        logger.warning("duplicate_in_progress", request_id=run.request_id, user_id=run.user_id)
        return self._result(
            ExecutionStatus.DUPLICATE_IN_PROGRESS,
            run.request_id,
            start_time,
            error=DuplicateInProgressError(run.request_id),
            rate_limit=decision,
        )

    def _conflict(
        self,
        request_id: str,
        user_id: str,
        start_time: float,
        decision: RateLimitDecision,
    ) -> ExecutionResult:
        self._conflict_count += 1
        logger.warning("request_id_conflict", request_id=request_id, user_id=user_id)
        return self._result(
            ExecutionStatus.REQUEST_CONFLICT,
            request_id,
            start_time,
            error=RequestConflictError(request_id),
            rate_limit=decision,
        )

    def _insufficient(
        self,
        request_id: str,
        user_id: str,
        balance: Optional[Decimal],
        cost: Decimal,
        start_time: float,
        decision: RateLimitDecision,
    ) -> ExecutionResult:
        self._insufficient_count += 1
        return self._result(
            ExecutionStatus.INSUFFICIENT_CREDIT,
            request_id,
            start_time,
            error=InsufficientCreditError(balance if balance is not None else 0, cost),
            rate_limit=decision,
        )

    def _result(
        self,
        status: ExecutionStatus,
        request_id: str,
        start_time: float,
        **kwargs: Any,
    ) -> ExecutionResult:
        return ExecutionResult(
            status=status,
            request_id=request_id,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            **kwargs,
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get gate metrics."""
        return {
            "total_requests": self._total_requests,
            "succeeded": self._succeeded_count,
            "failed": self._failed_count,
            "insufficient_credit": self._insufficient_count,
            "rate_limited": self._rate_limited_count,
            "duplicates_in_progress": self._duplicate_count,
            "replayed": self._replayed_count,
            "request_conflicts": self._conflict_count,
            "plan_denied": self._plan_denied_count,
            "success_rate": self._succeeded_count / self._total_requests if self._total_requests > 0 else 0,
        }

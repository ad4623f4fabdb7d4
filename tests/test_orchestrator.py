"""
Tests for the Billing Gate

"NO PAYMENT, NO RUN": the executor is reached only after a successful charge,
and every failure after the charge is refunded.
"""

import asyncio
from decimal import Decimal

import pytest

from billing.entitlements import PlanEntitlements
from enforcement.gate import BillingOrchestrator, ExecutionStatus, OrchestratorConfig
from enforcement.rate_limit import RateLimitConfig, RateLimiter
from enforcement.reconciliation import ReconciliationSweeper
from persistence.models import RunStatus
from persistence.repository import SubscriptionRepository


class FixedCost:
    """Estimator charging the same amount for everything."""

    def __init__(self, cost="1.00"):
        self.cost = Decimal(cost)

    def estimate_cost(self, operation_type, params):
        return self.cost


class RecordingExecutor:
    """Async executor that records calls and returns or raises on demand."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.calls = []
        self.result = result if result is not None else {"text": "generated"}
        self.error = error
        self.delay = delay

    async def __call__(self, params):
        self.calls.append(params)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def make_orchestrator(ledger, runs, db, limit=100, entitlements=None, **config):
    return BillingOrchestrator(
        ledger=ledger,
        runs=runs,
        rate_limiter=RateLimiter(db=db, limits={"generate": RateLimitConfig(limit)}),
        estimator=FixedCost(),
        config=OrchestratorConfig(**config),
        entitlements=entitlements,
    )


def execute(orchestrator, executor, request_id="req-1", user_id="user-1", params=None):
    return asyncio.run(orchestrator.execute(request_id, user_id, "generate", params or {"prompt": "hi"}, executor))


def _balance(ledger, user_id="user-1"):
    return ledger.get_or_create_balance(user_id).balance_usd


@pytest.fixture
def orchestrator(ledger, runs, db):
    return make_orchestrator(ledger, runs, db)


class TestSuccess:
    """Test the paid happy path."""

    def test_charges_then_runs(self, orchestrator, ledger, runs, funded_user):
        """Success returns the payload, charges once and records the run."""
        executor = RecordingExecutor()

        result = execute(orchestrator, executor)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert result.http_status == 200
        assert result.to_dict() == {"request_id": "req-1", "result": {"text": "generated"}}
        assert _balance(ledger) == Decimal("9.00")
        run = runs.get("req-1")
        assert run.status == RunStatus.SUCCEEDED
        assert ledger.transactions.get_by_request_id("req-1").operation_run_id == run.id

    def test_replay_returns_cached_result(self, orchestrator, ledger, funded_user):
        """A retry of a finished request is answered without charging or running."""
        executor = RecordingExecutor()

        first = execute(orchestrator, executor)
        second = execute(orchestrator, executor)

        assert len(executor.calls) == 1
        assert second.to_dict() == first.to_dict()
        assert second.http_status == 200
        assert _balance(ledger) == Decimal("9.00")


class TestRejections:
    """Test outcomes that never reach the executor."""

    def test_insufficient_credit(self, orchestrator, ledger, runs):
        """402 carries balance and cost; no run, no charge, no call."""
        ledger.add_purchased_credit("user-1", "0.50", "pi_small", "Tiny")
        executor = RecordingExecutor()

        result = execute(orchestrator, executor)
        body = result.to_dict()

        assert result.http_status == 402
        assert body["balance"] == "0.500000"
        assert body["estimated_cost"] == "1.000000"
        assert executor.calls == []
        assert runs.get("req-1") is None
        assert _balance(ledger) == Decimal("0.50")

    def test_insufficient_without_precheck(self, ledger, runs, db):
        """The deduction guard rejects even when the pre-check is disabled."""
        orchestrator = make_orchestrator(ledger, runs, db, balance_precheck=False)
        executor = RecordingExecutor()

        result = execute(orchestrator, executor)

        assert result.status == ExecutionStatus.INSUFFICIENT_CREDIT
        assert executor.calls == []
        assert runs.get("req-1") is None

    def test_in_flight_duplicate(self, orchestrator, ledger, runs, funded_user):
        """A processing run answers 409 and the retry is not charged."""
        runs.create_or_get(funded_user, "req-1", "generate")
        executor = RecordingExecutor()

        result = execute(orchestrator, executor)

        assert result.http_status == 409
        assert result.to_dict()["error"] == "duplicate_in_progress"
        assert executor.calls == []
        assert _balance(ledger) == Decimal("10.00")

    def test_rate_limited(self, ledger, runs, db, funded_user):
        """Over the limit: 429 with Retry-After, nothing charged."""
        orchestrator = make_orchestrator(ledger, runs, db, limit=1)
        executor = RecordingExecutor()

        execute(orchestrator, executor, request_id="req-1")
        result = execute(orchestrator, executor, request_id="req-2")

        assert result.http_status == 429
        assert "Retry-After" in result.headers()
        assert result.to_dict()["retry_after_ms"] > 0
        assert len(executor.calls) == 1
        assert _balance(ledger) == Decimal("9.00")

    def test_concurrent_retry_sees_in_flight(self, orchestrator, ledger, funded_user):
        """Two overlapping attempts with one request_id: one runs, one gets 409."""
        executor = RecordingExecutor(delay=0.05)

        async def both():
            return await asyncio.gather(
                orchestrator.execute("req-1", funded_user, "generate", {}, executor),
                orchestrator.execute("req-1", funded_user, "generate", {}, executor),
            )

        results = asyncio.run(both())

        assert sorted(r.http_status for r in results) == [200, 409]
        assert len(executor.calls) == 1
        assert _balance(ledger) == Decimal("9.00")


class TestRequestIdOwnership:
    """Test request ids that belong to someone or something else."""

    def test_refund_key_cannot_skip_payment(self, orchestrator, ledger, funded_user):
        """Reusing a refunded request's refund key is refused before the executor."""
        execute(orchestrator, RecordingExecutor(error=RuntimeError("provider down")), request_id="r3")
        executor = RecordingExecutor()

        result = execute(orchestrator, executor, request_id="refund:r3")

        assert result.http_status == 409
        assert result.to_dict()["error"] == "request_id_conflict"
        assert executor.calls == []
        assert _balance(ledger) == Decimal("10.00")

    def test_other_users_result_not_replayed(self, orchestrator, ledger, funded_user):
        """A second user sending the same request_id gets 409, not the first user's output."""
        ledger.add_purchased_credit("user-2", "10.00", "pi_u2", "Seed package")
        executor = RecordingExecutor(result={"secret": "user-1 output"})
        execute(orchestrator, executor, request_id="shared")

        result = asyncio.run(orchestrator.execute("shared", "user-2", "generate", {}, executor))
        body = result.to_dict()

        assert result.http_status == 409
        assert "result" not in body
        assert "secret" not in str(body)
        assert len(executor.calls) == 1
        assert _balance(ledger, "user-2") == Decimal("10.00")
        assert orchestrator.get_metrics()["request_conflicts"] == 1

    def test_other_users_pending_charge_is_a_conflict(self, orchestrator, ledger, funded_user):
        """A charge without a run yet still belongs to its user."""
        ledger.add_purchased_credit("user-2", "10.00", "pi_u2", "Seed package")
        ledger.deduct_atomic(funded_user, "1.00", "pending")
        executor = RecordingExecutor()

        result = asyncio.run(orchestrator.execute("pending", "user-2", "generate", {}, executor))

        assert result.http_status == 409
        assert executor.calls == []
        assert _balance(ledger, "user-2") == Decimal("10.00")


class TestCompensation:
    """Test refund on failure and timeout."""

    def test_executor_failure_is_refunded(self, orchestrator, ledger, runs, funded_user):
        """A failing executor: 500, refund, run failed."""
        executor = RecordingExecutor(error=RuntimeError("provider down"))

        result = execute(orchestrator, executor)

        assert result.http_status == 500
        assert result.to_dict()["message"] == "provider down"
        assert _balance(ledger) == Decimal("10.00")
        assert runs.get("req-1").status == RunStatus.FAILED
        assert ledger.transactions.get_by_request_id("refund:req-1") is not None

    def test_failed_replay_does_not_rerun(self, orchestrator, ledger, funded_user):
        """Retrying a failed request returns the cached failure."""
        executor = RecordingExecutor(error=RuntimeError("provider down"))

        first = execute(orchestrator, executor)
        second = execute(orchestrator, executor)

        assert len(executor.calls) == 1
        assert second.http_status == 500
        assert second.to_dict()["message"] == first.to_dict()["message"]
        assert _balance(ledger) == Decimal("10.00")

    def test_timeout_is_refunded(self, ledger, runs, db, funded_user):
        """Timeouts are failures: refunded and marked failed."""
        orchestrator = make_orchestrator(ledger, runs, db, timeout_seconds=0.05)
        executor = RecordingExecutor(delay=1.0)

        result = execute(orchestrator, executor)

        assert result.http_status == 500
        assert "timed out" in result.to_dict()["message"]
        assert _balance(ledger) == Decimal("10.00")
        assert runs.get("req-1").status == RunStatus.FAILED

    def test_refund_error_does_not_mask_failure(self, orchestrator, ledger, runs, funded_user, monkeypatch):
        """If the refund raises, the original failure is still returned."""
        def broken_refund(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(ledger, "refund", broken_refund)
        executor = RecordingExecutor(error=RuntimeError("provider down"))

        result = execute(orchestrator, executor)

        assert result.http_status == 500
        assert result.to_dict()["message"] == "provider down"
        assert runs.get("req-1").status == RunStatus.FAILED
        assert _balance(ledger) == Decimal("9.00")


class TestMetrics:
    """Test gate counters."""

    def test_counts_outcomes(self, orchestrator, ledger, funded_user):
        """Each outcome increments its own counter."""
        execute(orchestrator, RecordingExecutor(), request_id="ok")
        execute(orchestrator, RecordingExecutor(), request_id="ok")
        execute(orchestrator, RecordingExecutor(error=ValueError("bad")), request_id="bad")

        metrics = orchestrator.get_metrics()

        assert metrics["total_requests"] == 3
        assert metrics["succeeded"] == 1
        assert metrics["replayed"] == 1
        assert metrics["failed"] == 1


class TestLateSuccess:
    """Test an executor finishing after reconciliation settled its run."""

    def test_sweep_outcome_stands(self, orchestrator, ledger, runs, db, funded_user):
        """The swept failure and refund win; the late payload is not returned."""
        sweeper = ReconciliationSweeper(ledger, runs)

        async def outlived(params):
            db.execute_rowcount(
                "UPDATE operation_runs SET created_at = ?", ("2000-01-01T00:00:00.000000+00:00",)
            )
            sweeper.sweep()
            return {"text": "too late"}

        first = execute(orchestrator, outlived)
        replay = execute(orchestrator, outlived)

        assert first.http_status == 500
        assert "result" not in first.to_dict()
        assert replay.to_dict() == first.to_dict()
        assert runs.get("req-1").status == RunStatus.FAILED
        assert _balance(ledger) == Decimal("10.00")


class TestPlanEligibility:
    """Test the plan check that runs before any charge."""

    @pytest.fixture
    def subscriptions(self, db):
        return SubscriptionRepository(db)

    @pytest.fixture
    def gated(self, ledger, runs, db, subscriptions):
        return make_orchestrator(ledger, runs, db, entitlements=PlanEntitlements(subscriptions))

    def test_free_plan_refused(self, gated, ledger, funded_user):
        """No subscription means the free plan: 403 and nothing charged."""
        executor = RecordingExecutor()

        result = execute(gated, executor)
        body = result.to_dict()

        assert result.http_status == 403
        assert body["error"] == "plan_required"
        assert body["plan"] == "free"
        assert body["need_subscription"] is False
        assert executor.calls == []
        assert _balance(ledger) == Decimal("10.00")
        assert gated.get_metrics()["plan_denied"] == 1

    def test_paid_plan_allowed(self, gated, ledger, subscriptions, funded_user):
        """An active paid subscription reaches the ledger and the executor."""
        subscriptions.upsert(funded_user, plan="pro", status="active")

        result = execute(gated, RecordingExecutor())

        assert result.http_status == 200
        assert _balance(ledger) == Decimal("9.00")

    def test_canceled_subscription_refused(self, gated, subscriptions, funded_user):
        """A canceled subscription falls back to the free plan."""
        subscriptions.upsert(funded_user, plan="pro", status="canceled")

        assert execute(gated, RecordingExecutor()).http_status == 403

    def test_retired_plan_needs_subscription(self, gated, subscriptions, funded_user):
        """A plan missing from the catalogue asks the user to subscribe again."""
        subscriptions.upsert(funded_user, plan="legacy", status="active")

        result = execute(gated, RecordingExecutor())

        assert result.http_status == 403
        assert result.to_dict()["need_subscription"] is True

"""
CREDIT RAIL - Production FastAPI Server

Metered-billing gate in front of paid operations.

Endpoints:
- POST /operations/{operation_type} - Run a paid operation through the gate
- GET /credits/{user_id} - Balance and monthly activity
- POST /credits/{user_id}/adjust - Admin credit adjustment
- POST /webhooks/stripe - Stripe event delivery
- POST /admin/reconcile - Refund abandoned charges
- GET /metrics - Gate metrics
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing.entitlements import PlanEntitlements
from billing.ledger import CreditLedger
from billing.plans import PlanCatalog
from billing.pricing import CostEstimator, StaticCostEstimator
from billing.runs import OperationRunStore
from billing.stripe_integration import StripeIntegration, StripeIntegrationError
from billing.webhook_gate import WebhookEventGate
from billing.webhooks import BillingEventProcessor
from core.config import Settings
from core.errors import BillingError
from enforcement.gate import BillingOrchestrator, Executor, OrchestratorConfig
from enforcement.rate_limit import RateLimiter, RateLimitPreset
from enforcement.reconciliation import ReconciliationConfig, ReconciliationSweeper
from persistence.database import Database
from persistence.repository import SubscriptionRepository

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class OperationRequest(BaseModel):
    """Request to run a paid operation."""
    request_id: str = Field(..., min_length=1, description="Idempotency key for this logical attempt")
    user_id: str = Field(..., min_length=1, description="Account to charge")
    params: Dict[str, Any] = Field(default_factory=dict)


class AdjustmentRequest(BaseModel):
    """Admin credit adjustment. Negative amounts remove credit."""
    amount: Decimal = Field(..., description="Signed USD amount")
    reason: str = Field(..., min_length=1)
    request_id: Optional[str] = Field(None, description="Optional idempotency key")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    webhooks_enabled: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        estimator: Optional[CostEstimator] = None,
    ):
        self.settings = settings or Settings.from_env()

        self.db = Database(self.settings.database_url)
        self.db.initialize()

        self.ledger = CreditLedger(self.db)
        self.runs = OperationRunStore(self.db)
        self.subscriptions = SubscriptionRepository(self.db)
        self.plans = PlanCatalog()
        self.rate_limiter = RateLimiter(db=self.db, default=RateLimitPreset.AI_API)
        self.orchestrator = BillingOrchestrator(
            ledger=self.ledger,
            runs=self.runs,
            rate_limiter=self.rate_limiter,
            estimator=estimator or StaticCostEstimator(),
            config=OrchestratorConfig(timeout_seconds=self.settings.operation_timeout_seconds),
            entitlements=(
                PlanEntitlements(self.subscriptions, self.plans)
                if self.settings.require_paid_plan else None
            ),
        )
        self.webhook_gate = WebhookEventGate(self.db)
        self.processor = BillingEventProcessor(
            ledger=self.ledger,
            gate=self.webhook_gate,
            subscriptions=self.subscriptions,
            plans=self.plans,
            db=self.db,
        )
        self.stripe = StripeIntegration(
            api_key=self.settings.stripe_api_key,
            webhook_secret=self.settings.stripe_webhook_secret,
        )
        self.sweeper = ReconciliationSweeper(
            ledger=self.ledger,
            runs=self.runs,
            config=ReconciliationConfig(stale_after_minutes=self.settings.reconcile_after_minutes),
        )
        self.executors: Dict[str, Executor] = {}
        self.start_time = datetime.now(timezone.utc)

    def register_executor(self, operation_type: str, executor: Executor) -> None:
        """Expose an async executor as POST /operations/{operation_type}."""
        self.executors[operation_type] = executor
        logger.info("executor_registered", operation_type=operation_type)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("credit_rail_starting", version=VERSION)
    app_state = AppState()
    yield
    app_state.db.close()
    logger.info("credit_rail_stopping")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render BillingError subclasses with their own status code."""
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Credit Rail",
        description="""
# Metered Billing Gate

**NO PAYMENT, NO RUN** - Every paid operation is charged before it executes.

## Features
- **Atomic Deduction**: A balance can never go negative, even under concurrency
- **Idempotent Requests**: One request_id is charged and executed at most once
- **Refund on Failure**: Failed or timed-out operations are refunded
- **Stripe Webhooks**: Verified, deduplicated plan grants and credit purchases
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=Settings.from_env().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(BillingError, billing_error_handler)

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="postgres" if state.db.is_postgres else "sqlite",
        webhooks_enabled=state.stripe.is_available,
        uptime_seconds=uptime,
    )


@app.post("/operations/{operation_type}", tags=["Operations"])
async def run_operation(
    operation_type: str,
    request: OperationRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Run a paid operation.

    This is the core endpoint implementing "NO PAYMENT, NO RUN".

    The operation only executes if:
    1. The caller is within its rate limit
    2. The request_id has not been seen before
    3. The balance covers the estimated cost and the deduction succeeded

    Retrying with the same request_id returns the original outcome.
    """
    executor = state.executors.get(operation_type)
    if executor is None:
        raise HTTPException(status_code=404, detail=f"Unknown operation type: {operation_type}")

    result = await state.orchestrator.execute(
        request_id=request.request_id,
        user_id=request.user_id,
        operation_type=operation_type,
        params=request.params,
        executor=executor,
    )
    return JSONResponse(
        status_code=result.http_status,
        content=jsonable_encoder(result.to_dict()),
        headers=result.headers(),
    )


@app.get("/credits/{user_id}", tags=["Credits"])
async def get_credits(
    user_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Balance, this month's usage and credits, and recent transactions."""
    return state.ledger.get_credit_summary(user_id).to_dict()


@app.post("/credits/{user_id}/adjust", tags=["Credits"])
async def adjust_credits(
    user_id: str,
    request: AdjustmentRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Apply an admin adjustment.

    Rejected with 400 if the amount is zero or would make the balance negative.
    """
    try:
        result = state.ledger.adjust_credit(user_id, request.amount, request.reason, request.request_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=400, detail=result.reason)

    logger.info("admin_adjustment", user_id=user_id, amount=str(request.amount))
    return result.to_dict()


@app.post("/webhooks/stripe", tags=["Billing"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """
    Receive a Stripe event.

    Authenticated by signature, not API key. Duplicates and unhandled event
    types are acknowledged with 200 so Stripe stops redelivering them.
    """
    payload = await request.body()

    try:
        event = state.stripe.construct_event(payload, stripe_signature)
    except StripeIntegrationError as e:
        raise HTTPException(status_code=503, detail=str(e))

    try:
        outcome = state.processor.process(event)
    except Exception as e:
        logger.error("webhook_processing_failed", event_id=event.id, event_type=event.type, error=str(e))
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, "outcome": outcome.value}


@app.post("/admin/reconcile", tags=["Admin"])
async def reconcile(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Refund abandoned runs and orphaned charges."""
    return state.sweeper.sweep()


@app.get("/metrics", tags=["Monitoring"])
async def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Get gate metrics."""
    return {
        "gate": state.orchestrator.get_metrics(),
        "executors": sorted(state.executors),
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=settings.port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()

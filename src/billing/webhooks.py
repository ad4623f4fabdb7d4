"""
Billing Event Processor

Applies verified provider events to the ledger and subscription state,
at most once per event id.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import structlog

from persistence.database import Database, get_database
from persistence.models import grant_key, to_iso
from persistence.repository import SubscriptionRepository
from .events import (
    BillingEvent,
    CheckoutSession,
    CheckoutSessionCompleted,
    InvoicePaid,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
)
from .ledger import CreditLedger
from .plans import PlanCatalog
from .webhook_gate import WebhookEventGate

logger = structlog.get_logger()

# Period assumed until the provider reports the real one
PROVISIONAL_PERIOD = timedelta(days=30)


class WebhookOutcome(Enum):
    """What happened to one delivery."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def _timestamp(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    return to_iso(datetime.fromtimestamp(seconds, timezone.utc))


def _provisional_period() -> Dict[str, Any]:
    start = datetime.now(timezone.utc)
    return {
        "current_period_start": to_iso(start),
        "current_period_end": to_iso(start + PROVISIONAL_PERIOD),
    }


class BillingEventProcessor:
    """
    Lock, dispatch, then mark each provider event.

    A handler exception marks the event failed and propagates so the HTTP
    layer answers 500 and the provider redelivers. Credits are keyed by the
    event id, so a redelivery after a partial failure replays the grant
    instead of applying it twice.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        gate: Optional[WebhookEventGate] = None,
        subscriptions: Optional[SubscriptionRepository] = None,
        plans: Optional[PlanCatalog] = None,
        db: Optional[Database] = None,
    ):
        self.db = db or ledger.db or get_database()
        self.ledger = ledger
        self.gate = gate or WebhookEventGate(self.db)
        self.subscriptions = subscriptions or SubscriptionRepository(self.db)
        self.plans = plans or PlanCatalog()

        self._handlers = {
            CheckoutSessionCompleted: self._handle_checkout_completed,
            InvoicePaid: self._handle_invoice_paid,
            SubscriptionUpdated: self._handle_subscription_updated,
            SubscriptionDeleted: self._handle_subscription_deleted,
        }

    def process(self, event: BillingEvent) -> WebhookOutcome:
        """Apply one event. Duplicate deliveries are cheap no-ops."""
        if isinstance(event, UnhandledEvent):
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            return WebhookOutcome.IGNORED

        lock = self.gate.check_and_lock(event.id, event.type)
        if not lock.should_process:
            return WebhookOutcome.DUPLICATE

        try:
            self._handlers[type(event)](event)
        except Exception as e:
            self.gate.mark_failed(event.id, f"{type(e).__name__}: {e}")
            raise

        self.gate.mark_completed(event.id)
        return WebhookOutcome.PROCESSED

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_checkout_completed(self, event: CheckoutSessionCompleted) -> None:
        session = event.data.object
        user_id = session.user_id
        if not user_id:
            logger.error("checkout_missing_user", event_id=event.id, session_id=session.id)
            return

        if session.mode == "subscription" and session.subscription:
            plan = self.plans.get(session.plan_id or PlanCatalog.DEFAULT_PLAN)
            self.subscriptions.upsert(
                user_id,
                stripe_customer_id=session.customer,
                stripe_subscription_id=session.subscription,
                stripe_price_id=plan.stripe_price_id if plan else None,
                plan=plan.id if plan else (session.plan_id or PlanCatalog.DEFAULT_PLAN),
                status="active",
                cancel_at_period_end=False,
                **_provisional_period(),
            )
            if plan and plan.included_credit_usd > 0:
                self.ledger.grant_plan_credit(
                    user_id, plan.included_credit_usd, plan.name, request_id=grant_key(event.id)
                )
            logger.info("subscription_started", user_id=user_id, plan=plan.id if plan else None)

        elif session.mode == "payment":
            credit, package_name = self._purchase_terms(session)
            if credit > 0:
                payment_id = session.payment_intent or session.id
                self.ledger.add_purchased_credit(
                    user_id, credit, payment_id, package_name, request_id=grant_key(event.id)
                )
                logger.info("credit_purchased", user_id=user_id, credit_usd=str(credit), payment_id=payment_id)

    def _purchase_terms(self, session: CheckoutSession) -> Tuple[Decimal, str]:
        """Credit and label for a purchase. A known package id overrides free-form metadata."""
        package = self.plans.get_package(session.package_id) if session.package_id is not None else None
        if package is not None:
            return package.credit_usd, package.name
        return session.credit_usd, session.package_name

    def _handle_invoice_paid(self, event: InvoicePaid) -> None:
        invoice = event.data.object
        # First invoice is covered by checkout.session.completed
        if invoice.billing_reason != "subscription_cycle":
            return

        subscription_id = invoice.subscription_id
        if not subscription_id:
            return

        record = self.subscriptions.get_by_stripe_subscription_id(subscription_id)
        if record is None:
            logger.error("subscription_not_found", subscription_id=subscription_id, event_id=event.id)
            return

        plan = self.plans.by_price_id(invoice.price_id) or self.plans.get(record.plan)
        if plan is None or plan.included_credit_usd <= 0:
            return

        self.ledger.grant_plan_credit(
            record.user_id, plan.included_credit_usd, plan.name, request_id=grant_key(event.id)
        )
        self.subscriptions.upsert(record.user_id, **_provisional_period())
        logger.info("monthly_credit_granted", user_id=record.user_id, plan=plan.id)

    def _handle_subscription_updated(self, event: SubscriptionUpdated) -> None:
        subscription = event.data.object
        record = self.subscriptions.get_by_stripe_subscription_id(subscription.id)
        if record is None:
            return

        start, end = subscription.period
        fields: Dict[str, Any] = {
            "status": subscription.status,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            **_provisional_period(),
        }
        if start is not None:
            fields["current_period_start"] = _timestamp(start)
        if end is not None:
            fields["current_period_end"] = _timestamp(end)

        plan = self.plans.by_price_id(subscription.price_id)
        if plan is not None:
            fields["plan"] = plan.id
            fields["stripe_price_id"] = subscription.price_id

        self.subscriptions.upsert(record.user_id, **fields)
        if plan is not None and plan.id != record.plan:
            logger.info("subscription_plan_changed", user_id=record.user_id, old=record.plan, new=plan.id)

    def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        record = self.subscriptions.get_by_stripe_subscription_id(event.data.object.id)
        if record is None:
            return
        self.subscriptions.upsert(record.user_id, status="canceled")
        logger.info("subscription_canceled", user_id=record.user_id)

"""
Billing Provider Events

Inbound Stripe events are validated into a closed set of typed models before
any business logic sees them. Types the service does not handle become
UnhandledEvent and are acknowledged without effect.
"""

from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from core.errors import InvalidWebhookEventError


def _expandable_id(value: Any) -> Any:
    """Stripe sends either an id string or an expanded object with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ============================================================================
# Stripe objects (only the fields the handlers read)
# ============================================================================

class Price(_StripeModel):
    id: str


class LineItem(_StripeModel):
    price: Optional[Price] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class LineItemList(_StripeModel):
    data: List[LineItem] = Field(default_factory=list)


class CheckoutSession(_StripeModel):
    id: str
    mode: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "subscription", "payment_intent", mode="before")
    @classmethod
    def unwrap_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId") or self.metadata.get("user_id")

    @property
    def plan_id(self) -> Optional[str]:
        return self.metadata.get("planId") or self.metadata.get("plan_id")

    @property
    def credit_usd(self) -> Decimal:
        raw = self.metadata.get("creditUsd") or self.metadata.get("credit_usd") or "0"
        try:
            value = Decimal(raw)
        except InvalidOperation:
            return Decimal("0")
        return value if value.is_finite() else Decimal("0")

    @property
    def package_id(self) -> Optional[int]:
        raw = self.metadata.get("packageId") or self.metadata.get("package_id")
        try:
            return int(raw) if raw else None
        except ValueError:
            return None

    @property
    def package_name(self) -> str:
        return self.metadata.get("packageName") or "Credit package"


class Invoice(_StripeModel):
    id: str
    billing_reason: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[Dict[str, Any]] = None
    lines: LineItemList = Field(default_factory=LineItemList)

    @field_validator("subscription", mode="before")
    @classmethod
    def unwrap_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # Newer API versions nest it under parent.subscription_details
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def price_id(self) -> Optional[str]:
        for line in self.lines.data:
            if line.price:
                return line.price.id
        return None


class Subscription(_StripeModel):
    id: str
    status: str
    customer: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    items: LineItemList = Field(default_factory=LineItemList)

    @field_validator("customer", mode="before")
    @classmethod
    def unwrap_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def price_id(self) -> Optional[str]:
        for item in self.items.data:
            if item.price:
                return item.price.id
        return None

    @property
    def period(self) -> tuple:
        """(start, end) unix seconds, falling back to the first item's period."""
        start, end = self.current_period_start, self.current_period_end
        if (start is None or end is None) and self.items.data:
            start = start or self.items.data[0].current_period_start
            end = end or self.items.data[0].current_period_end
        return start, end


# ============================================================================
# Event envelopes
# ============================================================================

class _Event(_StripeModel):
    id: str
    created: Optional[int] = None


class CheckoutSessionData(_StripeModel):
    object: CheckoutSession


class InvoiceData(_StripeModel):
    object: Invoice


class SubscriptionData(_StripeModel):
    object: Subscription


class CheckoutSessionCompleted(_Event):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class InvoicePaid(_Event):
    type: Literal["invoice.paid"]
    data: InvoiceData


class SubscriptionUpdated(_Event):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(_Event):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class UnhandledEvent(_Event):
    type: str


HandledEvent = Annotated[
    Union[CheckoutSessionCompleted, InvoicePaid, SubscriptionUpdated, SubscriptionDeleted],
    Field(discriminator="type"),
]

BillingEvent = Union[
    CheckoutSessionCompleted,
    InvoicePaid,
    SubscriptionUpdated,
    SubscriptionDeleted,
    UnhandledEvent,
]

HANDLED_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "invoice.paid",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})

_handled_adapter = TypeAdapter(HandledEvent)


def parse_event(raw: Any) -> BillingEvent:
    """
    Validate a decoded provider payload into a typed event.

    Raises:
        InvalidWebhookEventError: payload is not an event, or a handled
            event type is missing fields its handler needs
    """
    if not isinstance(raw, dict) or not raw.get("id") or not raw.get("type"):
        raise InvalidWebhookEventError("Payload is not a provider event")

    try:
        if raw["type"] in HANDLED_EVENT_TYPES:
            return _handled_adapter.validate_python(raw)
        return UnhandledEvent.model_validate(raw)
    except ValidationError as e:
        raise InvalidWebhookEventError(
            f"Malformed {raw['type']} event",
            {"event_id": raw["id"], "errors": e.error_count()},
        ) from e

"""
Data Models for Persistence Layer

Row-level records for the ledger store. Money columns hold integer micro-USD;
the *_usd properties expose them as Decimal.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import json
import uuid

from core.money import micros_to_usd, format_usd


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[Any]) -> Optional[str]:
    """
    Normalize a timestamp to a fixed-width ISO string.

    Fixed width (always microseconds) keeps TEXT timestamps on SQLite
    comparable as strings. PostgreSQL returns datetime objects.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return str(value)


def now_iso() -> str:
    return to_iso(utc_now())


def new_id() -> str:
    return str(uuid.uuid4())


# Refund entries are keyed by the charged request_id under this prefix
REFUND_KEY_PREFIX = "refund:"


def refund_key(request_id: str) -> str:
    return f"{REFUND_KEY_PREFIX}{request_id}"


# Webhook credits are keyed by the provider event id under this prefix
GRANT_KEY_PREFIX = "grant:"


def grant_key(event_id: str) -> str:
    return f"{GRANT_KEY_PREFIX}{event_id}"


# Keys the service derives itself; callers may not use them
RESERVED_KEY_PREFIXES = (REFUND_KEY_PREFIX, GRANT_KEY_PREFIX)


def is_reserved_key(request_id: str) -> bool:
    return request_id.startswith(RESERVED_KEY_PREFIXES)


class TransactionType(Enum):
    """Kinds of ledger entries."""
    API_USAGE = "api_usage"
    REFUND = "refund"
    PLAN_GRANT = "plan_grant"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"


class RunStatus(Enum):
    """Operation run lifecycle. PROCESSING transitions exactly once."""
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WebhookStatus(Enum):
    """Webhook event lifecycle. FAILED may re-enter PROCESSING."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CreditBalanceRecord:
    """Persisted balance row (one per user)."""
    user_id: str
    balance_micros: int = 0
    last_refreshed_at: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def balance_usd(self) -> Decimal:
        return micros_to_usd(self.balance_micros)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance_usd": format_usd(self.balance_usd),
            "last_refreshed_at": self.last_refreshed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditBalanceRecord":
        return cls(
            user_id=row["user_id"],
            balance_micros=int(row["balance_micros"]),
            last_refreshed_at=to_iso(row.get("last_refreshed_at")),
            created_at=to_iso(row["created_at"]),
            updated_at=to_iso(row["updated_at"]),
        )


@dataclass
class CreditTransactionRecord:
    """Persisted ledger entry. Append-only."""
    user_id: str
    type: TransactionType
    amount_micros: int
    balance_after_micros: int
    request_id: Optional[str] = None
    description: Optional[str] = None
    external_payment_id: Optional[str] = None
    operation_run_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=now_iso)

    @property
    def amount_usd(self) -> Decimal:
        return micros_to_usd(self.amount_micros)

    @property
    def balance_after_usd(self) -> Decimal:
        return micros_to_usd(self.balance_after_micros)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "amount_usd": format_usd(self.amount_usd),
            "balance_after": format_usd(self.balance_after_usd),
            "request_id": self.request_id,
            "description": self.description,
            "external_payment_id": self.external_payment_id,
            "operation_run_id": self.operation_run_id,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.id,
            self.user_id,
            self.type.value,
            self.amount_micros,
            self.balance_after_micros,
            self.request_id,
            self.description,
            self.external_payment_id,
            self.operation_run_id,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditTransactionRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=TransactionType(row["type"]),
            amount_micros=int(row["amount_micros"]),
            balance_after_micros=int(row["balance_after_micros"]),
            request_id=row.get("request_id"),
            description=row.get("description"),
            external_payment_id=row.get("external_payment_id"),
            operation_run_id=row.get("operation_run_id"),
            created_at=to_iso(row["created_at"]),
        )


@dataclass
class OperationRunRecord:
    """Persisted attempt at a paid operation."""
    request_id: str
    user_id: str
    operation_type: str
    estimated_cost_micros: int = 0
    status: RunStatus = RunStatus.PROCESSING
    input_params: Optional[Dict[str, Any]] = None
    output_result: Optional[Any] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    @property
    def estimated_cost_usd(self) -> Decimal:
        return micros_to_usd(self.estimated_cost_micros)

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.PROCESSING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation_type": self.operation_type,
            "estimated_cost": format_usd(self.estimated_cost_usd),
            "status": self.status.value,
            "output_result": self.output_result,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.id,
            self.request_id,
            self.user_id,
            self.operation_type,
            self.estimated_cost_micros,
            self.status.value,
            json.dumps(self.input_params) if self.input_params is not None else None,
            json.dumps(self.output_result) if self.output_result is not None else None,
            self.error_message,
            self.duration_ms,
            self.created_at,
            self.updated_at,
            self.completed_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OperationRunRecord":
        return cls(
            id=row["id"],
            request_id=row["request_id"],
            user_id=row["user_id"],
            operation_type=row["operation_type"],
            estimated_cost_micros=int(row["estimated_cost_micros"]),
            status=RunStatus(row["status"]),
            input_params=json.loads(row["input_params"]) if row.get("input_params") else None,
            output_result=json.loads(row["output_result"]) if row.get("output_result") else None,
            error_message=row.get("error_message"),
            duration_ms=row.get("duration_ms"),
            created_at=to_iso(row["created_at"]),
            updated_at=to_iso(row["updated_at"]),
            completed_at=to_iso(row.get("completed_at")),
        )


@dataclass
class WebhookEventRecord:
    """Persisted inbound provider event."""
    event_id: str
    event_type: str
    status: WebhookStatus = WebhookStatus.PROCESSING
    attempts: int = 1
    error: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    processed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "processed_at": self.processed_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebhookEventRecord":
        return cls(
            event_id=row["event_id"],
            event_type=row["event_type"],
            status=WebhookStatus(row["status"]),
            attempts=int(row.get("attempts") or 1),
            error=row.get("error"),
            created_at=to_iso(row["created_at"]),
            updated_at=to_iso(row["updated_at"]),
            processed_at=to_iso(row.get("processed_at")),
        )


@dataclass
class SubscriptionRecord:
    """Persisted provider subscription state (one per user)."""
    user_id: str
    plan: str = "free"
    status: str = "active"
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "plan": self.plan,
            "status": self.status,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_price_id": self.stripe_price_id,
            "cancel_at_period_end": self.cancel_at_period_end,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionRecord":
        return cls(
            user_id=row["user_id"],
            plan=row.get("plan") or "free",
            status=row.get("status") or "active",
            stripe_customer_id=row.get("stripe_customer_id"),
            stripe_subscription_id=row.get("stripe_subscription_id"),
            stripe_price_id=row.get("stripe_price_id"),
            cancel_at_period_end=bool(row.get("cancel_at_period_end")),
            current_period_start=to_iso(row.get("current_period_start")),
            current_period_end=to_iso(row.get("current_period_end")),
            created_at=to_iso(row["created_at"]),
            updated_at=to_iso(row["updated_at"]),
        )

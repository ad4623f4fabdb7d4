"""
Typed Ledger Outcomes

A single result type for every balance mutation, so callers never need a
try/except to detect an ordinary business outcome.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .money import format_usd


class LedgerOutcome(Enum):
    """Outcome of a ledger mutation."""
    OK = "ok"
    INSUFFICIENT_CREDIT = "insufficient_credit"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class LedgerResult:
    """
    Result of deduct, refund, grant or adjustment.

    OK and ALREADY_PROCESSED both count as success: the ledger reflects the
    operation exactly once. balance_after is the snapshot written with the
    transaction row (for replays, the original snapshot).
    """
    outcome: LedgerOutcome
    balance_after: Optional[Decimal] = None
    current_balance: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome != LedgerOutcome.INSUFFICIENT_CREDIT

    @property
    def already_processed(self) -> bool:
        return self.outcome == LedgerOutcome.ALREADY_PROCESSED

    @classmethod
    def ok(cls, balance_after: Decimal, transaction_id: str) -> "LedgerResult":
        return cls(LedgerOutcome.OK, balance_after=balance_after, transaction_id=transaction_id)

    @classmethod
    def replayed(cls, balance_after: Decimal, transaction_id: str) -> "LedgerResult":
        return cls(
            LedgerOutcome.ALREADY_PROCESSED,
            balance_after=balance_after,
            transaction_id=transaction_id,
        )

    @classmethod
    def insufficient(cls, current_balance: Decimal, reason: str) -> "LedgerResult":
        return cls(
            LedgerOutcome.INSUFFICIENT_CREDIT,
            current_balance=current_balance,
            reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "success": self.success,
            "already_processed": self.already_processed,
            "balance_after": format_usd(self.balance_after) if self.balance_after is not None else None,
            "current_balance": format_usd(self.current_balance) if self.current_balance is not None else None,
            "transaction_id": self.transaction_id,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class BalanceCheck:
    """Read-only affordability check."""
    allowed: bool
    current_balance: Decimal
    cost: Decimal

    @property
    def remaining_after(self) -> Decimal:
        return self.current_balance - self.cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current_balance": format_usd(self.current_balance),
            "cost": format_usd(self.cost),
            "remaining_after": format_usd(self.remaining_after),
        }

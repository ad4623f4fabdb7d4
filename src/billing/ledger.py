"""
Credit Ledger

Owns balance semantics: check, atomic deduct, refund, grants and admin
adjustments. Every balance mutation in the service goes through this class.

Two update strategies are used:

- Deductions use a conditional UPDATE (``balance_micros >= cost``) in one
  round trip. Zero affected rows means the charge is rejected and nothing
  is written. No application lock is taken, so unrelated users never
  contend.
- Admin adjustments read the balance under a row lock (SELECT ... FOR UPDATE
  on PostgreSQL, BEGIN IMMEDIATE on SQLite), compare in Python, then write.
  This is correct only because of the lock and costs more under contention.

Idempotency keys (request_id) are enforced by the UNIQUE constraint on
credit_transactions.request_id. A pre-check handles the common replay; a
constraint violation during the insert handles the concurrent one and rolls
the balance change back with it. A key only replays for the user and entry
type that wrote it; keys under the refund: and grant: prefixes are derived
by the service and refused from callers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from core.errors import PersistenceConflict
from core.money import Amount, to_usd, usd_to_micros, micros_to_usd, format_usd
from core.results import BalanceCheck, LedgerResult
from persistence.database import Database, get_database
from persistence.models import (
    CreditBalanceRecord,
    CreditTransactionRecord,
    TransactionType,
    is_reserved_key,
    now_iso,
    refund_key,
    to_iso,
)
from persistence.repository import BalanceRepository, TransactionRepository

logger = structlog.get_logger()

RECENT_TRANSACTION_LIMIT = 20


@dataclass
class CreditSummary:
    """Balance plus this month's activity."""
    user_id: str
    balance: Decimal
    monthly_usage: Decimal
    monthly_granted: Decimal
    monthly_purchased: Decimal
    recent_transactions: List[CreditTransactionRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": format_usd(self.balance),
            "monthly_usage": format_usd(self.monthly_usage),
            "monthly_granted": format_usd(self.monthly_granted),
            "monthly_purchased": format_usd(self.monthly_purchased),
            "recent_transactions": [t.to_dict() for t in self.recent_transactions],
        }


def _positive(amount: Amount, what: str) -> Decimal:
    value = to_usd(amount)
    if value <= 0:
        raise ValueError(f"{what} must be positive, got {value}")
    return value


def _caller_key(request_id: str) -> str:
    if is_reserved_key(request_id):
        raise PersistenceConflict(f"Request id {request_id!r} uses a reserved prefix")
    return request_id


class CreditLedger:
    """
    Per-user USD credit ledger.

    All mutations return a LedgerResult; insufficient credit and replays
    are ordinary outcomes, not exceptions.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        balances: Optional[BalanceRepository] = None,
        transactions: Optional[TransactionRepository] = None,
    ):
        self.db = db or get_database()
        self.balances = balances or BalanceRepository(self.db)
        self.transactions = transactions or TransactionRepository(self.db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_or_create_balance(self, user_id: str) -> CreditBalanceRecord:
        """Get a user's balance row, creating it at zero on first access."""
        return self.balances.get_or_create(user_id)

    def check_balance(self, user_id: str, cost: Amount) -> BalanceCheck:
        """Read-only affordability check. Never creates or mutates rows."""
        amount = to_usd(cost)
        record = self.balances.get(user_id)
        current = record.balance_usd if record else micros_to_usd(0)
        return BalanceCheck(allowed=current >= amount, current_balance=current, cost=amount)

    def get_credit_summary(self, user_id: str) -> CreditSummary:
        """Balance, this month's net usage and credits, and recent entries."""
        balance = self.get_or_create_balance(user_id)
        month_start = datetime.now(timezone.utc).replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        totals = self.transactions.totals_since(user_id, to_iso(month_start))

        # Charges are negative and refunds positive, so net usage is their negated sum
        usage_micros = -(
            totals.get(TransactionType.API_USAGE, 0) + totals.get(TransactionType.REFUND, 0)
        )
        return CreditSummary(
            user_id=user_id,
            balance=balance.balance_usd,
            monthly_usage=micros_to_usd(max(usage_micros, 0)),
            monthly_granted=micros_to_usd(totals.get(TransactionType.PLAN_GRANT, 0)),
            monthly_purchased=micros_to_usd(totals.get(TransactionType.PURCHASE, 0)),
            recent_transactions=self.transactions.list_for_user(user_id, RECENT_TRANSACTION_LIMIT),
        )

    # ------------------------------------------------------------------
    # Deduction
    # ------------------------------------------------------------------

    def deduct_atomic(
        self,
        user_id: str,
        cost: Amount,
        request_id: str,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """
        Charge a user exactly once per request_id.

        Args:
            user_id: Owner of the balance
            cost: Positive USD amount
            request_id: Idempotency key of the logical attempt
            description: Free text stored on the ledger entry

        Returns:
            OK with the new balance, ALREADY_PROCESSED with the original
            snapshot, or INSUFFICIENT_CREDIT with the balance left untouched.

        Raises:
            PersistenceConflict: request_id is reserved, or already names an
                entry that is not this user's charge
        """
        amount = _positive(cost, "Deduction cost")
        micros = usd_to_micros(amount)
        request_id = _caller_key(request_id)

        existing = self.transactions.get_by_request_id(request_id)
        if existing is not None:
            return self._replayed(existing, user_id, TransactionType.API_USAGE)

        try:
            with self.db.transaction() as tx:
                applied = self.balances.apply_delta(tx, user_id, -micros, require_micros=micros)
                balance = self.balances.get(user_id, tx)
                if applied:
                    record = self.transactions.insert(tx, CreditTransactionRecord(
                        user_id=user_id,
                        type=TransactionType.API_USAGE,
                        amount_micros=-micros,
                        balance_after_micros=balance.balance_micros,
                        request_id=request_id,
                        description=description,
                    ))
        except PersistenceConflict:
            # A concurrent duplicate inserted first; our decrement rolled back
            return self._replayed_after_conflict(request_id, user_id, TransactionType.API_USAGE)

        if not applied:
            current = balance.balance_usd if balance else micros_to_usd(0)
            logger.warning(
                "insufficient_credit",
                user_id=user_id,
                request_id=request_id,
                balance=format_usd(current),
                cost=format_usd(amount),
            )
            return LedgerResult.insufficient(
                current_balance=current,
                reason=f"Balance {format_usd(current)} is below cost {format_usd(amount)}",
            )

        logger.info(
            "credit_deducted",
            user_id=user_id,
            request_id=request_id,
            amount=format_usd(amount),
            balance_after=format_usd(record.balance_after_usd),
        )
        return LedgerResult.ok(record.balance_after_usd, record.id)

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def refund(self, user_id: str, cost: Amount, request_id: str, reason: str) -> LedgerResult:
        """Compensate a charge. Keyed by the charged request_id, so repeats are no-ops."""
        return self._credit(
            user_id,
            _positive(cost, "Refund amount"),
            TransactionType.REFUND,
            request_id=refund_key(request_id),
            description=f"Refund: {reason}",
        )

    def grant_plan_credit(
        self,
        user_id: str,
        amount: Amount,
        plan_name: str,
        request_id: Optional[str] = None,
    ) -> LedgerResult:
        """Add a plan's included credit and stamp last_refreshed_at."""
        return self._credit(
            user_id,
            _positive(amount, "Plan grant"),
            TransactionType.PLAN_GRANT,
            request_id=request_id,
            description=f"{plan_name} plan monthly credit",
            refreshed=True,
        )

    def add_purchased_credit(
        self,
        user_id: str,
        amount: Amount,
        external_payment_id: str,
        package_name: str,
        request_id: Optional[str] = None,
    ) -> LedgerResult:
        """Add credit bought as a one-time package."""
        return self._credit(
            user_id,
            _positive(amount, "Purchase amount"),
            TransactionType.PURCHASE,
            request_id=request_id,
            description=f"Credit purchase: {package_name}",
            external_payment_id=external_payment_id,
        )

    def adjust_credit(
        self,
        user_id: str,
        amount: Amount,
        reason: str,
        request_id: Optional[str] = None,
    ) -> LedgerResult:
        """
        Apply a signed admin adjustment.

        Uses read-compare-write under a row lock. A negative adjustment that
        would take the balance below zero is rejected.
        """
        delta_usd = to_usd(amount)
        if delta_usd == 0:
            raise ValueError("Adjustment amount must be non-zero")
        delta = usd_to_micros(delta_usd)

        if request_id is not None:
            request_id = _caller_key(request_id)
            existing = self.transactions.get_by_request_id(request_id)
            if existing is not None:
                return self._replayed(existing, user_id, TransactionType.ADJUSTMENT)

        record = None
        try:
            with self.db.transaction() as tx:
                self.balances.ensure(user_id, tx)
                current = self.balances.lock(tx, user_id)
                new_balance = current.balance_micros + delta
                if new_balance >= 0:
                    self.balances.set_balance(tx, user_id, new_balance)
                    record = self.transactions.insert(tx, CreditTransactionRecord(
                        user_id=user_id,
                        type=TransactionType.ADJUSTMENT,
                        amount_micros=delta,
                        balance_after_micros=new_balance,
                        request_id=request_id,
                        description=f"Admin adjustment: {reason}",
                    ))
        except PersistenceConflict:
            if request_id is None:
                raise
            return self._replayed_after_conflict(request_id, user_id, TransactionType.ADJUSTMENT)

        if record is None:
            logger.warning(
                "adjustment_rejected",
                user_id=user_id,
                amount=format_usd(delta_usd),
                balance=format_usd(current.balance_usd),
            )
            return LedgerResult.insufficient(
                current_balance=current.balance_usd,
                reason="Adjustment would make the balance negative",
            )

        logger.info(
            "credit_adjusted",
            user_id=user_id,
            amount=format_usd(delta_usd),
            reason=reason,
            balance_after=format_usd(record.balance_after_usd),
        )
        return LedgerResult.ok(record.balance_after_usd, record.id)

    def link_operation_run(self, request_id: str, operation_run_id: str) -> bool:
        """Point the charge for request_id at the run it paid for."""
        return self.transactions.link_operation_run(request_id, operation_run_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _credit(
        self,
        user_id: str,
        amount: Decimal,
        entry_type: TransactionType,
        request_id: Optional[str] = None,
        description: Optional[str] = None,
        external_payment_id: Optional[str] = None,
        refreshed: bool = False,
    ) -> LedgerResult:
        """Unconditional increment and ledger entry in one transaction."""
        micros = usd_to_micros(amount)

        if request_id is not None:
            existing = self.transactions.get_by_request_id(request_id)
            if existing is not None:
                return self._replayed(existing, user_id, entry_type)

        try:
            with self.db.transaction() as tx:
                self.balances.ensure(user_id, tx)
                self.balances.apply_delta(
                    tx, user_id, micros, refreshed_at=now_iso() if refreshed else None
                )
                balance = self.balances.get(user_id, tx)
                record = self.transactions.insert(tx, CreditTransactionRecord(
                    user_id=user_id,
                    type=entry_type,
                    amount_micros=micros,
                    balance_after_micros=balance.balance_micros,
                    request_id=request_id,
                    description=description,
                    external_payment_id=external_payment_id,
                ))
        except PersistenceConflict:
            if request_id is None:
                raise
            return self._replayed_after_conflict(request_id, user_id, entry_type)

        logger.info(
            "credit_added",
            user_id=user_id,
            type=entry_type.value,
            amount=format_usd(amount),
            request_id=request_id,
            balance_after=format_usd(record.balance_after_usd),
        )
        return LedgerResult.ok(record.balance_after_usd, record.id)

    def _replayed(
        self,
        existing: CreditTransactionRecord,
        user_id: str,
        entry_type: TransactionType,
    ) -> LedgerResult:
        """Answer a repeated key, but only for the same user and entry type."""
        if existing.user_id != user_id or existing.type != entry_type:
            logger.warning(
                "ledger_key_conflict",
                request_id=existing.request_id,
                user_id=user_id,
                expected=entry_type.value,
                found=existing.type.value,
            )
            raise PersistenceConflict(
                f"Request id {existing.request_id!r} is already used by another ledger entry"
            )
        logger.info(
            "ledger_request_replayed",
            operation=entry_type.value,
            user_id=user_id,
            request_id=existing.request_id,
        )
        return LedgerResult.replayed(existing.balance_after_usd, existing.id)

    def _replayed_after_conflict(
        self,
        request_id: str,
        user_id: str,
        entry_type: TransactionType,
    ) -> LedgerResult:
        existing = self.transactions.get_by_request_id(request_id)
        if existing is None:
            raise PersistenceConflict(f"Conflict on {request_id} but no ledger entry found")
        logger.info("ledger_conflict_resolved", operation=entry_type.value, request_id=request_id)
        return self._replayed(existing, user_id, entry_type)

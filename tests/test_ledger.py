"""
Tests for the Credit Ledger

Covers the balance guarantees: no negative balance under concurrency,
idempotent deductions and refunds, grants and admin adjustments.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from core.errors import PersistenceConflict
from core.results import LedgerOutcome
from persistence.models import TransactionType


def _count_entries(db, request_id):
    rows = db.execute("SELECT COUNT(*) AS n FROM credit_transactions WHERE request_id = ?", (request_id,))
    return rows[0]["n"]


def _balance(ledger, user_id):
    return ledger.get_or_create_balance(user_id).balance_usd


class TestCheckBalance:
    """Test the read-only affordability check."""

    def test_allowed_when_covered(self, ledger, funded_user):
        """A cost equal to the balance is affordable."""
        check = ledger.check_balance(funded_user, "10.00")

        assert check.allowed is True
        assert check.remaining_after == Decimal("0")

    def test_unknown_user_has_zero_and_is_not_created(self, ledger):
        """Checking never creates a balance row."""
        check = ledger.check_balance("nobody", "0.01")

        assert check.allowed is False
        assert check.current_balance == Decimal("0")
        assert ledger.balances.get("nobody") is None


class TestDeductAtomic:
    """Test the conditional-update deduction."""

    def test_deduct_then_replay(self, ledger, funded_user, db):
        """Balance $10, deduct $3 twice under r1: charged once, same balance_after."""
        first = ledger.deduct_atomic(funded_user, "3.00", "r1")
        second = ledger.deduct_atomic(funded_user, "3.00", "r1")

        assert first.outcome == LedgerOutcome.OK
        assert first.balance_after == Decimal("7.00")
        assert second.success is True
        assert second.already_processed is True
        assert second.balance_after == Decimal("7.00")
        assert _balance(ledger, funded_user) == Decimal("7.00")
        assert _count_entries(db, "r1") == 1

    def test_insufficient_leaves_no_trace(self, ledger, db):
        """Balance $1, deduct $5: rejected, balance unchanged, no entry written."""
        ledger.add_purchased_credit("user-2", "1.00", "pi_small", "Tiny package")

        result = ledger.deduct_atomic("user-2", "5.00", "r2")

        assert result.outcome == LedgerOutcome.INSUFFICIENT_CREDIT
        assert result.success is False
        assert result.current_balance == Decimal("1.00")
        assert _balance(ledger, "user-2") == Decimal("1.00")
        assert _count_entries(db, "r2") == 0

    def test_user_without_balance_row(self, ledger):
        """A user who never had credit is rejected, not an error."""
        result = ledger.deduct_atomic("ghost", "0.01", "r-ghost")

        assert result.outcome == LedgerOutcome.INSUFFICIENT_CREDIT
        assert result.current_balance == Decimal("0")

    def test_non_positive_cost_rejected(self, ledger, funded_user):
        """Zero and negative costs are programming errors."""
        with pytest.raises(ValueError):
            ledger.deduct_atomic(funded_user, 0, "r-zero")
        with pytest.raises(ValueError):
            ledger.deduct_atomic(funded_user, "-1", "r-neg")

    def test_concurrent_deductions_never_overdraw(self, ledger):
        """20 concurrent $0.10 charges against $1.00: exactly 10 succeed, balance ends at 0."""
        ledger.add_purchased_credit("user-c", "1.00", "pi_c", "Package")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda i: ledger.deduct_atomic("user-c", "0.10", f"conc-{i}"),
                range(20),
            ))

        succeeded = [r for r in results if r.success]
        assert len(succeeded) == 10
        assert all(r.balance_after >= 0 for r in succeeded)
        assert _balance(ledger, "user-c") == Decimal("0")

    def test_concurrent_duplicates_charge_once(self, ledger, funded_user, db):
        """Racing retries of one request_id produce one entry and one decrement."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: ledger.deduct_atomic(funded_user, "1.00", "dup-1"),
                range(8),
            ))

        assert all(r.success for r in results)
        assert {r.balance_after for r in results} == {Decimal("9.00")}
        assert sum(1 for r in results if not r.already_processed) == 1
        assert _count_entries(db, "dup-1") == 1
        assert _balance(ledger, funded_user) == Decimal("9.00")


class TestRefund:
    """Test compensation of failed charges."""

    def test_refund_restores_once(self, ledger, db):
        """Balance $7, deduct $2, refund $2 twice: back to $7 exactly once."""
        ledger.add_purchased_credit("user-3", "7.00", "pi_7", "Package")
        ledger.deduct_atomic("user-3", "2.00", "r3")
        assert _balance(ledger, "user-3") == Decimal("5.00")

        first = ledger.refund("user-3", "2.00", "r3", "x")
        second = ledger.refund("user-3", "2.00", "r3", "x")

        assert first.outcome == LedgerOutcome.OK
        assert second.already_processed is True
        assert _balance(ledger, "user-3") == Decimal("7.00")
        assert _count_entries(db, "refund:r3") == 1

    def test_refund_entry_type(self, ledger, funded_user):
        """Refunds are logged as their own entry type under the derived key."""
        ledger.deduct_atomic(funded_user, "1.00", "r4")
        ledger.refund(funded_user, "1.00", "r4", "provider error")

        entry = ledger.transactions.get_by_request_id("refund:r4")
        assert entry.type == TransactionType.REFUND
        assert entry.amount_usd == Decimal("1.00")
        assert "provider error" in entry.description


class TestGrants:
    """Test plan grants and purchases."""

    def test_grant_then_deduct_round_trip(self, ledger):
        """Grant X then deduct X on a zero balance ends at zero."""
        ledger.grant_plan_credit("user-g", "50.00", "Pro")
        result = ledger.deduct_atomic("user-g", "50.00", "rg")

        assert result.success is True
        assert _balance(ledger, "user-g") == Decimal("0")

    def test_grant_stamps_refresh_time(self, ledger):
        """Plan grants record when credit was last refreshed."""
        ledger.grant_plan_credit("user-g", "16.67", "Starter")

        assert ledger.get_or_create_balance("user-g").last_refreshed_at is not None

    def test_grant_with_request_id_is_idempotent(self, ledger):
        """An explicit request_id backstops duplicate grants inline."""
        ledger.grant_plan_credit("user-g", "5.00", "Starter", request_id="grant-1")
        replay = ledger.grant_plan_credit("user-g", "5.00", "Starter", request_id="grant-1")

        assert replay.already_processed is True
        assert _balance(ledger, "user-g") == Decimal("5.00")

    def test_purchase_records_payment_id(self, ledger):
        """Purchased credit keeps the external payment id."""
        result = ledger.add_purchased_credit("user-p", "16.67", "pi_123", "25,000 credits")

        entry = ledger.transactions.list_for_user("user-p")[0]
        assert result.balance_after == Decimal("16.67")
        assert entry.type == TransactionType.PURCHASE
        assert entry.external_payment_id == "pi_123"


class TestAdjustCredit:
    """Test admin adjustments (locked read-compare-write)."""

    def test_positive_and_negative(self, ledger, funded_user):
        """Signed adjustments move the balance both ways."""
        ledger.adjust_credit(funded_user, "5.00", "goodwill")
        result = ledger.adjust_credit(funded_user, "-3.00", "correction")

        assert result.success is True
        assert result.balance_after == Decimal("12.00")

    def test_rejects_negative_result(self, ledger, funded_user):
        """An adjustment may not take the balance below zero."""
        result = ledger.adjust_credit(funded_user, "-20.00", "too much")

        assert result.outcome == LedgerOutcome.INSUFFICIENT_CREDIT
        assert _balance(ledger, funded_user) == Decimal("10.00")

    def test_zero_rejected(self, ledger, funded_user):
        """A zero adjustment is a programming error."""
        with pytest.raises(ValueError):
            ledger.adjust_credit(funded_user, 0, "noop")

    def test_request_id_replay(self, ledger, funded_user):
        """Replaying an adjustment key applies it once."""
        ledger.adjust_credit(funded_user, "1.00", "bonus", request_id="adj-1")
        replay = ledger.adjust_credit(funded_user, "1.00", "bonus", request_id="adj-1")

        assert replay.already_processed is True
        assert _balance(ledger, funded_user) == Decimal("11.00")


class TestCreditSummary:
    """Test the monthly summary."""

    def test_usage_nets_refunds(self, ledger, funded_user):
        """Usage counts charges minus refunds; purchases are reported separately."""
        ledger.deduct_atomic(funded_user, "3.00", "s1")
        ledger.refund(funded_user, "3.00", "s1", "failed")
        ledger.deduct_atomic(funded_user, "2.00", "s2")
        ledger.grant_plan_credit(funded_user, "50.00", "Pro")

        summary = ledger.get_credit_summary(funded_user)

        assert summary.balance == Decimal("58.00")
        assert summary.monthly_usage == Decimal("2.00")
        assert summary.monthly_purchased == Decimal("10.00")
        assert summary.monthly_granted == Decimal("50.00")
        assert len(summary.recent_transactions) == 5
        assert summary.to_dict()["balance"] == "58.000000"


class TestKeyOwnership:
    """A request_id replays only for the user and entry type that wrote it."""

    def test_refund_key_is_not_a_charge(self, ledger, funded_user):
        """A refunded request's derived key cannot pass for a paid charge."""
        ledger.deduct_atomic(funded_user, "2.00", "r5")
        ledger.refund(funded_user, "2.00", "r5", "failed")

        with pytest.raises(PersistenceConflict):
            ledger.deduct_atomic(funded_user, "2.00", "refund:r5")
        assert _balance(ledger, funded_user) == Decimal("10.00")

    def test_reserved_prefixes_rejected(self, ledger, funded_user, db):
        """Caller keys may not enter the refund or grant namespaces."""
        with pytest.raises(PersistenceConflict):
            ledger.deduct_atomic(funded_user, "1.00", "refund:fresh")
        with pytest.raises(PersistenceConflict):
            ledger.deduct_atomic(funded_user, "1.00", "grant:evt_1")
        with pytest.raises(PersistenceConflict):
            ledger.adjust_credit(funded_user, "1.00", "bonus", request_id="grant:evt_1")

        assert _count_entries(db, "refund:fresh") == 0
        assert _balance(ledger, funded_user) == Decimal("10.00")

    def test_other_users_charge_is_not_a_replay(self, ledger, funded_user):
        """One user's charge never stands in for another user's."""
        ledger.add_purchased_credit("user-2", "5.00", "pi_u2", "Package")
        ledger.deduct_atomic(funded_user, "1.00", "shared")

        with pytest.raises(PersistenceConflict):
            ledger.deduct_atomic("user-2", "1.00", "shared")
        assert _balance(ledger, "user-2") == Decimal("5.00")
        assert _balance(ledger, funded_user) == Decimal("9.00")

    def test_charge_key_is_not_an_adjustment(self, ledger, funded_user):
        """An adjustment reusing a charge's key is refused, not replayed."""
        ledger.deduct_atomic(funded_user, "1.00", "r6")

        with pytest.raises(PersistenceConflict):
            ledger.adjust_credit(funded_user, "5.00", "bonus", request_id="r6")
        assert _balance(ledger, funded_user) == Decimal("9.00")

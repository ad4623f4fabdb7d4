"""
Reconciliation Sweep

Compensates charges whose request died before reaching a terminal state.
Run it periodically (cron, `credit-rail reconcile`, or POST /admin/reconcile).

Two passes:
1. Stale runs: still processing after the grace period. Marked failed, then
   the charge recorded for their request_id is refunded.
2. Orphaned charges: api_usage entries with no run and no refund. A run is
   claimed for the request_id first so a concurrent retry cannot execute,
   then the charge is refunded and the run marked failed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import structlog

from billing.ledger import CreditLedger
from billing.runs import OperationRunStore, RunClaimState
from persistence.models import CreditTransactionRecord, OperationRunRecord, TransactionType, to_iso

logger = structlog.get_logger()


@dataclass
class ReconciliationConfig:
    """Sweep settings."""
    stale_after_minutes: float = 15.0  # Must exceed the executor timeout
    batch_size: int = 100


class ReconciliationSweeper:
    """Refunds charges left behind by crashed or abandoned requests."""

    def __init__(
        self,
        ledger: CreditLedger,
        runs: OperationRunStore,
        config: Optional[ReconciliationConfig] = None,
    ):
        self.ledger = ledger
        self.runs = runs
        self.transactions = ledger.transactions
        self.config = config or ReconciliationConfig()

    def sweep(self) -> Dict[str, Any]:
        """
        Run both passes once.

        Returns:
            Dict with checked, refunded, failed counts and per-item errors
        """
        results: Dict[str, Any] = {
            "checked": 0,
            "refunded": 0,
            "failed": 0,
            "errors": [],
        }
        grace = timedelta(minutes=self.config.stale_after_minutes)

        for run in self.runs.find_stale(grace, self.config.batch_size):
            results["checked"] += 1
            try:
                if self._settle_stale_run(run):
                    results["refunded"] += 1
            except Exception as e:
                results["failed"] += 1
                results["errors"].append(f"run {run.request_id}: {e}")
                logger.error("reconcile_run_failed", request_id=run.request_id, error=str(e))

        cutoff = to_iso(datetime.now(timezone.utc) - grace)
        for charge in self.transactions.find_orphaned_charges(cutoff, self.config.batch_size):
            results["checked"] += 1
            try:
                if self._settle_orphaned_charge(charge):
                    results["refunded"] += 1
            except Exception as e:
                results["failed"] += 1
                results["errors"].append(f"charge {charge.request_id}: {e}")
                logger.error("reconcile_charge_failed", request_id=charge.request_id, error=str(e))

        logger.info(
            "reconciliation_complete",
            checked=results["checked"],
            refunded=results["refunded"],
            failed=results["failed"],
        )
        return results

    def _settle_stale_run(self, run: OperationRunRecord) -> bool:
        # Losing this transition means the run finished on its own
        if not self.runs.mark_failed(run.request_id, "Operation abandoned: no result before reconciliation"):
            return False

        charge = self.transactions.get_by_request_id(run.request_id)
        if charge is None or charge.type != TransactionType.API_USAGE:
            logger.warning("stale_run_without_charge", request_id=run.request_id)
            return False

        self.ledger.refund(charge.user_id, -charge.amount_usd, run.request_id, reason="operation abandoned")
        logger.info("stale_run_refunded", request_id=run.request_id, user_id=run.user_id)
        return True

    def _settle_orphaned_charge(self, charge: CreditTransactionRecord) -> bool:
        claim = self.runs.create_or_get(
            charge.user_id,
            charge.request_id,
            operation_type="unknown",
            estimated_cost=-charge.amount_usd,
        )
        if claim.state != RunClaimState.NEW:
            # A live request owns this request_id now
            return False

        self.ledger.refund(charge.user_id, -charge.amount_usd, charge.request_id, reason="charge without operation")
        self.runs.mark_failed(charge.request_id, "Charged but never executed; refunded")
        logger.info("orphaned_charge_refunded", request_id=charge.request_id, user_id=charge.user_id)
        return True

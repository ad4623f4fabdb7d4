"""
Repository Layer for Credit Rail

Provides the store operations behind the ledger, the idempotency store,
the webhook gate and the durable rate limiter. Methods that take an
optional ``tx`` run inside the caller's transaction when one is given.
"""

from typing import Any, Dict, List, Optional
import json
import structlog

from .database import Database, Transaction, get_database
from .models import (
    CreditBalanceRecord,
    CreditTransactionRecord,
    OperationRunRecord,
    WebhookEventRecord,
    SubscriptionRecord,
    TransactionType,
    RunStatus,
    WebhookStatus,
    REFUND_KEY_PREFIX,
    now_iso,
)

logger = structlog.get_logger()


class BalanceRepository:
    """Repository for per-user credit balances."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def ensure(self, user_id: str, tx: Optional[Transaction] = None) -> None:
        """Create the balance row at zero if it does not exist yet."""
        now = now_iso()
        (tx or self.db).execute_rowcount(
            """INSERT INTO credit_balances (user_id, balance_micros, created_at, updated_at)
               VALUES (?, 0, ?, ?)
               ON CONFLICT (user_id) DO NOTHING""",
            (user_id, now, now)
        )

    def get(self, user_id: str, tx: Optional[Transaction] = None) -> Optional[CreditBalanceRecord]:
        """Get a balance row."""
        results = (tx or self.db).execute(
            "SELECT * FROM credit_balances WHERE user_id = ?",
            (user_id,)
        )
        return CreditBalanceRecord.from_row(results[0]) if results else None

    def get_or_create(self, user_id: str) -> CreditBalanceRecord:
        """Upsert-on-read."""
        self.ensure(user_id)
        return self.get(user_id)

    def lock(self, tx: Transaction, user_id: str) -> Optional[CreditBalanceRecord]:
        """Read a balance row under a row lock for read-compare-write updates."""
        query = "SELECT * FROM credit_balances WHERE user_id = ?"
        if tx.is_postgres:
            query += " FOR UPDATE"
        results = tx.execute(query, (user_id,))
        return CreditBalanceRecord.from_row(results[0]) if results else None

    def apply_delta(
        self,
        tx: Transaction,
        user_id: str,
        delta_micros: int,
        require_micros: Optional[int] = None,
        refreshed_at: Optional[str] = None,
    ) -> bool:
        """
        Conditional update: add delta_micros to the balance.

        With require_micros set, the update only applies while the balance is
        at least that amount. Returns False when no row was affected.
        """
        sets = ["balance_micros = balance_micros + ?", "updated_at = ?"]
        params: List[Any] = [delta_micros, now_iso()]
        if refreshed_at is not None:
            sets.append("last_refreshed_at = ?")
            params.append(refreshed_at)

        query = f"UPDATE credit_balances SET {', '.join(sets)} WHERE user_id = ?"
        params.append(user_id)
        if require_micros is not None:
            query += " AND balance_micros >= ?"
            params.append(require_micros)

        return tx.execute_rowcount(query, tuple(params)) == 1

    def set_balance(self, tx: Transaction, user_id: str, balance_micros: int) -> None:
        """Overwrite a balance inside a locked transaction."""
        tx.execute_rowcount(
            "UPDATE credit_balances SET balance_micros = ?, updated_at = ? WHERE user_id = ?",
            (balance_micros, now_iso(), user_id)
        )


class TransactionRepository:
    """Repository for the append-only credit transaction log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert(self, tx: Transaction, record: CreditTransactionRecord) -> CreditTransactionRecord:
        """Append a ledger entry. Raises PersistenceConflict on a reused request_id."""
        tx.execute_rowcount(
            """INSERT INTO credit_transactions
               (id, user_id, type, amount_micros, balance_after_micros, request_id,
                description, external_payment_id, operation_run_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get_by_request_id(
        self,
        request_id: str,
        tx: Optional[Transaction] = None,
    ) -> Optional[CreditTransactionRecord]:
        """Look up the entry recorded under an idempotency key."""
        results = (tx or self.db).execute(
            "SELECT * FROM credit_transactions WHERE request_id = ?",
            (request_id,)
        )
        return CreditTransactionRecord.from_row(results[0]) if results else None

    def link_operation_run(self, request_id: str, operation_run_id: str) -> bool:
        """Attach an operation run to the entry charged for it."""
        return self.db.execute_rowcount(
            """UPDATE credit_transactions SET operation_run_id = ?
               WHERE request_id = ? AND operation_run_id IS NULL""",
            (operation_run_id, request_id)
        ) == 1

    def list_for_user(self, user_id: str, limit: int = 20) -> List[CreditTransactionRecord]:
        """Most recent entries first."""
        results = self.db.execute(
            "SELECT * FROM credit_transactions WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit)
        )
        return [CreditTransactionRecord.from_row(r) for r in results]

    def totals_since(self, user_id: str, since: str) -> Dict[TransactionType, int]:
        """Signed micro-USD totals per entry type since a timestamp."""
        results = self.db.execute(
            """SELECT type, SUM(amount_micros) AS total FROM credit_transactions
               WHERE user_id = ? AND created_at >= ?
               GROUP BY type""",
            (user_id, since)
        )
        return {TransactionType(r["type"]): int(r["total"] or 0) for r in results}

    def find_orphaned_charges(self, before: str, limit: int = 100) -> List[CreditTransactionRecord]:
        """
        Charges with neither an operation run nor a refund.

        These are deductions whose request died before the run was created.
        """
        results = self.db.execute(
            """SELECT * FROM credit_transactions t
               WHERE t.type = ? AND t.created_at < ? AND t.request_id IS NOT NULL
                 AND NOT EXISTS (SELECT 1 FROM operation_runs o WHERE o.request_id = t.request_id)
                 AND NOT EXISTS (SELECT 1 FROM credit_transactions r WHERE r.request_id = ? || t.request_id)
               ORDER BY t.created_at
               LIMIT ?""",
            (TransactionType.API_USAGE.value, before, REFUND_KEY_PREFIX, limit)
        )
        return [CreditTransactionRecord.from_row(r) for r in results]


class OperationRunRepository:
    """Repository for operation runs (the idempotency records)."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert(self, record: OperationRunRecord) -> OperationRunRecord:
        """Create a run. Raises PersistenceConflict if the request_id exists."""
        self.db.execute_rowcount(
            """INSERT INTO operation_runs
               (id, request_id, user_id, operation_type, estimated_cost_micros, status,
                input_params, output_result, error_message, duration_ms,
                created_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get_by_request_id(self, request_id: str) -> Optional[OperationRunRecord]:
        """Get a run by its idempotency key."""
        results = self.db.execute(
            "SELECT * FROM operation_runs WHERE request_id = ?",
            (request_id,)
        )
        return OperationRunRecord.from_row(results[0]) if results else None

    def finish(
        self,
        request_id: str,
        status: RunStatus,
        output_result: Optional[Any] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        """Move a processing run to a terminal state. False if it was not processing."""
        now = now_iso()
        return self.db.execute_rowcount(
            """UPDATE operation_runs
               SET status = ?, output_result = ?, error_message = ?, duration_ms = ?,
                   updated_at = ?, completed_at = ?
               WHERE request_id = ? AND status = ?""",
            (
                status.value,
                json.dumps(output_result, default=str) if output_result is not None else None,
                error_message,
                duration_ms,
                now,
                now,
                request_id,
                RunStatus.PROCESSING.value,
            )
        ) == 1

    def find_stale(self, before: str, limit: int = 100) -> List[OperationRunRecord]:
        """Processing runs created before a cutoff."""
        results = self.db.execute(
            """SELECT * FROM operation_runs
               WHERE status = ? AND created_at < ?
               ORDER BY created_at
               LIMIT ?""",
            (RunStatus.PROCESSING.value, before, limit)
        )
        return [OperationRunRecord.from_row(r) for r in results]


class WebhookEventRepository:
    """Repository for inbound webhook events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        results = self.db.execute(
            "SELECT * FROM webhook_events WHERE event_id = ?",
            (event_id,)
        )
        return WebhookEventRecord.from_row(results[0]) if results else None

    def insert(self, record: WebhookEventRecord) -> WebhookEventRecord:
        """Record a new event. Raises PersistenceConflict on a concurrent delivery."""
        self.db.execute_rowcount(
            """INSERT INTO webhook_events
               (event_id, event_type, status, attempts, error, created_at, updated_at, processed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.event_id,
                record.event_type,
                record.status.value,
                record.attempts,
                record.error,
                record.created_at,
                record.updated_at,
                record.processed_at,
            )
        )
        return record

    def reclaim_failed(self, event_id: str) -> bool:
        """Move a failed event back to processing for a retry."""
        return self.db.execute_rowcount(
            """UPDATE webhook_events
               SET status = ?, attempts = attempts + 1, error = NULL, updated_at = ?
               WHERE event_id = ? AND status = ?""",
            (WebhookStatus.PROCESSING.value, now_iso(), event_id, WebhookStatus.FAILED.value)
        ) == 1

    def finish(self, event_id: str, status: WebhookStatus, error: Optional[str] = None) -> bool:
        """Leave processing for completed or failed. False if it was not processing."""
        now = now_iso()
        return self.db.execute_rowcount(
            """UPDATE webhook_events
               SET status = ?, error = ?, updated_at = ?, processed_at = ?
               WHERE event_id = ? AND status = ?""",
            (status.value, error, now, now, event_id, WebhookStatus.PROCESSING.value)
        ) == 1

    def delete_completed_before(self, before: str) -> int:
        """Retention cleanup for completed events."""
        return self.db.execute_rowcount(
            "DELETE FROM webhook_events WHERE status = ? AND updated_at < ?",
            (WebhookStatus.COMPLETED.value, before)
        )


class RateLimitRepository:
    """Repository for durable rate limit buckets."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def increment(self, bucket_key: str, expires_at: float) -> int:
        """Count one hit in a bucket and return the bucket's total."""
        with self.db.transaction() as tx:
            tx.execute_rowcount(
                """INSERT INTO rate_limit_counters (bucket_key, hits, expires_at)
                   VALUES (?, 1, ?)
                   ON CONFLICT (bucket_key) DO UPDATE SET hits = rate_limit_counters.hits + 1""",
                (bucket_key, expires_at)
            )
            results = tx.execute(
                "SELECT hits FROM rate_limit_counters WHERE bucket_key = ?",
                (bucket_key,)
            )
        return int(results[0]["hits"]) if results else 1

    def purge_expired(self, now: float) -> int:
        return self.db.execute_rowcount(
            "DELETE FROM rate_limit_counters WHERE expires_at < ?",
            (now,)
        )


class SubscriptionRepository:
    """Repository for subscription state."""

    FIELDS = (
        "stripe_customer_id",
        "stripe_subscription_id",
        "stripe_price_id",
        "plan",
        "status",
        "cancel_at_period_end",
        "current_period_start",
        "current_period_end",
    )

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        results = self.db.execute(
            "SELECT * FROM subscriptions WHERE user_id = ?",
            (user_id,)
        )
        return SubscriptionRecord.from_row(results[0]) if results else None

    def get_by_stripe_subscription_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        results = self.db.execute(
            "SELECT * FROM subscriptions WHERE stripe_subscription_id = ?",
            (subscription_id,)
        )
        return SubscriptionRecord.from_row(results[0]) if results else None

    def upsert(self, user_id: str, **fields: Any) -> SubscriptionRecord:
        """Create or update a user's subscription with the given fields."""
        unknown = set(fields) - set(self.FIELDS)
        if unknown:
            raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")

        now = now_iso()
        columns = list(fields)
        values = [fields[c] for c in columns]
        insert_columns = ["user_id"] + columns + ["created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in insert_columns)
        updates = [f"{c} = excluded.{c}" for c in columns] + ["updated_at = excluded.updated_at"]

        self.db.execute_rowcount(
            f"""INSERT INTO subscriptions ({', '.join(insert_columns)})
                VALUES ({placeholders})
                ON CONFLICT (user_id) DO UPDATE SET {', '.join(updates)}""",
            tuple([user_id] + values + [now, now])
        )
        logger.info("subscription_upserted", user_id=user_id, fields=columns)
        return self.get(user_id)

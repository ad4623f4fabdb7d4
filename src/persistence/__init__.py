"""
Persistence Layer for Credit Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

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
    refund_key,
    grant_key,
)
from .repository import (
    BalanceRepository,
    TransactionRepository,
    OperationRunRepository,
    WebhookEventRepository,
    RateLimitRepository,
    SubscriptionRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "CreditBalanceRecord",
    "CreditTransactionRecord",
    "OperationRunRecord",
    "WebhookEventRecord",
    "SubscriptionRecord",
    "TransactionType",
    "RunStatus",
    "WebhookStatus",
    "refund_key",
    "grant_key",
    "BalanceRepository",
    "TransactionRepository",
    "OperationRunRepository",
    "WebhookEventRepository",
    "RateLimitRepository",
    "SubscriptionRepository",
]

"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.

The ledger relies on exactly three store capabilities:
- a conditional numeric update (UPDATE ... WHERE balance_micros >= ?) that
  reports the affected row count,
- UNIQUE constraints on dedup keys (request_id, event_id), surfaced as
  PersistenceConflict,
- grouped multi-write transactions (Database.transaction).
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from core.errors import PersistenceConflict

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- One balance row per user, created lazily
CREATE TABLE IF NOT EXISTS credit_balances (
    user_id TEXT PRIMARY KEY,
    balance_micros INTEGER NOT NULL DEFAULT 0 CHECK (balance_micros >= 0),
    last_refreshed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    balance_after_micros INTEGER NOT NULL,
    request_id TEXT UNIQUE,
    description TEXT,
    external_payment_id TEXT,
    operation_run_id TEXT,
    created_at TEXT NOT NULL
);

-- One row per logical attempt at a paid operation
CREATE TABLE IF NOT EXISTS operation_runs (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    estimated_cost_micros INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'processing',
    input_params TEXT,  -- JSON object
    output_result TEXT,  -- JSON value
    error_message TEXT,
    duration_ms INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

-- Inbound provider events
CREATE TABLE IF NOT EXISTS webhook_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 1,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processed_at TEXT
);

-- Durable fixed-window rate limit buckets
CREATE TABLE IF NOT EXISTS rate_limit_counters (
    bucket_key TEXT PRIMARY KEY,
    hits INTEGER NOT NULL DEFAULT 0,
    expires_at REAL NOT NULL
);

-- Provider subscription state
CREATE TABLE IF NOT EXISTS subscriptions (
    user_id TEXT PRIMARY KEY,
    stripe_customer_id TEXT,
    stripe_subscription_id TEXT,
    stripe_price_id TEXT,
    plan TEXT NOT NULL DEFAULT 'free',
    status TEXT NOT NULL DEFAULT 'active',
    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
    current_period_start TEXT,
    current_period_end TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_transactions_user ON credit_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_transactions_type ON credit_transactions(type, created_at);
CREATE INDEX IF NOT EXISTS idx_runs_status ON operation_runs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_runs_user ON operation_runs(user_id);
CREATE INDEX IF NOT EXISTS idx_webhook_status ON webhook_events(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_rate_limit_expires ON rate_limit_counters(expires_at);
CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe ON subscriptions(stripe_subscription_id);
"""

POSTGRES_SCHEMA_SQL = """
-- Balances
CREATE TABLE IF NOT EXISTS credit_balances (
    user_id TEXT PRIMARY KEY,
    balance_micros BIGINT NOT NULL DEFAULT 0 CHECK (balance_micros >= 0),
    last_refreshed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount_micros BIGINT NOT NULL,
    balance_after_micros BIGINT NOT NULL,
    request_id TEXT UNIQUE,
    description TEXT,
    external_payment_id TEXT,
    operation_run_id TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Operation runs
CREATE TABLE IF NOT EXISTS operation_runs (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    estimated_cost_micros BIGINT NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'processing',
    input_params TEXT,
    output_result TEXT,
    error_message TEXT,
    duration_ms INTEGER,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);

-- Webhook events
CREATE TABLE IF NOT EXISTS webhook_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 1,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    processed_at TIMESTAMPTZ
);

-- Rate limit buckets
CREATE TABLE IF NOT EXISTS rate_limit_counters (
    bucket_key TEXT PRIMARY KEY,
    hits INTEGER NOT NULL DEFAULT 0,
    expires_at DOUBLE PRECISION NOT NULL
);

-- Subscriptions
CREATE TABLE IF NOT EXISTS subscriptions (
    user_id TEXT PRIMARY KEY,
    stripe_customer_id TEXT,
    stripe_subscription_id TEXT,
    stripe_price_id TEXT,
    plan TEXT NOT NULL DEFAULT 'free',
    status TEXT NOT NULL DEFAULT 'active',
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    current_period_start TIMESTAMPTZ,
    current_period_end TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_transactions_user ON credit_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_transactions_type ON credit_transactions(type, created_at);
CREATE INDEX IF NOT EXISTS idx_runs_status ON operation_runs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_runs_user ON operation_runs(user_id);
CREATE INDEX IF NOT EXISTS idx_webhook_status ON webhook_events(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_rate_limit_expires ON rate_limit_counters(expires_at);
CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe ON subscriptions(stripe_subscription_id);
"""

# PostgreSQL SQLSTATE for unique_violation
PG_UNIQUE_VIOLATION = "23505"


def _is_unique_violation(exc: Exception) -> bool:
    """True when a driver error is a UNIQUE/PRIMARY KEY violation."""
    if isinstance(exc, sqlite3.IntegrityError):
        message = str(exc)
        return "UNIQUE constraint failed" in message or "PRIMARY KEY" in message
    return getattr(exc, "pgcode", None) == PG_UNIQUE_VIOLATION


class Transaction:
    """
    Statement runner bound to one open connection.

    Every statement issued through the same Transaction commits or rolls
    back together when the enclosing Database.transaction() block exits.
    """

    def __init__(self, db: "Database", conn: Any):
        self.db = db
        self.conn = conn

    @property
    def is_postgres(self) -> bool:
        return self.db.is_postgres

    def _cursor(self, query: str, params: tuple) -> Any:
        query = self.db.adapt_query(query)
        try:
            if self.db.is_postgres:
                cursor = self.conn.cursor()
                cursor.execute(query, params)
                return cursor
            return self.conn.execute(query, params)
        except Exception as e:
            if _is_unique_violation(e):
                raise PersistenceConflict(str(e)) from e
            raise

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a statement and return rows as dicts."""
        cursor = self._cursor(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        return self._cursor(query, params).rowcount


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute_rowcount("UPDATE credit_balances SET ...", (...))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///credit_rail.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "credit_rail.db"

    def adapt_query(self, query: str) -> str:
        """Translate qmark placeholders for psycopg2."""
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection (one per unit of work)."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Open a write transaction.

        On SQLite the write lock is taken up front (BEGIN IMMEDIATE) so that
        reads inside the block cannot go stale before the first write. On
        PostgreSQL callers lock rows explicitly with SELECT ... FOR UPDATE.
        """
        with self.connection() as conn:
            if not self.is_postgres:
                conn.execute("BEGIN IMMEDIATE")
            yield Transaction(self, conn)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                else:
                    conn.executescript(schema)

                # Record schema version
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement in its own unit of work and return rows."""
        with self.connection() as conn:
            return Transaction(self, conn).execute(query, params)

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a single write in its own unit of work and return affected rows."""
        with self.connection() as conn:
            return Transaction(self, conn).execute_rowcount(query, params)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db

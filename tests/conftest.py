"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ.pop("STRIPE_API_KEY", None)

from billing.ledger import CreditLedger  # noqa: E402
from billing.runs import OperationRunStore  # noqa: E402
from persistence.database import Database  # noqa: E402


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    """File-backed SQLite URL. Threads get their own connection, so :memory: won't do."""
    url = f"sqlite:///{tmp_path / 'credit_rail_test.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


@pytest.fixture
def db(db_url):
    """Initialized temporary database."""
    database = Database(db_url)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def runs(db):
    return OperationRunStore(db)


@pytest.fixture
def funded_user(ledger):
    """A user holding $10.00 of purchased credit."""
    ledger.add_purchased_credit("user-1", "10.00", "pi_seed", "Seed package")
    return "user-1"

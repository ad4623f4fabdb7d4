"""
CREDIT RAIL - API Module

Production FastAPI server implementing:
- Paid operation gating (charge before run, refund on failure)
- Credit balances and admin adjustments
- Stripe webhook processing
- Reconciliation of abandoned charges
"""

from .server import app, create_app, AppState

__all__ = ["app", "create_app", "AppState"]

"""
Credit Rail CLI

Commands:
  serve             - Run the billing gate server
  balance           - Show a user's balance and monthly activity
  adjust            - Apply an admin credit adjustment
  reconcile         - Refund abandoned runs and orphaned charges
  cleanup-webhooks  - Delete old completed webhook events
"""

import argparse
import sys
from decimal import Decimal, InvalidOperation

from core.config import Settings
from core.errors import PersistenceConflict
from core.money import format_usd


def _database(settings: Settings):
    from persistence.database import Database

    db = Database(settings.database_url)
    db.initialize()
    return db


def cmd_serve(args):
    """Run the billing gate server."""
    import uvicorn

    port = args.port or Settings.from_env().port
    host = args.host or "0.0.0.0"

    print(f"Starting Credit Rail on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_balance(args):
    """Show a user's balance and monthly activity."""
    from billing.ledger import CreditLedger

    ledger = CreditLedger(_database(Settings.from_env()))
    summary = ledger.get_credit_summary(args.user_id)

    print(f"Credit summary for {summary.user_id}")
    print("=" * 40)
    print(f"Balance:           ${format_usd(summary.balance)}")
    print(f"Usage this month:  ${format_usd(summary.monthly_usage)}")
    print(f"Granted this month: ${format_usd(summary.monthly_granted)}")
    print(f"Purchased this month: ${format_usd(summary.monthly_purchased)}")
    if summary.recent_transactions:
        print("Recent transactions:")
        for entry in summary.recent_transactions:
            print(f"  {entry.created_at[:19]}  {entry.type.value:<12} {format_usd(entry.amount_usd):>14}  {entry.description or ''}")


def cmd_adjust(args):
    """Apply an admin credit adjustment."""
    from billing.ledger import CreditLedger

    try:
        amount = Decimal(args.amount)
    except InvalidOperation:
        print(f"Error: invalid amount {args.amount!r}")
        sys.exit(1)

    ledger = CreditLedger(_database(Settings.from_env()))
    try:
        result = ledger.adjust_credit(args.user_id, amount, args.reason, args.request_id)
    except (ValueError, PersistenceConflict) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not result.success:
        print(f"Rejected: {result.reason} (balance ${format_usd(result.current_balance)})")
        sys.exit(1)

    suffix = " (already applied)" if result.already_processed else ""
    print(f"Adjusted {args.user_id} by ${format_usd(amount)}{suffix}")
    print(f"  Balance after: ${format_usd(result.balance_after)}")


def cmd_reconcile(args):
    """Refund abandoned runs and orphaned charges."""
    from billing.ledger import CreditLedger
    from billing.runs import OperationRunStore
    from enforcement.reconciliation import ReconciliationConfig, ReconciliationSweeper

    settings = Settings.from_env()
    grace = args.older_than or settings.reconcile_after_minutes
    if grace * 60 <= settings.operation_timeout_seconds:
        print(f"Error: --older-than must exceed the operation timeout ({settings.operation_timeout_seconds:g}s)")
        sys.exit(1)

    db = _database(settings)
    sweeper = ReconciliationSweeper(
        ledger=CreditLedger(db),
        runs=OperationRunStore(db),
        config=ReconciliationConfig(stale_after_minutes=grace),
    )
    results = sweeper.sweep()

    print(f"Checked: {results['checked']}")
    print(f"Refunded: {results['refunded']}")
    print(f"Failed: {results['failed']}")
    for error in results["errors"]:
        print(f"  {error}")
    if results["failed"]:
        sys.exit(1)


def cmd_cleanup_webhooks(args):
    """Delete completed webhook events older than --days."""
    from billing.webhook_gate import WebhookEventGate

    gate = WebhookEventGate(_database(Settings.from_env()))
    deleted = gate.cleanup(older_than_days=args.days)
    print(f"Deleted {deleted} completed webhook events older than {args.days} days")


def main():
    parser = argparse.ArgumentParser(
        description="Credit Rail - Metered Billing Gate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show credit summary")
    balance_parser.add_argument("user_id", help="User to inspect")

    # adjust
    adjust_parser = subparsers.add_parser("adjust", help="Admin credit adjustment")
    adjust_parser.add_argument("user_id", help="User to adjust")
    adjust_parser.add_argument("amount", help="Signed USD amount, e.g. 10 or -2.50")
    adjust_parser.add_argument("--reason", required=True, help="Reason recorded on the ledger entry")
    adjust_parser.add_argument("--request-id", dest="request_id", help="Idempotency key")

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Run the reconciliation sweep once")
    reconcile_parser.add_argument("--older-than", dest="older_than", type=float, help="Grace period in minutes")

    # cleanup-webhooks
    cleanup_parser = subparsers.add_parser("cleanup-webhooks", help="Delete old completed webhook events")
    cleanup_parser.add_argument("--days", type=int, default=30, help="Retention in days")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "balance":
        cmd_balance(args)
    elif args.command == "adjust":
        cmd_adjust(args)
    elif args.command == "reconcile":
        cmd_reconcile(args)
    elif args.command == "cleanup-webhooks":
        cmd_cleanup_webhooks(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

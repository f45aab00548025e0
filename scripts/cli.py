"""Minimal CLI entry point for running and inspecting supply order syncs."""

from __future__ import annotations

import argparse
import logging
import sys

from supply_sync.config.settings import SupplySyncSettings
from supply_sync.core.models import SyncResult
from supply_sync.pipeline.sync import SyncOrchestrator
from supply_sync.storage.audit import EmailRecordStore
from supply_sync.storage.ledger import OrderLedger


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def print_result(result: SyncResult) -> None:
    """Print a sync pass summary to stdout."""
    print(
        f"\n[{result.user_id}] found={result.total_found} "
        f"processed={result.processed} "
        f"unparsed={len(result.unparsed)} "
        f"failed={result.failed}"
        + (" (cancelled)" if result.cancelled else "")
    )
    for item in result.results:
        print(
            f"  {item.action:8s} {item.supplier or '-':10s} {item.status or '-':9s} "
            f"order={item.order_id} {item.reason}"
        )
    for email in result.unparsed:
        print(f"  unparsed {email.message_id} {email.sender} | {email.subject}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Supply Sync - Reconcile supply order emails into an order ledger"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run a sync pass for one or more users")
    sync_parser.add_argument(
        "--user", "-u", action="append", dest="users", required=True,
        help="User id (repeat for several users)",
    )
    sync_parser.add_argument("--query", "-q", help="Override the Gmail search query")
    sync_parser.add_argument(
        "--max-results", type=int, default=None, dest="max_results",
        help="Cap emails fetched per user",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show email record counts by status")
    status_parser.add_argument("--user", "-u", help="Restrict to one user")

    # orders command
    orders_parser = subparsers.add_parser("orders", help="List a user's orders")
    orders_parser.add_argument("--user", "-u", required=True, help="User id")

    # errors command
    errors_parser = subparsers.add_parser("errors", help="Show recent sync errors")
    errors_parser.add_argument("--user", "-u", required=True, help="User id")
    errors_parser.add_argument(
        "--days", type=int, default=7, help="Window for the error statistics"
    )
    errors_parser.add_argument("--limit", type=int, default=20, help="Max errors to list")
    errors_parser.add_argument(
        "--clear-older-than", type=int, default=None, dest="clear_older_than",
        help="Delete errors older than N days before listing",
    )

    # add-product command
    product_parser = subparsers.add_parser("add-product", help="Add a catalog product")
    product_parser.add_argument("name", help="Product name, e.g. 'Dexcom G7 Sensor'")
    product_parser.add_argument("category", nargs="?", default="", help="Product category")

    return parser


def _validate_args(args: argparse.Namespace) -> None:
    """Reject non-positive numeric options."""
    if getattr(args, "max_results", None) is not None and args.max_results <= 0:
        print("Error: --max-results must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "days", 1) <= 0:
        print("Error: --days must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "limit", 1) <= 0:
        print("Error: --limit must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "clear_older_than", None) is not None and args.clear_older_than < 1:
        print("Error: --clear-older-than must be at least 1", file=sys.stderr)
        sys.exit(1)


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    _validate_args(args)

    overrides = {}
    if getattr(args, "query", None):
        overrides["search_query"] = args.query
    if getattr(args, "max_results", None):
        overrides["max_results"] = args.max_results
    settings = SupplySyncSettings(**overrides)
    setup_logging(settings.log_level)
    settings.ensure_directories()

    ledger = OrderLedger(settings.database_path, timeout=settings.ledger_timeout_seconds)
    records = EmailRecordStore(settings.database_path, timeout=settings.ledger_timeout_seconds)
    ledger.connect()
    records.connect()
    orchestrator = SyncOrchestrator(settings=settings, ledger=ledger, records=records)

    try:
        if args.command == "sync":
            if len(args.users) == 1:
                print_result(orchestrator.sync_user(args.users[0]))
            else:
                outcome = orchestrator.sync_users(args.users)
                for result in outcome.results.values():
                    print_result(result)
                for user_id, error in outcome.errors.items():
                    print(f"\n[{user_id}] Error: {error}", file=sys.stderr)
                if outcome.errors:
                    sys.exit(1)

        elif args.command == "status":
            counts = orchestrator.get_status(args.user)
            print("\nEmail records by status:")
            for status, count in sorted(counts.items()):
                print(f"  {status}: {count}")

        elif args.command == "orders":
            orders = ledger.list_orders(args.user)
            print(f"\nFound {len(orders)} orders:\n")
            for order in orders:
                print(
                    f"  #{order.id:<5d} {order.order_date} {order.supplier:10s} "
                    f"{order.status:9s} qty={order.quantity} "
                    f"number={order.order_number or '-'} tracking={order.tracking_number or '-'}"
                )

        elif args.command == "errors":
            if args.clear_older_than is not None:
                removed = records.clear_old_errors(args.user, args.clear_older_than)
                print(f"\nRemoved {removed} old errors")
            stats = records.error_stats(args.user, args.days)
            print(f"\n{stats['total']} errors in the last {args.days} days")
            for category, count in sorted(stats["by_category"].items()):
                print(f"  {category}: {count}")
            print()
            for error in records.recent_errors(args.user, args.limit):
                print(
                    f"  {error['created_at']} [{error['severity']}] "
                    f"{error['category']}: {error['message']}"
                )

        elif args.command == "add-product":
            product_id = ledger.add_product(args.name, args.category)
            print(f"\nProduct {args.name!r} has id {product_id}")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        orchestrator.close()
        records.close()
        ledger.close()


if __name__ == "__main__":
    main()

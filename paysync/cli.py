"""Operational commands for the billing reconciliation engine.

Usage::

    python -m paysync.cli retry --limit 20
    python -m paysync.cli clean-pending --hours 24 --dry-run
    python -m paysync.cli redrive-stuck --minutes 30 --limit 50
    python -m paysync.cli sync-invoice in_123
    python -m paysync.cli stats
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional, Sequence

import psycopg2
from dotenv import load_dotenv

from paysync import app_context
from paysync.app.billing import BillingSyncError
from paysync.app.services.billing import get_billing_sync_service, get_reconciliation_config
from paysync.config import load_database_config

logger = logging.getLogger("paysync.cli")


def _configure_database() -> None:
    if app_context.is_configured():
        return
    db_cfg = load_database_config()
    app_context.configure(get_conn=lambda: psycopg2.connect(**db_cfg))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="paysync", description="Billing reconciliation operations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    retry = subparsers.add_parser("retry", help="Retry webhook events that ended in error")
    retry.add_argument("--limit", type=int, default=None)
    retry.add_argument("--max-attempts", type=int, default=None)

    clean = subparsers.add_parser("clean-pending", help="Cancel subscriptions stuck in pending")
    clean.add_argument("--hours", type=float, default=None)
    clean.add_argument("--dry-run", action="store_true", help="List stale subscriptions without changing them")

    redrive = subparsers.add_parser("redrive-stuck", help="Re-run events stuck in processing")
    redrive.add_argument("--minutes", type=int, default=None)
    redrive.add_argument("--limit", type=int, default=None)

    sync = subparsers.add_parser("sync-invoice", help="Refresh an invoice from the provider")
    sync.add_argument("invoice_ref")

    subparsers.add_parser("stats", help="Show webhook log counts by status")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _configure_database()

    config = get_reconciliation_config()
    service = get_billing_sync_service()

    try:
        if args.command == "retry":
            limit = args.limit or config.retry_batch_limit
            max_attempts = args.max_attempts or config.retry_max_attempts
            processed = service.retry_errors(limit, max_attempts=max_attempts)
            print(f"Retried {processed} event(s)")
        elif args.command == "clean-pending":
            hours = args.hours or config.stale_pending_hours
            if args.dry_run:
                stale = service.find_stale_pending(hours)
                for subscription in stale:
                    print(
                        f"{subscription.subscription_id}\t{subscription.user_id}\t"
                        f"{subscription.checkout_session_ref or '-'}\t{subscription.created_at.isoformat()}"
                    )
                print(f"{len(stale)} stale pending subscription(s)")
            else:
                cleaned = service.sweep_stale_pending(hours)
                print(f"Cleaned {cleaned} stale pending subscription(s)")
        elif args.command == "redrive-stuck":
            minutes = args.minutes or config.stuck_processing_minutes
            limit = args.limit or config.retry_batch_limit
            processed = service.redrive_stuck(older_than_minutes=minutes, limit=limit)
            print(f"Redrove {processed} stuck event(s)")
        elif args.command == "sync-invoice":
            invoice = service.sync_invoice(args.invoice_ref)
            print(f"{invoice.invoice_id}\t{invoice.status.value}\t{invoice.pdf_url or '-'}")
        elif args.command == "stats":
            print(json.dumps(service.webhook_log_stats(), indent=2, sort_keys=True))
    except (ValueError, LookupError, BillingSyncError) as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

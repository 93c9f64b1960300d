"""Command-line entry point for billing runs."""

import argparse
import asyncio
import sys
from datetime import date

import structlog

from billing_sync.config import bind_run_context, configure_logging, get_settings
from billing_sync.crm.client import CRMClient
from billing_sync.dates import parse_date, today_in
from billing_sync.lock import LockHeldError, RunLock
from billing_sync.processor import BatchSummary, ContractProcessor

logger = structlog.get_logger(__name__)


def _parse_today(raw: str) -> date:
    parsed = parse_date(raw)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid date {raw!r} (expected YYYY-MM-DD)")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billing-sync",
        description="Recurring billing schedule and ticket reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --deal 55261281948              # Process one contract
  %(prog)s --all                           # Process every billing-active contract
  %(prog)s --all --dry-run                 # Log the plan, write nothing
  %(prog)s --deal 55261281948 --today 2026-03-01
        """,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--deal", action="append", metavar="ID", help="Contract id (repeatable)")
    target.add_argument("--all", action="store_true", help="Process every eligible contract")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Compute and log the diff without creating, updating or deleting",
    )
    parser.add_argument(
        "--today",
        type=_parse_today,
        default=None,
        help="Run date override, YYYY-MM-DD (default: today in BILLING_TIMEZONE)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=None,
        help="Log output format (default: LOG_FORMAT)",
    )
    return parser


async def run_batch(args: argparse.Namespace) -> BatchSummary:
    settings = get_settings()
    today = args.today or today_in(settings.billing_timezone)

    async with CRMClient() as client:
        processor = ContractProcessor(client, dry_run=args.dry_run)
        contract_ids = None if args.all else list(dict.fromkeys(args.deal))
        return await processor.process_all(today, contract_ids=contract_ids)


async def main(argv: list[str] | None = None) -> int:
    """Run billing for the selected contracts and return the exit code."""
    args = build_parser().parse_args(argv)
    configure_logging(format=args.log_format)
    settings = get_settings()
    args.today = args.today or today_in(settings.billing_timezone)
    dry_run = args.dry_run if args.dry_run is not None else settings.dry_run
    bind_run_context(args.today, dry_run)

    logger.info("billing_run_started", all=args.all, deals=args.deal)

    try:
        # Single-deal runs may overlap a batch; only batches take the lock
        if args.all:
            with RunLock(settings.lock_path, ttl_seconds=settings.lock_ttl_seconds):
                summary = await run_batch(args)
        else:
            summary = await run_batch(args)
    except LockHeldError as e:
        logger.warning("billing_run_locked", path=str(e.path), age_seconds=round(e.age_seconds))
        return 1

    for error in summary.errors:
        logger.error("billing_run_error", error=error)
    logger.info(
        "billing_run_finished",
        processed=summary.processed,
        succeeded=summary.succeeded,
        failed=summary.failed,
        created=summary.created,
        updated=summary.updated,
        deleted=summary.deleted,
    )
    return 1 if summary.failed or summary.errors else 0


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("billing_run_interrupted")
        sys.exit(130)


if __name__ == "__main__":
    run()

#!/usr/bin/env python3
"""Command-line interface for reconciliation and stuck-state tools.

Usage:
    payment-integrity reconcile --start 2024-01-01 --end 2024-01-01
    payment-integrity reconcile --start 2024-01-01T00:00:00 --end 2024-01-31T23:59:59 --format csv --output run.csv
    payment-integrity sweep-stuck

Exit codes: 0 when clean, 1 when issues were found, 2 when the command
failed or the run was cancelled.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..config import IntegritySettings
from ..database import DatabaseManager
from ..gateway import PaymentGateway, get_gateway
from ..integrity.stuck import StuckStateSweep
from .models import ReconciliationFilters, RunStatus, TriggeredBy
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_ISSUES = 1
EXIT_FAILED = 2


def parse_datetime(dt_string: str) -> datetime:
    """Parse datetime string in various formats.

    Args:
        dt_string: Datetime string in ISO format or date format.

    Returns:
        Parsed datetime object.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    formats = [
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(dt_string, fmt)
        except ValueError:
            continue

    raise ValueError(
        f"Unable to parse datetime: {dt_string}. "
        f"Expected formats: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"
    )


def _write_output(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w", newline="") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


async def run_reconciliation_async(
    settings: IntegritySettings,
    start_time: datetime,
    end_time: datetime,
    filters: Optional[ReconciliationFilters] = None,
    output_file: Optional[str] = None,
    output_format: str = "json",
    gateway: Optional[PaymentGateway] = None,
) -> int:
    """Reconcile one window, render it and map the outcome to an exit code."""
    gateway = gateway or get_gateway(settings)
    db = DatabaseManager.from_settings(settings)
    await db.initialize()

    try:
        async with db.session() as session:
            service = ReconciliationService(session, gateway, settings)
            logger.info(f"Starting reconciliation from {start_time} to {end_time}")
            run = await service.reconcile(
                start_time,
                end_time,
                filters=filters,
                triggered_by=TriggeredBy.ADMIN,
            )
            output = service.generate_report(run, format=output_format)
    finally:
        await gateway.aclose()
        await db.shutdown()

    _write_output(output, output_file)

    if run.status != RunStatus.COMPLETED:
        logger.error(f"Reconciliation run {run.run_id} was {run.status.value}")
        return EXIT_FAILED
    if run.summary.has_issues:
        logger.warning(
            f"Reconciliation completed with issues: "
            f"{run.summary.discrepancy} discrepancies, {run.summary.unmatched} unmatched"
        )
        return EXIT_ISSUES
    return EXIT_CLEAN


async def sweep_stuck_async(settings: IntegritySettings, output_file: Optional[str] = None) -> int:
    db = DatabaseManager.from_settings(settings)
    await db.initialize()
    try:
        async with db.session() as session:
            report = await StuckStateSweep(session).run()
    finally:
        await db.shutdown()

    _write_output(json.dumps(report.to_dict(), indent=2, sort_keys=True), output_file)
    return EXIT_ISSUES if report.stuck else EXIT_CLEAN


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="payment-integrity",
        description="Payment reconciliation and integrity tools.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Reconcile local payments with the gateway for a window",
    )
    reconcile_parser.add_argument(
        "--start", "-s",
        required=True,
        help="Start date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    reconcile_parser.add_argument(
        "--end", "-e",
        required=True,
        help="End date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    reconcile_parser.add_argument("--client", help="Only sessions booked by this client")
    reconcile_parser.add_argument("--provider", help="Only sessions with this provider")
    reconcile_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    reconcile_parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text", "detailed_text"],
        default="json",
        help="Output format (default: json)",
    )

    sweep_parser = subparsers.add_parser(
        "sweep-stuck",
        help="Report payments and sessions stuck in a state",
    )
    sweep_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_FAILED

    try:
        settings = IntegritySettings.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FAILED

    if parsed_args.command == "reconcile":
        try:
            start_time = parse_datetime(parsed_args.start)
            end_time = parse_datetime(parsed_args.end)

            # A bare end date covers the whole day
            if "T" not in parsed_args.end and " " not in parsed_args.end:
                end_time = end_time + timedelta(days=1) - timedelta(microseconds=1)
            if end_time < start_time:
                raise ValueError("--end must not be before --start")
        except ValueError as e:
            logger.error(str(e))
            return EXIT_FAILED

        filters = None
        if parsed_args.client or parsed_args.provider:
            filters = ReconciliationFilters(client_id=parsed_args.client, provider_id=parsed_args.provider)

        try:
            return asyncio.run(run_reconciliation_async(
                settings,
                start_time=start_time,
                end_time=end_time,
                filters=filters,
                output_file=parsed_args.output,
                output_format=parsed_args.format,
            ))
        except ValueError as e:
            logger.error(f"Reconciliation failed: {e}")
            return EXIT_FAILED

    if parsed_args.command == "sweep-stuck":
        return asyncio.run(sweep_stuck_async(settings, parsed_args.output))

    return EXIT_CLEAN


if __name__ == "__main__":
    sys.exit(main())

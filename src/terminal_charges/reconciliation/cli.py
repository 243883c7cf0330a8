#!/usr/bin/env python3
"""Command-line interface for charge reconciliation.

Usage:
    terminal-charges reconcile
    terminal-charges reconcile --output report.json
    terminal-charges scheduler --interval 30
    terminal-charges sweep-assignments
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from ..bootstrap import build_container
from ..cache import close_redis_connections
from ..config import configure_logging, get_settings

logger = logging.getLogger(__name__)


async def run_reconcile_async(output_file: Optional[str] = None) -> int:
    """Run a single reconciliation sweep.

    Args:
        output_file: Optional path for the JSON report.

    Returns:
        Exit code (0 for success, 1 if some charges failed, 2 if skipped).
    """
    container = await build_container(get_settings())
    try:
        report = await container.scheduler.run_once()
    finally:
        await container.close()
        await close_redis_connections()

    output = report.model_dump_json(indent=2)
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)

    if report.status.value == "skipped":
        logger.warning("Another reconciliation run holds the lock")
        return 2
    if report.failed:
        logger.warning(f"Reconciliation finished with {report.failed} failed charges")
        return 1
    return 0


async def run_scheduler_async(interval: Optional[float] = None) -> int:
    """Run the periodic scheduler until interrupted."""
    container = await build_container(get_settings())
    if interval:
        container.scheduler.interval_seconds = interval
    try:
        await container.scheduler.start()
    except asyncio.CancelledError:
        logger.info("Scheduler interrupted")
    finally:
        await container.close()
        await close_redis_connections()
    return 0


async def sweep_assignments_async() -> int:
    """Deactivate expired terminal assignments once."""
    container = await build_container(get_settings())
    try:
        count = await container.leases.sweep_expired()
    finally:
        await container.close()
        await close_redis_connections()
    print(f"Deactivated {count} expired terminal assignments")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="terminal-charges",
        description="Reconciliation tools for terminal charges.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Run one reconciliation sweep",
    )
    reconcile_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )

    scheduler_parser = subparsers.add_parser(
        "scheduler",
        help="Run reconciliation sweeps periodically until interrupted",
    )
    scheduler_parser.add_argument(
        "--interval", "-i",
        type=float,
        help="Seconds between sweeps (default: RECONCILE_INTERVAL_SECONDS)",
    )

    subparsers.add_parser(
        "sweep-assignments",
        help="Deactivate terminal assignments older than the maximum age",
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
        return 1

    configure_logging(get_settings())

    if parsed_args.command == "reconcile":
        return asyncio.run(run_reconcile_async(parsed_args.output))
    if parsed_args.command == "scheduler":
        try:
            return asyncio.run(run_scheduler_async(parsed_args.interval))
        except KeyboardInterrupt:
            return 0
    if parsed_args.command == "sweep-assignments":
        return asyncio.run(sweep_assignments_async())

    return 0


if __name__ == "__main__":
    sys.exit(main())

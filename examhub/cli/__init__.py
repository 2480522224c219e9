#!/usr/bin/env python3
"""
ExamHub Engine CLI

Usage:
    python -m examhub.cli <command> [options]

Commands:
    init-db     Create any missing tables
    sweep       Expire and score overdue attempts once
    balance     Show available seats for an academy and exam

Environment:
    DATABASE_URL    SQLAlchemy async connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from examhub import __version__
from examhub.cli.commands import BalanceCommand, InitDbCommand, SweepCommand


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="examhub",
        description="ExamHub Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init-db
  %(prog)s sweep --limit 500
  %(prog)s balance --academy 3 --exam 12
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create any missing tables")

    sweep_parser = subparsers.add_parser("sweep", help="Expire and score overdue attempts")
    sweep_parser.add_argument("--limit", type=int, default=None, help="Max attempts per run")

    balance_parser = subparsers.add_parser("balance", help="Show available seats")
    balance_parser.add_argument("--academy", type=int, required=True, help="Academy ID")
    balance_parser.add_argument("--exam", type=int, required=True, help="Exam ID")
    balance_parser.add_argument("--entries", action="store_true", help="Also list ledger entries")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)

    command_map = {
        "init-db": InitDbCommand,
        "sweep": SweepCommand,
        "balance": BalanceCommand,
    }

    handler = command_map[parsed.command](dry_run=parsed.dry_run)
    return handler.execute(parsed)


if __name__ == "__main__":
    sys.exit(main())

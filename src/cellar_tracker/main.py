"""
Command line entry point for Cellar Tracker.

Usage:
  # Create the database tables:
  cellar-tracker init-db

  # Report ledger invariant violations (exit status 1 if any):
  cellar-tracker check
"""

import argparse
import json
import logging
import sys

from cellar_tracker.services.database import close_connections, initialize_app_database
from cellar_tracker.services.ledger_check_service import verify_ledger
from cellar_tracker.utils.config import get_config


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="cellar-tracker",
        description="Volume and provenance ledger for cider production",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log service operations to stderr",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("init-db", help="Create the database tables")
    check = subparsers.add_parser("check", help="Report ledger invariant violations")
    check.add_argument(
        "--json",
        action="store_true",
        help="Print violations as JSON",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """
    Run a cellar-tracker command.

    Returns:
        Process exit status
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = get_config()
    # Keep stdout pure JSON for --json
    header = sys.stderr if getattr(args, "json", False) else sys.stdout
    print(f"{config.app_name} v{config.app_version} ({config.environment})", file=header)
    print(f"Database: {config.database_url}", file=header)

    try:
        initialize_app_database()
        if args.command == "init-db":
            print("Database initialized successfully")
            return 0

        violations = verify_ledger()
        if args.json:
            print(json.dumps(violations, indent=2, default=str))
        elif not violations:
            print("Ledger is consistent")
        else:
            print(f"{len(violations)} violation(s):")
            for violation in violations:
                print(
                    f"  [{violation['check']}] {violation['entity']} "
                    f"{violation['entity_id']}: {violation['message']}"
                )
        return 1 if violations else 0
    finally:
        close_connections()


if __name__ == "__main__":
    sys.exit(main())

"""Storefront management CLI.

Creates and drops database schemas and runs the periodic sweeps that an
external scheduler (cron, Kubernetes CronJob) would otherwise trigger
through the maintenance endpoints.

Usage:
    python src/manage.py setup-db                 # Create all tables
    python src/manage.py drop-db                  # Drop all tables
    python src/manage.py sweep-reservations       # Flip expired reservations to EXPIRED
    python src/manage.py sweep-payment-failures   # Cancel orders unpaid past the grace period
"""

import argparse
import sys


def setup_database():
    from storefront.domain import storefront
    from storefront.utils.db import setup_db

    print("Initializing storefront domain...")
    storefront.init()
    print("Creating storefront database schema...")
    setup_db(storefront)
    print("Done.")


def drop_database():
    from storefront.domain import storefront
    from storefront.utils.db import drop_db

    print("Initializing storefront domain...")
    storefront.init()
    print("Dropping storefront database schema...")
    drop_db(storefront)
    print("Done.")


def sweep_reservations():
    from storefront.domain import storefront
    from storefront.inventory.expiry import expire_stale_reservations
    from storefront.utils.logging import configure_logging

    configure_logging()
    storefront.init()
    with storefront.domain_context():
        expired = expire_stale_reservations()
    print(f"Expired {expired} reservation(s).")


def sweep_payment_failures():
    from storefront.domain import storefront
    from storefront.payments.orchestrator import sweep_payment_failures as sweep
    from storefront.utils.logging import configure_logging

    configure_logging()
    storefront.init()
    with storefront.domain_context():
        cancelled = sweep()
    print(f"Cancelled {cancelled} unpaid order(s).")


COMMANDS = {
    "setup-db": (setup_database, "Create all database tables"),
    "drop-db": (drop_database, "Drop all database tables"),
    "sweep-reservations": (sweep_reservations, "Expire stale stock reservations"),
    "sweep-payment-failures": (sweep_payment_failures, "Cancel orders stuck in payment_failed"),
}


def main():
    parser = argparse.ArgumentParser(description="Storefront management")
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (_, help_text) in COMMANDS.items():
        subparsers.add_parser(name, help=help_text)

    args = parser.parse_args()

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    command[0]()


if __name__ == "__main__":
    main()

"""
Chain Verification Script

Verifies the hash chain of one application, or of every application,
directly against the database. Exits with status 1 if any chain has
integrity issues, so it can be run from cron or CI.

Requires LOG_HASH_KEY in the environment (or .env).
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from logchain.config import settings
from logchain.database import database
from logchain.services.applications import ApplicationManager
from logchain.services.verifier import verify_chain


async def verify_applications(
    application_id: str = None,
    verbose: bool = False,
    include_deleted: bool = False
) -> list:
    """
    Verify one application's chain, or all of them.

    Soft-deleted applications keep their chains; include_deleted checks
    those too.

    Returns:
        List of (application, report) tuples
    """
    manager = ApplicationManager(database)

    if application_id:
        applications = [
            await manager.get_application(application_id, include_deleted=include_deleted)
        ]
    else:
        applications = await manager.list_applications(
            include_inactive=True,
            include_deleted=include_deleted
        )

    results = []
    for application in applications:
        if verbose:
            print(f"Verifying {application.slug} ({application.id})...")
        report = await verify_chain(application.id, settings.log_hash_key, database)
        results.append((application, report))

    return results


def print_results(results: list) -> bool:
    """Print verification results. Returns True if every chain is valid."""
    print("\n" + "=" * 60)
    print("CHAIN VERIFICATION RESULTS")
    print("=" * 60)
    print(f"Timestamp: {datetime.now(timezone.utc).isoformat()}")
    print("-" * 60)

    all_valid = True

    for application, report in results:
        status = "VALID" if report.valid else "INVALID"
        print(f"\nApplication: {application.name} ({application.slug})")
        print(f"  Status: {status}")
        print(f"  Logs checked: {report.total_logs}")

        if not report.valid:
            all_valid = False
            print(f"  First invalid seq: {report.first_invalid_seq}")
            for error in report.errors:
                print(f"    - {error}")

    print("\n" + "=" * 60)
    if all_valid:
        print("ALL CHAINS VERIFIED SUCCESSFULLY")
    else:
        print("SOME CHAINS HAVE INTEGRITY ISSUES")
    print("=" * 60 + "\n")

    return all_valid


async def main() -> int:
    parser = argparse.ArgumentParser(
        description="Verify log hash chain integrity"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL connection URL (defaults to DATABASE_URL)"
    )
    parser.add_argument(
        "--application-id",
        help="Application to verify (verifies all if not specified)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print progress information"
    )
    parser.add_argument(
        "--include-deleted",
        action="store_true",
        help="Also verify soft-deleted applications"
    )

    args = parser.parse_args()

    if args.database_url:
        settings.database_url = args.database_url

    await database.connect()
    try:
        results = await verify_applications(
            args.application_id,
            verbose=args.verbose,
            include_deleted=args.include_deleted
        )
    finally:
        await database.disconnect()

    return 0 if print_results(results) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

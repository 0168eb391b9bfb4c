#!/usr/bin/env python3
"""
Replay failed JVZoo IPN notifications.

Failed notifications stay in jvzoo_transactions with processed = false and
the error that stopped them. After fixing the cause, re-run them from their
stored payload; the same audit row is marked processed on success.

Usage:
    # List failed notifications
    python3 scripts/replay_failed_ipn.py --list

    # Replay one notification
    python3 scripts/replay_failed_ipn.py --key SALE:9U7RZQUFAKHBEVWJU

    # Replay every failed notification, oldest first
    python3 scripts/replay_failed_ipn.py --all
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from app.config import settings
from app.db.models import JVZooTransaction
from app.db.session import Database
from app.exceptions import AuditRecordNotFoundError
from app.models.api import IPNOutcome
from app.observability.logging import get_logger, setup_logging
from app.services.license_store import LicenseStore
from app.services.notifications import LoggingPurchaseNotifier, deliver
from app.services.transaction_processor import TransactionProcessor
from app.services.user_directory import UserDirectory

logger = get_logger("scripts.replay_failed_ipn")


async def failed_keys(database: Database) -> list[JVZooTransaction]:
    async with database.session() as session:
        result = await session.execute(
            select(JVZooTransaction)
            .where(JVZooTransaction.processed.is_(False))
            .order_by(JVZooTransaction.created_at)
        )
        return list(result.scalars().all())


async def replay(database: Database, key: str) -> IPNOutcome:
    async with database.session() as session:
        processor = TransactionProcessor(
            session,
            settings.jvzoo_secret_key,
            LicenseStore(session, settings.license_secret),
            UserDirectory(session),
        )
        result = await processor.replay_failed(key)

    if result.notification is not None:
        await deliver(LoggingPurchaseNotifier(), result.notification)
    logger.info("ipn_replay_result", key=key, outcome=result.outcome.value, error=result.error)
    return result.outcome


async def run(args: argparse.Namespace) -> int:
    database = Database.from_settings(settings)
    try:
        records = await failed_keys(database)
        if args.list:
            for record in records:
                print(
                    f"{record.created_at.isoformat()}  {record.idempotency_key}  "
                    f"{record.processing_error}"
                )
            return 0

        keys = [record.idempotency_key for record in records] if args.all else [args.key]
        failures = 0
        for key in keys:
            try:
                outcome = await replay(database, key)
            except AuditRecordNotFoundError as e:
                logger.error("ipn_replay_unknown_key", key=key, error=str(e))
                failures += 1
                continue
            if outcome not in (IPNOutcome.PROCESSED, IPNOutcome.IGNORED):
                failures += 1
        return 1 if failures else 0
    finally:
        await database.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Replay failed JVZoo IPN notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List failed notifications")
    group.add_argument("--key", help="Idempotency key of the notification to replay")
    group.add_argument("--all", action="store_true", help="Replay all failed notifications")

    args = parser.parse_args()
    setup_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Repair derived vote state from the stored ballots.

Reports every candidate whose vote_count disagrees with its ballot
selections, then (unless --verify-only) recomputes all counters and voted
flags in one locked transaction. With --rebuild-cache the Redis voted_users
set is refilled from the user flags afterwards.

Usage:
    python scripts/reconcile_tallies.py [--verify-only] [--rebuild-cache]
"""

import argparse
import asyncio
import logging
import sys

from campus_ballot.core import ElectionAdmin
from campus_ballot.shared.errors import StorageUnavailable
from campus_ballot.voting_api.config import settings
from campus_ballot.voting_api.database import PostgresStorage
from campus_ballot.voting_api.status_cache import VoterStatusCache

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def rebuild_cache(admin: ElectionAdmin) -> int:
    cache = VoterStatusCache(settings.redis_url)
    await cache.initialize()
    try:
        await cache.clear()
        voted = [u for u in await admin.list_users() if u.has_voted]
        for user in voted:
            await cache.mark(user.id)
        return len(voted)
    finally:
        await cache.close()


async def run(verify_only: bool, refill_cache: bool) -> int:
    storage = PostgresStorage(settings.postgres_dsn, settings.STORAGE_TIMEOUT_SECONDS)
    await storage.initialize()

    try:
        admin = ElectionAdmin(storage, timeout=settings.STORAGE_TIMEOUT_SECONDS)

        discrepancies = await admin.verify_tallies()
        for d in discrepancies:
            logger.warning(
                f"Candidate {d['name']} ({d['candidate_id']}): "
                f"vote_count={d['vote_count']}, ballots={d['ballot_count']}"
            )
        if not discrepancies:
            logger.info("All vote counts match the ballots")

        if not verify_only:
            outcome = await admin.reconcile()
            print(f"✓ {outcome['candidates_corrected']} counters corrected, "
                  f"{outcome['users_flagged']} users flagged")

        if refill_cache:
            count = await rebuild_cache(admin)
            print(f"✓ Voter cache rebuilt with {count:,} users")

    finally:
        await storage.close()

    return 1 if discrepancies and verify_only else 0


def main():
    parser = argparse.ArgumentParser(description="Recompute vote counts and voted flags from ballots")
    parser.add_argument("--verify-only", action="store_true",
                        help="Report discrepancies without changing anything")
    parser.add_argument("--rebuild-cache", action="store_true",
                        help="Refill the Redis voted_users set afterwards")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args.verify_only, args.rebuild_cache)))
    except (OSError, StorageUnavailable) as e:
        logger.error(f"Reconciliation failed: {e}")
        sys.exit(2)


if __name__ == "__main__":
    main()

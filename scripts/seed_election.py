#!/usr/bin/env python3
"""
Seed an election: an administrator account, the candidate slate and,
optionally, a batch of demo students.

Usage:
    python scripts/seed_election.py [--candidates FILE] [--students N]
                                    [--admin-id ID] [--admin-password PASSWORD]

The candidate file is JSON: a list of objects with name, position,
department, year, manifesto and optional photo_url. Without a file a small
default slate is created. Storage settings come from the environment
(see campus_ballot/voting_api/config.py).
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List

from tqdm import tqdm

from campus_ballot.core import ElectionAdmin
from campus_ballot.shared.errors import UserExists
from campus_ballot.shared.models import Position
from campus_ballot.voting_api.auth import AccountService, JWTAuthProvider
from campus_ballot.voting_api.config import settings
from campus_ballot.voting_api.database import PostgresStorage

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEPARTMENTS = ["Computer Science", "Engineering", "Business", "Arts"]

DEFAULT_SLATE = [
    {"name": "Amara Okafor", "position": "President", "department": "Engineering",
     "year": 4, "manifesto": "Longer library hours and a student-run budget review."},
    {"name": "Lucas Moreau", "position": "President", "department": "Business",
     "year": 3, "manifesto": "Cheaper meal plans and more internship fairs."},
    {"name": "Priya Raman", "position": "Vice President", "department": "Computer Science",
     "year": 3, "manifesto": "Open office hours with the council every week."},
    {"name": "Tomás Ortega", "position": "Secretary", "department": "Arts",
     "year": 2, "manifesto": "Publish every council decision within 48 hours."},
    {"name": "Hana Kim", "position": "Treasurer", "department": "Business",
     "year": 4, "manifesto": "A public ledger of every club grant."},
]


def load_slate(path: Path) -> List[dict]:
    """Read and check a candidate file."""
    with open(path, "r") as f:
        slate = json.load(f)
    if not isinstance(slate, list):
        raise ValueError(f"{path}: expected a JSON list of candidates")
    for entry in slate:
        Position(entry["position"])
    return slate


async def seed(args) -> int:
    storage = PostgresStorage(settings.postgres_dsn, settings.STORAGE_TIMEOUT_SECONDS)
    await storage.initialize()

    try:
        accounts = AccountService(
            storage,
            JWTAuthProvider(settings.JWT_SECRET, settings.JWT_ALGORITHM,
                            bcrypt_rounds=settings.BCRYPT_ROUNDS),
            timeout=settings.STORAGE_TIMEOUT_SECONDS,
        )
        admin = ElectionAdmin(storage, timeout=settings.STORAGE_TIMEOUT_SECONDS)

        try:
            await accounts.register(
                student_id=args.admin_id,
                name="Election Administrator",
                email=args.admin_email,
                password=args.admin_password,
                department="Student Affairs",
                year=4,
                is_admin=True,
            )
            logger.info(f"Administrator {args.admin_id} created")
        except UserExists:
            logger.info(f"Administrator {args.admin_id} already exists")

        slate = load_slate(args.candidates) if args.candidates else DEFAULT_SLATE
        for entry in slate:
            await admin.add_candidate(**entry)
        logger.info(f"{len(slate)} candidates added")

        created = 0
        for i in tqdm(range(args.students), desc="Registering students", unit="students"):
            try:
                await accounts.register(
                    student_id=f"STU{i:06d}",
                    name=f"Student {i}",
                    email=f"student{i}@campus.edu",
                    password=args.student_password,
                    department=DEPARTMENTS[i % len(DEPARTMENTS)],
                    year=i % 4 + 1,
                )
                created += 1
            except UserExists:
                continue
        if args.students:
            logger.info(f"{created} demo students registered")

    finally:
        await storage.close()

    return 0


def main():
    parser = argparse.ArgumentParser(description="Seed candidates and accounts for an election")
    parser.add_argument("--candidates", type=Path, help="JSON file with the candidate slate")
    parser.add_argument("--students", type=int, default=0, help="Number of demo students")
    parser.add_argument("--student-password", default="student123")
    parser.add_argument("--admin-id", default="ADMIN001")
    parser.add_argument("--admin-email", default="admin@campus.edu")
    parser.add_argument("--admin-password", default="admin123")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(seed(args)))
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Seeding failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Shared fixtures for the unit and API tests.

The API settings are read from the environment on first import, so the
in-memory backend and test-friendly limits are set here before any test
module imports the application.
"""

import os

os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("REDIS_HOST", "")
os.environ.setdefault("RATE_LIMIT", "1000/minute")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("FOLLOW_UP_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import datetime, timezone  # noqa: E402
from typing import Dict  # noqa: E402

import pytest  # noqa: E402

from campus_ballot.core import ElectionAdmin, MemoryStorage, ResultsReader, VoteCastTransaction  # noqa: E402
from campus_ballot.shared.models import Candidate, Position, User  # noqa: E402

FIXED_TIME = datetime(2024, 3, 1, 14, 25, tzinfo=timezone.utc)


@pytest.fixture
def fixed_time() -> datetime:
    return FIXED_TIME


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def caster(storage) -> VoteCastTransaction:
    """Cast transaction with a fixed clock and no retry delay."""
    return VoteCastTransaction(
        storage,
        timeout=1.0,
        follow_up_attempts=3,
        retry_delay=0,
        clock=lambda: FIXED_TIME,
    )


@pytest.fixture
def reader(storage) -> ResultsReader:
    return ResultsReader(storage, timeout=1.0)


@pytest.fixture
def admin(storage) -> ElectionAdmin:
    return ElectionAdmin(storage, timeout=1.0)


@pytest.fixture
def make_user(storage):
    """Register a user directly in the store."""
    async def _make(student_id: str, department: str = "Computer Science", year: int = 1) -> User:
        return await storage.users.register(User(
            student_id=student_id,
            name=f"Student {student_id}",
            email=f"{student_id.lower()}@campus.edu",
            department=department,
            year=year,
        ))
    return _make


@pytest.fixture
def make_candidate(storage):
    """Add a candidate directly to the store."""
    async def _make(name: str, position: Position, is_active: bool = True) -> Candidate:
        return await storage.candidates.add(Candidate(
            name=name,
            position=position,
            department="Engineering",
            year=3,
            manifesto=f"{name} for {position.value}",
            is_active=is_active,
        ))
    return _make


@pytest.fixture
async def slate(make_candidate) -> Dict[str, Candidate]:
    """Two presidents, one vice president, one treasurer and an inactive secretary."""
    return {
        "alice": await make_candidate("Alice", Position.PRESIDENT),
        "bob": await make_candidate("Bob", Position.PRESIDENT),
        "carol": await make_candidate("Carol", Position.VICE_PRESIDENT),
        "dan": await make_candidate("Dan", Position.TREASURER),
        "eve": await make_candidate("Eve", Position.SECRETARY, is_active=False),
    }


def pytest_addoption(parser):
    parser.addoption(
        "--docker",
        action="store_true",
        default=False,
        help="run tests that need the running service stack",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--docker"):
        return
    skip_docker = pytest.mark.skip(reason="needs the service stack, run with --docker")
    for item in items:
        if "docker" in item.keywords:
            item.add_marker(skip_docker)

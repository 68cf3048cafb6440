"""
Storage contracts for the ballot core.

Any backend (relational, document, in-memory) must satisfy:
- a storage-level uniqueness constraint on Ballot.user_id, so that two racing
  casts for the same user cannot both create a ballot;
- an atomic per-candidate increment, never a read-modify-write in
  application code.

A Storage hands out StorageSession objects binding the four stores to one
unit of work. On a transactional backend the whole session commits or rolls
back together; on a non-transactional backend each store call is applied
immediately and the ballot insert is the commit point of a cast.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Dict, Iterable, List, Optional

from ..shared.errors import StorageUnavailable
from ..shared.models import (
    Ballot,
    Candidate,
    HourlyCount,
    ResetRecord,
    TurnoutGroup,
    User,
)

TURNOUT_ATTRIBUTES = ("department", "year")

# Candidate fields an update may change. vote_count is never among them.
CANDIDATE_UPDATABLE_FIELDS = (
    "name",
    "position",
    "department",
    "year",
    "manifesto",
    "photo_url",
    "is_active",
)


async def bounded(awaitable, timeout: float):
    """
    Await a store operation with a timeout.

    Raises:
        StorageUnavailable: If the operation does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise StorageUnavailable(f"Storage operation timed out after {timeout}s")


class CandidateStore(ABC):
    """Candidate records and their vote counters."""

    @abstractmethod
    async def find_active_by_ids(self, ids: Iterable[str]) -> List[Candidate]:
        """Return the active candidates among ids (unknown ids are skipped)."""

    @abstractmethod
    async def increment_votes(self, candidate_id: str) -> None:
        """
        Atomically add one vote to a candidate.

        Raises:
            NotFound: If the candidate does not exist
        """

    @abstractmethod
    async def list_results(self) -> List[Candidate]:
        """Active candidates ordered by position, then vote_count desc, then name."""

    @abstractmethod
    async def list_active(self) -> List[Candidate]:
        """Active candidates ordered by position, then name."""

    @abstractmethod
    async def list_all(self) -> List[Candidate]:
        """All candidates, including inactive ones, ordered like list_results."""

    @abstractmethod
    async def count_active(self) -> int:
        ...

    @abstractmethod
    async def get(self, candidate_id: str) -> Candidate:
        """Raises NotFound if absent."""

    @abstractmethod
    async def add(self, candidate: Candidate) -> Candidate:
        ...

    @abstractmethod
    async def update(self, candidate_id: str, fields: Dict) -> Candidate:
        """Apply CANDIDATE_UPDATABLE_FIELDS from fields; anything else is ignored."""

    @abstractmethod
    async def reset_counts(self) -> None:
        ...


class BallotStore(ABC):
    """One immutable ballot per user."""

    @abstractmethod
    async def exists(self, user_id: str) -> bool:
        ...

    @abstractmethod
    async def create(self, ballot: Ballot) -> Ballot:
        """
        Insert a ballot.

        Raises:
            DuplicateBallot: If the user already owns a ballot
        """

    @abstractmethod
    async def get_for_user(self, user_id: str) -> Optional[Ballot]:
        ...

    @abstractmethod
    async def count_all(self) -> int:
        ...

    @abstractmethod
    async def aggregate_by_hour(self, limit: int = 24) -> List[HourlyCount]:
        """Ballot counts per hour bucket, most recent first."""

    @abstractmethod
    async def tally(self) -> Dict[str, int]:
        """Number of selections referencing each candidate across all ballots."""

    @abstractmethod
    async def delete_all(self) -> int:
        """Remove every ballot (election reset only). Returns the number removed."""


class UserStore(ABC):
    """Registered students and their voting status."""

    @abstractmethod
    async def get(self, user_id: str) -> User:
        """Raises NotFound if absent."""

    @abstractmethod
    async def get_by_student_id(self, student_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def register(self, user: User) -> User:
        """
        Insert a new user.

        Raises:
            UserExists: If the student id or e-mail is taken
        """

    @abstractmethod
    async def mark_voted(self, user_id: str, voted_at: datetime) -> None:
        """Set has_voted/voted_at. A user already marked keeps the first voted_at."""

    @abstractmethod
    async def count_all(self) -> int:
        ...

    @abstractmethod
    async def count_voted(self) -> int:
        ...

    @abstractmethod
    async def turnout_by(self, attribute: str) -> List[TurnoutGroup]:
        """Group users by department or year, ordered by group value."""

    @abstractmethod
    async def list_all(self) -> List[User]:
        """Users, most recently registered first."""

    @abstractmethod
    async def reset_voting_status(self) -> None:
        ...


class HistoryStore(ABC):
    """Append-only archive of election resets."""

    @abstractmethod
    async def append(self, record: ResetRecord) -> ResetRecord:
        ...

    @abstractmethod
    async def list_all(self) -> List[ResetRecord]:
        """Reset records, most recent first."""


class StorageSession:
    """The stores bound to one unit of work."""

    def __init__(
        self,
        candidates: CandidateStore,
        ballots: BallotStore,
        users: UserStore,
        history: HistoryStore,
    ):
        self.candidates = candidates
        self.ballots = ballots
        self.users = users
        self.history = history


class Storage(ABC):
    """A storage backend."""

    #: True when a session commits or rolls back as a whole.
    transactional = False

    async def initialize(self) -> None:
        """Open connections and prepare the schema."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def check_health(self) -> bool:
        ...

    @abstractmethod
    def session(self) -> AsyncContextManager[StorageSession]:
        """Async context manager yielding a StorageSession."""

    def exclusive_session(self) -> AsyncContextManager[StorageSession]:
        """
        Like session(), but no other session may create a ballot until this
        one ends, and ballots created by sessions still open when it starts
        are visible to it.

        A backend without table locks returns a plain session.
        """
        return self.session()

    @abstractmethod
    async def reconcile_tallies(self) -> Dict[str, int]:
        """
        Rebuild counters and voted flags from the ballots.

        Every vote_count is set to the number of ballot selections naming the
        candidate, and every user owning a ballot is flagged as voted. Runs
        atomically with respect to concurrent casts and is idempotent.

        Returns:
            {"candidates_corrected": n, "users_flagged": m}
        """


def validate_turnout_attribute(attribute: str) -> None:
    if attribute not in TURNOUT_ATTRIBUTES:
        raise ValueError(
            f"Cannot group turnout by '{attribute}', expected one of {TURNOUT_ATTRIBUTES}"
        )


__all__ = [
    "bounded",
    "CandidateStore",
    "BallotStore",
    "UserStore",
    "HistoryStore",
    "StorageSession",
    "Storage",
    "TURNOUT_ATTRIBUTES",
    "CANDIDATE_UPDATABLE_FIELDS",
    "validate_turnout_attribute",
]

"""
In-memory storage backend.

Used for local development and tests. Each store call yields to the event
loop once and then applies its change without further suspension, so every
call is atomic while separate calls from concurrent casts still interleave.
The ballot map keyed by user id is the uniqueness constraint.
"""

import asyncio
import copy
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..shared.errors import DuplicateBallot, NotFound, UserExists
from ..shared.models import (
    Ballot,
    Candidate,
    HourlyCount,
    Position,
    ResetRecord,
    TurnoutGroup,
    User,
    hour_bucket,
)
from .stores import (
    CANDIDATE_UPDATABLE_FIELDS,
    BallotStore,
    CandidateStore,
    HistoryStore,
    Storage,
    StorageSession,
    UserStore,
    validate_turnout_attribute,
)

logger = logging.getLogger(__name__)


def _results_key(candidate: Candidate):
    return (candidate.position.value, -candidate.vote_count, candidate.name, candidate.id)


class MemoryCandidateStore(CandidateStore):

    def __init__(self):
        self._candidates: Dict[str, Candidate] = {}

    async def find_active_by_ids(self, ids: Iterable[str]) -> List[Candidate]:
        await asyncio.sleep(0)
        wanted = set(ids)
        return [
            copy.copy(c) for c in self._candidates.values()
            if c.id in wanted and c.is_active
        ]

    async def increment_votes(self, candidate_id: str) -> None:
        await asyncio.sleep(0)
        candidate = self._candidates.get(candidate_id)
        if candidate is None:
            raise NotFound(f"Candidate {candidate_id} not found")
        candidate.vote_count += 1

    async def list_results(self) -> List[Candidate]:
        await asyncio.sleep(0)
        active = [copy.copy(c) for c in self._candidates.values() if c.is_active]
        return sorted(active, key=_results_key)

    async def list_active(self) -> List[Candidate]:
        await asyncio.sleep(0)
        active = [copy.copy(c) for c in self._candidates.values() if c.is_active]
        return sorted(active, key=lambda c: (c.position.value, c.name, c.id))

    async def list_all(self) -> List[Candidate]:
        await asyncio.sleep(0)
        return sorted((copy.copy(c) for c in self._candidates.values()), key=_results_key)

    async def count_active(self) -> int:
        await asyncio.sleep(0)
        return sum(1 for c in self._candidates.values() if c.is_active)

    async def get(self, candidate_id: str) -> Candidate:
        await asyncio.sleep(0)
        candidate = self._candidates.get(candidate_id)
        if candidate is None:
            raise NotFound(f"Candidate {candidate_id} not found")
        return copy.copy(candidate)

    async def add(self, candidate: Candidate) -> Candidate:
        await asyncio.sleep(0)
        self._candidates[candidate.id] = copy.copy(candidate)
        return copy.copy(candidate)

    async def update(self, candidate_id: str, fields: Dict) -> Candidate:
        await asyncio.sleep(0)
        candidate = self._candidates.get(candidate_id)
        if candidate is None:
            raise NotFound(f"Candidate {candidate_id} not found")
        changes = {k: v for k, v in fields.items() if k in CANDIDATE_UPDATABLE_FIELDS}
        if "position" in changes:
            changes["position"] = Position(changes["position"])
        updated = replace(candidate, **changes)
        self._candidates[candidate_id] = updated
        return copy.copy(updated)

    async def reset_counts(self) -> None:
        await asyncio.sleep(0)
        for candidate in self._candidates.values():
            candidate.vote_count = 0


class MemoryBallotStore(BallotStore):

    def __init__(self):
        self._by_user: Dict[str, Ballot] = {}

    async def exists(self, user_id: str) -> bool:
        await asyncio.sleep(0)
        return user_id in self._by_user

    async def create(self, ballot: Ballot) -> Ballot:
        await asyncio.sleep(0)
        if ballot.user_id in self._by_user:
            raise DuplicateBallot()
        self._by_user[ballot.user_id] = ballot
        return ballot

    async def get_for_user(self, user_id: str) -> Optional[Ballot]:
        await asyncio.sleep(0)
        return self._by_user.get(user_id)

    async def count_all(self) -> int:
        await asyncio.sleep(0)
        return len(self._by_user)

    async def aggregate_by_hour(self, limit: int = 24) -> List[HourlyCount]:
        await asyncio.sleep(0)
        buckets = Counter(hour_bucket(b.created_at) for b in self._by_user.values())
        ordered = sorted(buckets.items(), key=lambda item: item[0], reverse=True)
        return [HourlyCount(hour=hour, count=count) for hour, count in ordered[:limit]]

    async def tally(self) -> Dict[str, int]:
        await asyncio.sleep(0)
        counts = Counter(
            s.candidate_id for b in self._by_user.values() for s in b.selections
        )
        return dict(counts)

    async def delete_all(self) -> int:
        await asyncio.sleep(0)
        removed = len(self._by_user)
        self._by_user.clear()
        return removed


class MemoryUserStore(UserStore):

    def __init__(self):
        self._users: Dict[str, User] = {}

    async def get(self, user_id: str) -> User:
        await asyncio.sleep(0)
        user = self._users.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return copy.copy(user)

    async def get_by_student_id(self, student_id: str) -> Optional[User]:
        await asyncio.sleep(0)
        for user in self._users.values():
            if user.student_id == student_id:
                return copy.copy(user)
        return None

    async def register(self, user: User) -> User:
        await asyncio.sleep(0)
        for existing in self._users.values():
            if existing.student_id == user.student_id or existing.email == user.email:
                raise UserExists()
        self._users[user.id] = copy.copy(user)
        return copy.copy(user)

    async def mark_voted(self, user_id: str, voted_at: datetime) -> None:
        await asyncio.sleep(0)
        user = self._users.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        if not user.has_voted:
            user.has_voted = True
            user.voted_at = voted_at

    async def count_all(self) -> int:
        await asyncio.sleep(0)
        return len(self._users)

    async def count_voted(self) -> int:
        await asyncio.sleep(0)
        return sum(1 for u in self._users.values() if u.has_voted)

    async def turnout_by(self, attribute: str) -> List[TurnoutGroup]:
        validate_turnout_attribute(attribute)
        await asyncio.sleep(0)
        totals: Counter = Counter()
        voted: Counter = Counter()
        for user in self._users.values():
            key = getattr(user, attribute)
            totals[key] += 1
            if user.has_voted:
                voted[key] += 1
        return [
            TurnoutGroup(group=key, total=totals[key], voted=voted[key])
            for key in sorted(totals)
        ]

    async def list_all(self) -> List[User]:
        await asyncio.sleep(0)
        return sorted(
            (copy.copy(u) for u in self._users.values()),
            key=lambda u: u.created_at,
            reverse=True,
        )

    async def reset_voting_status(self) -> None:
        await asyncio.sleep(0)
        for user in self._users.values():
            user.has_voted = False
            user.voted_at = None


class MemoryHistoryStore(HistoryStore):

    def __init__(self):
        self._records: List[ResetRecord] = []

    async def append(self, record: ResetRecord) -> ResetRecord:
        await asyncio.sleep(0)
        self._records.append(record)
        return record

    async def list_all(self) -> List[ResetRecord]:
        await asyncio.sleep(0)
        return list(reversed(self._records))


class MemoryStorage(Storage):
    """Non-transactional storage kept in process memory."""

    transactional = False

    def __init__(self):
        self.candidates = MemoryCandidateStore()
        self.ballots = MemoryBallotStore()
        self.users = MemoryUserStore()
        self.history = MemoryHistoryStore()
        self._session = StorageSession(
            candidates=self.candidates,
            ballots=self.ballots,
            users=self.users,
            history=self.history,
        )

    async def initialize(self) -> None:
        logger.info("In-memory storage initialized")

    async def check_health(self) -> bool:
        return True

    @asynccontextmanager
    async def session(self):
        yield self._session

    async def reconcile_tallies(self) -> Dict[str, int]:
        await asyncio.sleep(0)
        ballots = list(self.ballots._by_user.values())
        counts = Counter(s.candidate_id for b in ballots for s in b.selections)

        corrected = 0
        for candidate in self.candidates._candidates.values():
            expected = counts.get(candidate.id, 0)
            if candidate.vote_count != expected:
                candidate.vote_count = expected
                corrected += 1

        flagged = 0
        for ballot in ballots:
            user = self.users._users.get(ballot.user_id)
            if user is not None and not user.has_voted:
                user.has_voted = True
                user.voted_at = ballot.created_at
                flagged += 1

        return {"candidates_corrected": corrected, "users_flagged": flagged}

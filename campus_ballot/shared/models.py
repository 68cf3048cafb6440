"""
Shared data models for the campus ballot system.

This module contains:
- Position: the closed set of contested offices
- User, Candidate, Ballot, Selection: records held by the stores
- CastReceipt, VoteStatus, HourlyCount, TurnoutGroup, ResetRecord: read models
- Small helpers for ids and timestamps
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List


class Position(str, Enum):
    """Contested offices. Ballots select at most one candidate per position."""
    PRESIDENT = "President"
    VICE_PRESIDENT = "Vice President"
    SECRETARY = "Secretary"
    TREASURER = "Treasurer"


DEFAULT_PHOTO_URL = "https://via.placeholder.com/150"


def new_id() -> str:
    """Generate an opaque record identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def hour_bucket(moment: datetime) -> str:
    """Format a timestamp as its hourly bucket label, e.g. '2024-03-01 14:00'."""
    return moment.strftime("%Y-%m-%d %H:00")


@dataclass
class User:
    """
    A registered student.

    Attributes:
        id: Opaque identifier
        student_id: Unique external identifier (upper-cased)
        name: Display name
        email: Unique e-mail address (lower-cased)
        department: Academic department
        year: Year of study (1-4)
        password_hash: Hash produced by the auth provider
        has_voted: True once a ballot has been cast
        voted_at: When the ballot was cast
        is_admin: Grants access to administration routes
    """
    student_id: str
    name: str
    email: str
    department: str
    year: int
    password_hash: str = ""
    id: str = field(default_factory=new_id)
    has_voted: bool = False
    voted_at: Optional[datetime] = None
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> Dict[str, Any]:
        """User fields safe to return to clients."""
        data = asdict(self)
        data.pop("password_hash")
        return data


@dataclass
class Candidate:
    """A candidate standing for one position."""
    name: str
    position: Position
    department: str
    year: int
    manifesto: str
    photo_url: str = DEFAULT_PHOTO_URL
    id: str = field(default_factory=new_id)
    vote_count: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["position"] = self.position.value
        return data

    def to_result_dict(self) -> Dict[str, Any]:
        """Projection used by the results view."""
        return {
            "id": self.id,
            "name": self.name,
            "department": self.department,
            "year": self.year,
            "vote_count": self.vote_count,
            "manifesto": self.manifesto,
            "photo_url": self.photo_url,
        }


@dataclass(frozen=True)
class Selection:
    """One (position, candidate) choice on a ballot."""
    position: Position
    candidate_id: str


@dataclass(frozen=True)
class Ballot:
    """
    One user's full set of selections, submitted exactly once.

    Ballots are immutable; only a full election reset removes them.
    """
    user_id: str
    selections: tuple
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "selections": [
                {"position": s.position.value, "candidate_id": s.candidate_id}
                for s in self.selections
            ],
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class CastReceipt:
    """Returned by a successful cast."""
    ballot_id: str
    timestamp: datetime


@dataclass(frozen=True)
class VoteStatus:
    has_voted: bool
    voted_at: Optional[datetime] = None


@dataclass(frozen=True)
class HourlyCount:
    hour: str
    count: int


@dataclass(frozen=True)
class TurnoutGroup:
    """Turnout for one group of users (a department or a year)."""
    group: Any
    total: int
    voted: int

    @property
    def percentage(self) -> float:
        """Voted share in [0, 100]; 0 for an empty group."""
        return turnout_percentage(self.voted, self.total)


@dataclass
class ResetRecord:
    """Snapshot archived before an election reset."""
    reset_by: Optional[str]
    total_ballots: int
    tallies: List[Dict[str, Any]]
    id: str = field(default_factory=new_id)
    reset_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def turnout_percentage(voted: int, total: int) -> float:
    """Percentage of voted over total, rounded to 2 places; 0 when total is 0."""
    return round(voted / total * 100, 2) if total > 0 else 0

"""
Shared models and errors for the campus ballot system.

This package contains common code used by the core, the API and the scripts:
- Domain records (User, Candidate, Ballot, Selection, Position)
- Read models (CastReceipt, VoteStatus, HourlyCount, TurnoutGroup, ResetRecord)
- The error taxonomy raised by the cast transaction and the stores
"""

from .models import (
    Position,
    User,
    Candidate,
    Selection,
    Ballot,
    CastReceipt,
    VoteStatus,
    HourlyCount,
    TurnoutGroup,
    ResetRecord,
    new_id,
    utcnow,
    hour_bucket,
    turnout_percentage,
    DEFAULT_PHOTO_URL,
)
from .errors import (
    VotingError,
    AlreadyVoted,
    DuplicateBallot,
    InvalidCandidate,
    DuplicatePosition,
    PositionMismatch,
    NotFound,
    StorageUnavailable,
    UserExists,
    InvalidCredentials,
    Forbidden,
)

__all__ = [
    'Position',
    'User',
    'Candidate',
    'Selection',
    'Ballot',
    'CastReceipt',
    'VoteStatus',
    'HourlyCount',
    'TurnoutGroup',
    'ResetRecord',
    'new_id',
    'utcnow',
    'hour_bucket',
    'turnout_percentage',
    'DEFAULT_PHOTO_URL',
    'VotingError',
    'AlreadyVoted',
    'DuplicateBallot',
    'InvalidCandidate',
    'DuplicatePosition',
    'PositionMismatch',
    'NotFound',
    'StorageUnavailable',
    'UserExists',
    'InvalidCredentials',
    'Forbidden',
]

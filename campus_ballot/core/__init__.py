"""
Ballot core: store contracts, the vote cast transaction and the read views.
"""

from .stores import (
    Storage,
    StorageSession,
    CandidateStore,
    BallotStore,
    UserStore,
    HistoryStore,
    bounded,
)
from .memory import MemoryStorage
from .casting import VoteCastTransaction
from .results import ResultsReader, group_by_position
from .admin import ElectionAdmin

__all__ = [
    'Storage',
    'StorageSession',
    'CandidateStore',
    'BallotStore',
    'UserStore',
    'HistoryStore',
    'bounded',
    'MemoryStorage',
    'VoteCastTransaction',
    'ResultsReader',
    'group_by_position',
    'ElectionAdmin',
]

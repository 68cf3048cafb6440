"""
Read-only views over candidates, ballots and users: vote status, ballot
listing, results with turnout, and the administrative statistics.
"""

import logging
from typing import Any, Dict, List

from ..shared.models import Candidate, VoteStatus, turnout_percentage
from .stores import Storage, bounded

logger = logging.getLogger(__name__)

HOURLY_BUCKETS = 24


def group_by_position(candidates: List[Candidate], projection=None) -> Dict[str, List[Any]]:
    """
    Group candidates by position, keeping their order within each group.

    Args:
        candidates: Candidates, already sorted
        projection: Optional callable applied to each candidate

    Returns:
        Mapping of position name to candidates (or projected values)
    """
    grouped: Dict[str, List[Any]] = {}
    for candidate in candidates:
        value = projection(candidate) if projection else candidate
        grouped.setdefault(candidate.position.value, []).append(value)
    return grouped


class ResultsReader:
    """Aggregated reads for the voter and administrator views."""

    def __init__(self, storage: Storage, timeout: float = 5.0):
        self.storage = storage
        self.timeout = timeout

    async def _call(self, awaitable):
        return await bounded(awaitable, self.timeout)

    async def get_vote_status(self, user_id: str) -> VoteStatus:
        async with self.storage.session() as session:
            user = await self._call(session.users.get(user_id))
        return VoteStatus(has_voted=user.has_voted, voted_at=user.voted_at)

    async def get_candidates(self) -> Dict[str, List[Candidate]]:
        """Active candidates grouped by position, alphabetical within a position."""
        async with self.storage.session() as session:
            candidates = await self._call(session.candidates.list_active())
        return group_by_position(candidates)

    async def get_results(self) -> Dict[str, Any]:
        """
        Election results.

        Returns:
            Dictionary with results_by_position (ordered by vote count within
            each position) and totals (total_votes, total_users, turnout_percent)
        """
        async with self.storage.session() as session:
            results = await self._call(session.candidates.list_results())
            total_votes = await self._call(session.ballots.count_all())
            total_users = await self._call(session.users.count_all())

        return {
            "results_by_position": group_by_position(
                results, lambda c: c.to_result_dict()
            ),
            "totals": {
                "total_votes": total_votes,
                "total_users": total_users,
                "turnout_percent": turnout_percentage(total_votes, total_users),
            },
        }

    async def get_statistics(self) -> Dict[str, Any]:
        """Overview, hourly vote rate, per-position totals and turnout breakdowns."""
        async with self.storage.session() as session:
            total_users = await self._call(session.users.count_all())
            users_voted = await self._call(session.users.count_voted())
            total_votes = await self._call(session.ballots.count_all())
            total_candidates = await self._call(session.candidates.count_active())
            per_hour = await self._call(session.ballots.aggregate_by_hour(HOURLY_BUCKETS))
            results = await self._call(session.candidates.list_results())
            departments = await self._call(session.users.turnout_by("department"))
            years = await self._call(session.users.turnout_by("year"))

        candidates_by_position = []
        for position, candidates in group_by_position(results).items():
            candidates_by_position.append({
                "position": position,
                "candidates": [
                    {"name": c.name, "vote_count": c.vote_count} for c in candidates
                ],
                "total_votes": sum(c.vote_count for c in candidates),
            })

        return {
            "overview": {
                "total_users": total_users,
                "total_votes": total_votes,
                "total_candidates": total_candidates,
                "users_voted": users_voted,
                "turnout_percent": turnout_percentage(total_votes, total_users),
            },
            "votes_per_hour": [{"hour": h.hour, "count": h.count} for h in per_hour],
            "candidates_by_position": candidates_by_position,
            "department_stats": [
                {
                    "department": g.group,
                    "total_students": g.total,
                    "voted_students": g.voted,
                    "turnout_percent": g.percentage,
                }
                for g in departments
            ],
            "year_stats": [
                {
                    "year": g.group,
                    "total_students": g.total,
                    "voted_students": g.voted,
                    "turnout_percent": g.percentage,
                }
                for g in years
            ],
        }

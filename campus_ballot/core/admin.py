"""
Election administration: candidate management, reset, reconciliation.

A reset archives a ResetRecord (ballot count and per-candidate tallies) in the
append-only history before clearing ballots, counters and voted flags.
"""

import logging
from typing import Any, Dict, List, Optional

from ..shared.models import Candidate, Position, ResetRecord, User, DEFAULT_PHOTO_URL
from .stores import Storage, bounded

logger = logging.getLogger(__name__)


class ElectionAdmin:
    """Administrative operations over a Storage."""

    def __init__(self, storage: Storage, timeout: float = 5.0):
        self.storage = storage
        self.timeout = timeout

    async def _call(self, awaitable):
        return await bounded(awaitable, self.timeout)

    async def add_candidate(
        self,
        name: str,
        position: Position,
        department: str,
        year: int,
        manifesto: str,
        photo_url: Optional[str] = None,
    ) -> Candidate:
        candidate = Candidate(
            name=name,
            position=Position(position),
            department=department,
            year=year,
            manifesto=manifesto,
            photo_url=photo_url or DEFAULT_PHOTO_URL,
        )
        async with self.storage.session() as session:
            created = await self._call(session.candidates.add(candidate))
        logger.info(f"Candidate added: id={created.id}, position={created.position.value}")
        return created

    async def update_candidate(self, candidate_id: str, fields: Dict[str, Any]) -> Candidate:
        """Update a candidate. A vote_count in fields is dropped."""
        fields = dict(fields)
        if fields.pop("vote_count", None) is not None:
            logger.warning(f"Ignored vote_count in update of candidate {candidate_id}")
        async with self.storage.session() as session:
            return await self._call(session.candidates.update(candidate_id, fields))

    async def deactivate_candidate(self, candidate_id: str) -> Candidate:
        """Soft delete: the candidate keeps its votes but leaves ballots and results."""
        async with self.storage.session() as session:
            candidate = await self._call(
                session.candidates.update(candidate_id, {"is_active": False})
            )
        logger.info(f"Candidate deactivated: id={candidate_id}")
        return candidate

    async def list_candidates(self) -> List[Candidate]:
        async with self.storage.session() as session:
            return await self._call(session.candidates.list_all())

    async def list_users(self) -> List[User]:
        async with self.storage.session() as session:
            return await self._call(session.users.list_all())

    async def reset_election(self, reset_by: Optional[str] = None) -> ResetRecord:
        """
        Archive the current tallies, then clear every ballot, zero every
        counter and return every user to not-voted.

        Runs in an exclusive session so that no cast commits a ballot whose
        counters the reset would then zero.
        """
        async with self.storage.exclusive_session() as session:
            candidates = await self._call(session.candidates.list_all())
            total_ballots = await self._call(session.ballots.count_all())
            record = ResetRecord(
                reset_by=reset_by,
                total_ballots=total_ballots,
                tallies=[
                    {
                        "candidate_id": c.id,
                        "name": c.name,
                        "position": c.position.value,
                        "vote_count": c.vote_count,
                    }
                    for c in candidates
                ],
            )
            await self._call(session.history.append(record))
            await self._call(session.ballots.delete_all())
            await self._call(session.candidates.reset_counts())
            await self._call(session.users.reset_voting_status())

        logger.warning(
            f"Election reset by {reset_by}: {total_ballots} ballots cleared, "
            f"snapshot {record.id} archived"
        )
        return record

    async def history(self) -> List[ResetRecord]:
        async with self.storage.session() as session:
            return await self._call(session.history.list_all())

    async def verify_tallies(self) -> List[Dict[str, Any]]:
        """
        Compare every counter with the ballots.

        Returns:
            One entry per candidate whose vote_count differs from the number
            of ballot selections naming it; empty when tallies are consistent
        """
        async with self.storage.session() as session:
            counts = await self._call(session.ballots.tally())
            candidates = await self._call(session.candidates.list_all())

        return [
            {
                "candidate_id": c.id,
                "name": c.name,
                "vote_count": c.vote_count,
                "ballot_count": counts.get(c.id, 0),
            }
            for c in candidates
            if c.vote_count != counts.get(c.id, 0)
        ]

    async def reconcile(self) -> Dict[str, int]:
        """Rebuild counters and voted flags from the ballots."""
        outcome = await self._call(self.storage.reconcile_tallies())
        logger.info(
            f"Reconciliation complete: {outcome['candidates_corrected']} counters corrected, "
            f"{outcome['users_flagged']} users flagged"
        )
        return outcome

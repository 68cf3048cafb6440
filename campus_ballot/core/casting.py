"""
Vote casting: validate one ballot submission and apply it.

Checks run in this order, and no side effect happens unless all of them pass:

1. user already flagged as voted           -> AlreadyVoted
2. a ballot already exists for the user    -> DuplicateBallot
3. two selections declare the same position -> DuplicatePosition
4. a candidate is unknown or inactive      -> InvalidCandidate
5. a candidate runs for another position   -> PositionMismatch

Checks 1 and 2 are independent guards: the flag is cheap but can lag behind a
racing cast, the ballot lookup is authoritative. The ballot store's unique
constraint still closes the window between check 2 and the insert.

Applying a cast creates the ballot, increments each selected candidate and
flags the user. On a transactional backend these run inside one transaction.
Otherwise the ballot insert is the commit point and the remaining writes are
retried a bounded number of times; whatever is still pending after that is
left for reconcile_tallies.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from ..shared.errors import (
    AlreadyVoted,
    DuplicateBallot,
    DuplicatePosition,
    InvalidCandidate,
    PositionMismatch,
    StorageUnavailable,
)
from ..shared.models import Ballot, CastReceipt, Position, Selection, utcnow
from .stores import Storage, StorageSession, bounded

logger = logging.getLogger(__name__)


class VoteCastTransaction:
    """Validates and applies ballot submissions against a Storage."""

    def __init__(
        self,
        storage: Storage,
        timeout: float = 5.0,
        follow_up_attempts: int = 3,
        retry_delay: float = 0.5,
        clock: Callable = utcnow,
    ):
        """
        Args:
            storage: Backend holding candidates, ballots and users
            timeout: Seconds allowed for each store operation
            follow_up_attempts: Tries for post-commit writes on a
                non-transactional backend
            retry_delay: Seconds between those tries
            clock: Source of ballot timestamps
        """
        self.storage = storage
        self.timeout = timeout
        self.follow_up_attempts = max(1, follow_up_attempts)
        self.retry_delay = retry_delay
        self.clock = clock

    async def _call(self, awaitable):
        return await bounded(awaitable, self.timeout)

    async def cast(
        self,
        user_id: str,
        selections: Sequence[Selection],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CastReceipt:
        """
        Cast a ballot for a user.

        Args:
            user_id: The authenticated user
            selections: Ordered (position, candidate) choices, at least one
            ip_address: Origin address, kept for audit
            user_agent: Client agent string, kept for audit

        Returns:
            CastReceipt with the ballot id and its creation timestamp

        Raises:
            AlreadyVoted, DuplicateBallot, DuplicatePosition, InvalidCandidate,
            PositionMismatch, NotFound, StorageUnavailable
        """
        if not selections:
            raise ValueError("At least one vote is required")
        selections = [
            Selection(position=Position(s.position), candidate_id=s.candidate_id)
            for s in selections
        ]

        async with self.storage.session() as session:
            await self._validate(session, user_id, selections)

            ballot = Ballot(
                user_id=user_id,
                selections=tuple(selections),
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=self.clock(),
            )
            created = await self._call(session.ballots.create(ballot))
            await self._apply_after_commit(session, created)

        logger.info(
            f"Ballot cast: ballot={created.id}, user={user_id}, "
            f"selections={len(selections)}"
        )
        return CastReceipt(ballot_id=created.id, timestamp=created.created_at)

    async def _validate(
        self,
        session: StorageSession,
        user_id: str,
        selections: List[Selection],
    ) -> None:
        user = await self._call(session.users.get(user_id))
        if user.has_voted:
            raise AlreadyVoted()

        if await self._call(session.ballots.exists(user_id)):
            logger.warning(f"Ballot exists for user {user_id} whose voted flag is unset")
            raise DuplicateBallot()

        positions = [s.position for s in selections]
        if len(set(positions)) < len(positions):
            raise DuplicatePosition()

        requested = list(dict.fromkeys(s.candidate_id for s in selections))
        candidates = await self._call(session.candidates.find_active_by_ids(requested))
        if len(candidates) != len(requested):
            raise InvalidCandidate()

        by_id = {c.id: c for c in candidates}
        for selection in selections:
            if by_id[selection.candidate_id].position != selection.position:
                raise PositionMismatch()

    async def _apply_after_commit(self, session: StorageSession, ballot: Ballot) -> None:
        """Increment the selected candidates and flag the user."""
        pending = [s.candidate_id for s in ballot.selections]
        flagged = False

        for attempt in range(1, self.follow_up_attempts + 1):
            try:
                while pending:
                    await self._call(session.candidates.increment_votes(pending[0]))
                    pending.pop(0)
                if not flagged:
                    await self._call(session.users.mark_voted(ballot.user_id, ballot.created_at))
                    flagged = True
                return

            except StorageUnavailable as e:
                if self.storage.transactional:
                    raise
                if attempt == self.follow_up_attempts:
                    logger.error(
                        f"Ballot {ballot.id} committed with {len(pending)} counter "
                        f"increment(s) and flagged={flagged} after {attempt} attempts: {e}. "
                        f"Run reconcile_tallies to repair."
                    )
                    return
                logger.warning(
                    f"Follow-up write for ballot {ballot.id} failed "
                    f"(attempt {attempt}/{self.follow_up_attempts}): {e}"
                )
                await asyncio.sleep(self.retry_delay)

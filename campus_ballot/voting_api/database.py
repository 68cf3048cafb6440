"""PostgreSQL storage backend built on an asyncpg connection pool."""
import asyncio
import functools
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import asyncpg

from ..core.stores import (
    CANDIDATE_UPDATABLE_FIELDS,
    BallotStore,
    CandidateStore,
    HistoryStore,
    Storage,
    StorageSession,
    UserStore,
    validate_turnout_attribute,
)
from ..shared.errors import DuplicateBallot, NotFound, StorageUnavailable, UserExists
from ..shared.models import (
    Ballot,
    Candidate,
    HourlyCount,
    Position,
    ResetRecord,
    Selection,
    TurnoutGroup,
    User,
)
from .config import settings

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    student_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    department TEXT NOT NULL,
    year SMALLINT NOT NULL CHECK (year BETWEEN 1 AND 4),
    password_hash TEXT NOT NULL,
    has_voted BOOLEAN NOT NULL DEFAULT FALSE,
    voted_at TIMESTAMPTZ,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS candidates (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    position TEXT NOT NULL
        CHECK (position IN ('President', 'Vice President', 'Secretary', 'Treasurer')),
    department TEXT NOT NULL,
    year SMALLINT NOT NULL CHECK (year BETWEEN 1 AND 4),
    manifesto VARCHAR(500) NOT NULL,
    photo_url TEXT NOT NULL,
    vote_count INTEGER NOT NULL DEFAULT 0 CHECK (vote_count >= 0),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_candidates_position_active
    ON candidates (position, is_active);

CREATE TABLE IF NOT EXISTS ballots (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE REFERENCES users (id),
    ip_address TEXT,
    user_agent TEXT,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ballots_created_at ON ballots (created_at DESC);

CREATE TABLE IF NOT EXISTS ballot_selections (
    ballot_id TEXT NOT NULL REFERENCES ballots (id) ON DELETE CASCADE,
    ordinal SMALLINT NOT NULL,
    position TEXT NOT NULL,
    candidate_id TEXT NOT NULL REFERENCES candidates (id),
    PRIMARY KEY (ballot_id, ordinal),
    UNIQUE (ballot_id, position)
);
CREATE INDEX IF NOT EXISTS idx_ballot_selections_candidate
    ON ballot_selections (candidate_id);

CREATE TABLE IF NOT EXISTS election_resets (
    id TEXT PRIMARY KEY,
    reset_at TIMESTAMPTZ NOT NULL,
    reset_by TEXT,
    total_ballots INTEGER NOT NULL,
    tallies JSONB NOT NULL
);

CREATE OR REPLACE FUNCTION reject_ballot_update() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'ballots are immutable';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS ballots_immutable ON ballots;
CREATE TRIGGER ballots_immutable BEFORE UPDATE ON ballots
    FOR EACH ROW EXECUTE FUNCTION reject_ballot_update();
"""

# Driver failures that mean the database cannot currently serve the request.
UNAVAILABLE_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
    asyncpg.InterfaceError,
    asyncpg.QueryCanceledError,
    ConnectionError,
    asyncio.TimeoutError,
)


def translate_errors(func):
    """Turn driver connectivity failures into StorageUnavailable."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"PostgreSQL unavailable during {func.__qualname__}: {e}")
            raise StorageUnavailable() from e
    return wrapper


def _rows_affected(status: str) -> int:
    """Parse the row count from a command status such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _candidate_from_row(row) -> Candidate:
    return Candidate(
        id=row["id"],
        name=row["name"],
        position=Position(row["position"]),
        department=row["department"],
        year=row["year"],
        manifesto=row["manifesto"],
        photo_url=row["photo_url"],
        vote_count=row["vote_count"],
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


def _user_from_row(row) -> User:
    return User(
        id=row["id"],
        student_id=row["student_id"],
        name=row["name"],
        email=row["email"],
        department=row["department"],
        year=row["year"],
        password_hash=row["password_hash"],
        has_voted=row["has_voted"],
        voted_at=row["voted_at"],
        is_admin=row["is_admin"],
        created_at=row["created_at"],
    )


class PostgresCandidateStore(CandidateStore):

    RESULTS_ORDER = 'position COLLATE "C", vote_count DESC, name COLLATE "C", id'

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @translate_errors
    async def find_active_by_ids(self, ids: Iterable[str]) -> List[Candidate]:
        rows = await self.conn.fetch(
            "SELECT * FROM candidates WHERE id = ANY($1::text[]) AND is_active",
            list(ids),
        )
        return [_candidate_from_row(r) for r in rows]

    @translate_errors
    async def increment_votes(self, candidate_id: str) -> None:
        status = await self.conn.execute(
            "UPDATE candidates SET vote_count = vote_count + 1 WHERE id = $1",
            candidate_id,
        )
        if _rows_affected(status) == 0:
            raise NotFound(f"Candidate {candidate_id} not found")

    @translate_errors
    async def list_results(self) -> List[Candidate]:
        rows = await self.conn.fetch(
            f"SELECT * FROM candidates WHERE is_active ORDER BY {self.RESULTS_ORDER}"
        )
        return [_candidate_from_row(r) for r in rows]

    @translate_errors
    async def list_active(self) -> List[Candidate]:
        rows = await self.conn.fetch(
            'SELECT * FROM candidates WHERE is_active '
            'ORDER BY position COLLATE "C", name COLLATE "C", id'
        )
        return [_candidate_from_row(r) for r in rows]

    @translate_errors
    async def list_all(self) -> List[Candidate]:
        rows = await self.conn.fetch(f"SELECT * FROM candidates ORDER BY {self.RESULTS_ORDER}")
        return [_candidate_from_row(r) for r in rows]

    @translate_errors
    async def count_active(self) -> int:
        return await self.conn.fetchval("SELECT COUNT(*) FROM candidates WHERE is_active")

    @translate_errors
    async def get(self, candidate_id: str) -> Candidate:
        row = await self.conn.fetchrow("SELECT * FROM candidates WHERE id = $1", candidate_id)
        if row is None:
            raise NotFound(f"Candidate {candidate_id} not found")
        return _candidate_from_row(row)

    @translate_errors
    async def add(self, candidate: Candidate) -> Candidate:
        row = await self.conn.fetchrow(
            """
            INSERT INTO candidates
                (id, name, position, department, year, manifesto, photo_url,
                 vote_count, is_active, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, 0, $8, $9)
            RETURNING *
            """,
            candidate.id, candidate.name, candidate.position.value,
            candidate.department, candidate.year, candidate.manifesto,
            candidate.photo_url, candidate.is_active, candidate.created_at,
        )
        return _candidate_from_row(row)

    @translate_errors
    async def update(self, candidate_id: str, fields: Dict) -> Candidate:
        changes = {k: v for k, v in fields.items() if k in CANDIDATE_UPDATABLE_FIELDS}
        if "position" in changes:
            changes["position"] = Position(changes["position"]).value
        if not changes:
            return await self.get(candidate_id)

        assignments = ", ".join(
            f"{column} = ${index}" for index, column in enumerate(changes, start=2)
        )
        row = await self.conn.fetchrow(
            f"UPDATE candidates SET {assignments} WHERE id = $1 RETURNING *",
            candidate_id, *changes.values(),
        )
        if row is None:
            raise NotFound(f"Candidate {candidate_id} not found")
        return _candidate_from_row(row)

    @translate_errors
    async def reset_counts(self) -> None:
        await self.conn.execute("UPDATE candidates SET vote_count = 0")


class PostgresBallotStore(BallotStore):

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @translate_errors
    async def exists(self, user_id: str) -> bool:
        return await self.conn.fetchval(
            "SELECT EXISTS (SELECT 1 FROM ballots WHERE user_id = $1)", user_id
        )

    @translate_errors
    async def create(self, ballot: Ballot) -> Ballot:
        try:
            await self.conn.execute(
                """
                INSERT INTO ballots (id, user_id, ip_address, user_agent, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                ballot.id, ballot.user_id, ballot.ip_address,
                ballot.user_agent, ballot.created_at,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateBallot()

        await self.conn.executemany(
            """
            INSERT INTO ballot_selections (ballot_id, ordinal, position, candidate_id)
            VALUES ($1, $2, $3, $4)
            """,
            [
                (ballot.id, ordinal, s.position.value, s.candidate_id)
                for ordinal, s in enumerate(ballot.selections)
            ],
        )
        return ballot

    @translate_errors
    async def get_for_user(self, user_id: str) -> Optional[Ballot]:
        row = await self.conn.fetchrow("SELECT * FROM ballots WHERE user_id = $1", user_id)
        if row is None:
            return None
        selections = await self.conn.fetch(
            """
            SELECT position, candidate_id FROM ballot_selections
            WHERE ballot_id = $1 ORDER BY ordinal
            """,
            row["id"],
        )
        return Ballot(
            id=row["id"],
            user_id=row["user_id"],
            selections=tuple(
                Selection(position=Position(s["position"]), candidate_id=s["candidate_id"])
                for s in selections
            ),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            created_at=row["created_at"],
        )

    @translate_errors
    async def count_all(self) -> int:
        return await self.conn.fetchval("SELECT COUNT(*) FROM ballots")

    @translate_errors
    async def aggregate_by_hour(self, limit: int = 24) -> List[HourlyCount]:
        rows = await self.conn.fetch(
            """
            SELECT to_char(date_trunc('hour', created_at AT TIME ZONE 'UTC'),
                           'YYYY-MM-DD HH24:00') AS hour,
                   COUNT(*) AS count
            FROM ballots
            GROUP BY hour
            ORDER BY hour DESC
            LIMIT $1
            """,
            limit,
        )
        return [HourlyCount(hour=r["hour"], count=r["count"]) for r in rows]

    @translate_errors
    async def tally(self) -> Dict[str, int]:
        rows = await self.conn.fetch(
            "SELECT candidate_id, COUNT(*) AS n FROM ballot_selections GROUP BY candidate_id"
        )
        return {r["candidate_id"]: r["n"] for r in rows}

    @translate_errors
    async def delete_all(self) -> int:
        status = await self.conn.execute("DELETE FROM ballots")
        return _rows_affected(status)


class PostgresUserStore(UserStore):

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @translate_errors
    async def get(self, user_id: str) -> User:
        row = await self.conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        if row is None:
            raise NotFound(f"User {user_id} not found")
        return _user_from_row(row)

    @translate_errors
    async def get_by_student_id(self, student_id: str) -> Optional[User]:
        row = await self.conn.fetchrow("SELECT * FROM users WHERE student_id = $1", student_id)
        return _user_from_row(row) if row else None

    @translate_errors
    async def register(self, user: User) -> User:
        try:
            row = await self.conn.fetchrow(
                """
                INSERT INTO users
                    (id, student_id, name, email, department, year, password_hash,
                     has_voted, voted_at, is_admin, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, FALSE, NULL, $8, $9)
                RETURNING *
                """,
                user.id, user.student_id, user.name, user.email, user.department,
                user.year, user.password_hash, user.is_admin, user.created_at,
            )
        except asyncpg.UniqueViolationError:
            raise UserExists()
        return _user_from_row(row)

    @translate_errors
    async def mark_voted(self, user_id: str, voted_at: datetime) -> None:
        status = await self.conn.execute(
            "UPDATE users SET has_voted = TRUE, voted_at = $2 WHERE id = $1 AND NOT has_voted",
            user_id, voted_at,
        )
        if _rows_affected(status) == 0:
            exists = await self.conn.fetchval("SELECT 1 FROM users WHERE id = $1", user_id)
            if not exists:
                raise NotFound(f"User {user_id} not found")

    @translate_errors
    async def count_all(self) -> int:
        return await self.conn.fetchval("SELECT COUNT(*) FROM users")

    @translate_errors
    async def count_voted(self) -> int:
        return await self.conn.fetchval("SELECT COUNT(*) FROM users WHERE has_voted")

    @translate_errors
    async def turnout_by(self, attribute: str) -> List[TurnoutGroup]:
        validate_turnout_attribute(attribute)
        rows = await self.conn.fetch(
            f"""
            SELECT {attribute} AS grp,
                   COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE has_voted) AS voted
            FROM users
            GROUP BY {attribute}
            ORDER BY {attribute}
            """
        )
        return [TurnoutGroup(group=r["grp"], total=r["total"], voted=r["voted"]) for r in rows]

    @translate_errors
    async def list_all(self) -> List[User]:
        rows = await self.conn.fetch("SELECT * FROM users ORDER BY created_at DESC")
        return [_user_from_row(r) for r in rows]

    @translate_errors
    async def reset_voting_status(self) -> None:
        await self.conn.execute("UPDATE users SET has_voted = FALSE, voted_at = NULL")


class PostgresHistoryStore(HistoryStore):

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @translate_errors
    async def append(self, record: ResetRecord) -> ResetRecord:
        await self.conn.execute(
            """
            INSERT INTO election_resets (id, reset_at, reset_by, total_ballots, tallies)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            """,
            record.id, record.reset_at, record.reset_by,
            record.total_ballots, json.dumps(record.tallies),
        )
        return record

    @translate_errors
    async def list_all(self) -> List[ResetRecord]:
        rows = await self.conn.fetch("SELECT * FROM election_resets ORDER BY reset_at DESC")
        return [
            ResetRecord(
                id=r["id"],
                reset_at=r["reset_at"],
                reset_by=r["reset_by"],
                total_ballots=r["total_ballots"],
                tallies=json.loads(r["tallies"]),
            )
            for r in rows
        ]


class PostgresStorage(Storage):
    """Transactional storage: each session runs in one database transaction."""

    transactional = True

    def __init__(self, dsn: Optional[str] = None, timeout: Optional[float] = None):
        self.dsn = dsn or settings.postgres_dsn
        self.timeout = timeout or settings.STORAGE_TIMEOUT_SECONDS
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=self.timeout,
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                await conn.execute(SCHEMA)
                logger.info("PostgreSQL connection verified and schema ensured")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @asynccontextmanager
    async def _transaction(self):
        if self.pool is None:
            raise StorageUnavailable("Database pool is not initialized")
        try:
            async with self.pool.acquire(timeout=self.timeout) as conn:
                async with conn.transaction():
                    yield conn
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"PostgreSQL transaction failed: {e}")
            raise StorageUnavailable() from e

    @staticmethod
    def _bind(conn) -> StorageSession:
        return StorageSession(
            candidates=PostgresCandidateStore(conn),
            ballots=PostgresBallotStore(conn),
            users=PostgresUserStore(conn),
            history=PostgresHistoryStore(conn),
        )

    @asynccontextmanager
    async def session(self):
        async with self._transaction() as conn:
            yield self._bind(conn)

    @asynccontextmanager
    async def exclusive_session(self):
        async with self._transaction() as conn:
            # Waits for open casts to commit and blocks new ballot inserts.
            await conn.execute("LOCK TABLE ballots IN SHARE ROW EXCLUSIVE MODE")
            yield self._bind(conn)

    async def reconcile_tallies(self) -> Dict[str, int]:
        async with self._transaction() as conn:
            # Blocks concurrent ballot inserts until the recount commits.
            await conn.execute("LOCK TABLE ballots IN SHARE MODE")
            corrected = await conn.fetchval(
                """
                WITH counts AS (
                    SELECT candidate_id, COUNT(*)::int AS n
                    FROM ballot_selections GROUP BY candidate_id
                ), updated AS (
                    UPDATE candidates c
                    SET vote_count = COALESCE(counts.n, 0)
                    FROM candidates c2
                    LEFT JOIN counts ON counts.candidate_id = c2.id
                    WHERE c.id = c2.id AND c.vote_count <> COALESCE(counts.n, 0)
                    RETURNING c.id
                )
                SELECT COUNT(*) FROM updated
                """
            )
            flagged = await conn.fetchval(
                """
                WITH updated AS (
                    UPDATE users u
                    SET has_voted = TRUE, voted_at = b.created_at
                    FROM ballots b
                    WHERE b.user_id = u.id AND NOT u.has_voted
                    RETURNING u.id
                )
                SELECT COUNT(*) FROM updated
                """
            )
        return {"candidates_corrected": corrected, "users_flagged": flagged}

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

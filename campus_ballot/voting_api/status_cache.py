"""Redis set of users known to have voted, used as a fast-path pre-check."""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..shared.errors import StorageUnavailable

logger = logging.getLogger(__name__)

VOTED_USERS_KEY = "voted_users"


class VoterStatusCache:
    """
    Advisory cache in front of the authoritative user flag.

    A hit lets the API reject a repeat submission without running the cast.
    A miss, or any Redis failure, falls through to the full cast checks, so
    Redis errors on lookups and marks are logged and treated as a miss.
    A hit is only trusted when the stored user flag agrees with it.
    """

    def __init__(self, url: Optional[str]):
        self.url = url
        self.client: Optional[redis.Redis] = None

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def initialize(self):
        if not self.url:
            logger.info("Redis voter cache disabled")
            return
        self.client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )
        try:
            await self.client.ping()
            logger.info("Redis connection established")
        except RedisError as e:
            logger.warning(f"Redis unavailable at startup, continuing without cache hits: {e}")

    async def is_marked(self, user_id: str) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(await self.client.sismember(VOTED_USERS_KEY, user_id))
        except RedisError as e:
            logger.warning(f"Redis error checking voter {user_id}: {e}")
            return False

    async def mark(self, user_id: str) -> None:
        if not self.enabled:
            return
        try:
            await self.client.sadd(VOTED_USERS_KEY, user_id)
        except RedisError as e:
            logger.warning(f"Redis error marking voter {user_id}: {e}")

    async def unmark(self, user_id: str) -> None:
        if not self.enabled:
            return
        try:
            await self.client.srem(VOTED_USERS_KEY, user_id)
        except RedisError as e:
            logger.warning(f"Redis error unmarking voter {user_id}: {e}")

    async def clear(self) -> None:
        """Empty the set. Unlike the other writes, a failure here is raised."""
        if not self.enabled:
            return
        try:
            await self.client.delete(VOTED_USERS_KEY)
            logger.info("Voter cache cleared")
        except RedisError as e:
            logger.error(f"Redis error clearing voter cache: {e}")
            raise StorageUnavailable("Voter cache could not be cleared, please retry") from e

    async def check_health(self) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check error: {e}")
            return False

    async def close(self):
        if self.client:
            await self.client.close()

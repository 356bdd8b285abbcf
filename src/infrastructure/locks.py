"""
Redis-based distributed lock.

Used by the sweeper so that only one API process per cycle dispatches
due scheduled rides and expires orphaned matching rounds.

SET NX EX to acquire; a Lua script performs the check-and-delete on
release so a lock that already expired and was re-taken by another
process is never deleted by its former owner.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.errors import UnavailableError

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        try:
            return bool(
                await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
            )
        except RedisError as exc:
            raise UnavailableError(f"Could not reach lock {self.key}") from exc

    async def release(self) -> bool:
        """Release only if we still own the lock."""
        try:
            return bool(await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token))
        except RedisError as exc:
            # The TTL frees it eventually
            raise UnavailableError(f"Could not release lock {self.key}") from exc

    async def __aenter__(self):
        if not await self.acquire():
            raise RuntimeError(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()

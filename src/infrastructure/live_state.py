"""
Live-state cache.

A TTL-bound Redis projection of in-flight rides (``ride:state:{id}``)
read on the hot tracking path, e.g. to find the rider for every driver
location ping without touching the database.

The cache is an optimisation only.  Every method degrades to a miss on
Redis failure, and callers fall back to the Ride State Store.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.entities import Ride

logger = logging.getLogger(__name__)


class LiveStateCache:
    PREFIX = "ride:state:"

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 3600):
        self.redis = client
        self.ttl = ttl_seconds

    def _key(self, ride_id: str) -> str:
        return self.PREFIX + ride_id

    async def put(self, ride: Ride) -> None:
        try:
            await self.redis.setex(
                self._key(ride.id), self.ttl, json.dumps(ride.summary())
            )
        except RedisError as exc:
            logger.warning("Live state write failed for ride %s: %s", ride.id, exc)

    async def get(self, ride_id: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self.redis.get(self._key(ride_id))
        except RedisError as exc:
            logger.warning("Live state read failed for ride %s: %s", ride_id, exc)
            return None
        return json.loads(raw) if raw else None

    async def clear(self, ride_id: str) -> None:
        try:
            await self.redis.delete(self._key(ride_id))
        except RedisError as exc:
            logger.warning("Live state clear failed for ride %s: %s", ride_id, exc)

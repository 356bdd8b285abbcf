"""
Notification outbox.

Semantic events ("driver accepted", "trip completed", ...) are published
on the Redis pub/sub channel ``notifications`` as::

    {"recipient_id": ..., "recipient_type": "rider"|"driver",
     "event": ..., "data": {...}}

The push/email service subscribes and owns delivery.  Publishing is
best-effort: a failure is logged and the caller carries on.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.enums import Role

logger = logging.getLogger(__name__)

NOTIFICATIONS_CHANNEL = "notifications"


class NotificationOutbox:
    def __init__(self, client: aioredis.Redis, channel: str = NOTIFICATIONS_CHANNEL):
        self.redis = client
        self.channel = channel

    async def publish(
        self, recipient_id: str, recipient_type: Role, event: str, data: dict[str, Any]
    ) -> bool:
        message = json.dumps(
            {
                "recipient_id": recipient_id,
                "recipient_type": recipient_type.value,
                "event": event,
                "data": data,
            },
            default=str,
        )
        try:
            await self.redis.publish(self.channel, message)
        except RedisError as exc:
            logger.warning("Notification %s for %s dropped: %s", event, recipient_id, exc)
            return False
        return True

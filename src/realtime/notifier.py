"""
Notifier -- the single seam services use to tell people things.

Every call pushes to connected sessions through the Realtime Channel and,
for events addressed to a person, also drops a copy in the notification
outbox for the push/email service.  Neither path is transactional and
neither ever raises into the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from .channel import RealtimeChannel, ride_topic
from .sessions import session_key
from src.domain.enums import Role
from src.infrastructure.outbox import NotificationOutbox

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(
        self,
        channel: RealtimeChannel,
        outbox: Optional[NotificationOutbox] = None,
        timeout_seconds: float = 2.0,
    ):
        self.channel = channel
        self.outbox = outbox
        self.timeout = timeout_seconds

    async def to_rider(self, rider_id: str, event: str, data: dict[str, Any]) -> bool:
        return await self._to_person(Role.RIDER, rider_id, event, data)

    async def to_driver(self, driver_id: str, event: str, data: dict[str, Any]) -> bool:
        return await self._to_person(Role.DRIVER, driver_id, event, data)

    async def to_drivers(
        self, driver_ids: Iterable[str], event: str, data: dict[str, Any]
    ) -> None:
        await asyncio.gather(*(self.to_driver(d, event, data) for d in driver_ids))

    async def to_ride(
        self,
        ride_id: str,
        event: str,
        data: dict[str, Any],
        rider_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> int:
        """Publish on the ride topic.

        The named rider and driver are reached even when their sessions are
        not subscribed, receive it once when they are, and get an outbox copy.
        """
        people = [(Role.RIDER, rider_id), (Role.DRIVER, driver_id)]
        people = [(role, user_id) for role, user_id in people if user_id]
        delivered = await self.channel.publish(
            ride_topic(ride_id),
            event,
            data,
            also=[session_key(role, user_id) for role, user_id in people],
        )
        for role, user_id in people:
            await self._to_outbox(role, user_id, event, data)
        return delivered

    def join_ride(self, role: Role, user_id: str, ride_id: str) -> bool:
        return self.channel.subscribe_key(ride_topic(ride_id), session_key(role, user_id))

    def close_ride(self, ride_id: str) -> None:
        self.channel.close_topic(ride_topic(ride_id))

    async def _to_person(
        self, role: Role, user_id: str, event: str, data: dict[str, Any]
    ) -> bool:
        delivered = await self.channel.send(session_key(role, user_id), event, data)
        await self._to_outbox(role, user_id, event, data)
        return delivered

    async def _to_outbox(
        self, role: Role, user_id: str, event: str, data: dict[str, Any]
    ) -> None:
        if self.outbox is None:
            return
        try:
            await asyncio.wait_for(
                self.outbox.publish(user_id, role, event, data), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Outbox publish of %s for %s timed out", event, user_id)

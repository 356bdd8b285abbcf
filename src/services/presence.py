"""
Driver presence.

Keeps three views of a driver in step: the durable record (``is_online``
and last-known position), the Geo-Index presence record that matching
queries, and the connected realtime session.

A dropped connection is not an instant logout.  ``on_disconnect`` arms a
grace timer; if the driver has not reconnected when it fires, the driver
is taken offline and removed from the index.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.distance import valid_coordinates
from src.domain.entities import DriverProfile
from src.domain.enums import DriverStatus, Role
from src.domain.errors import ForbiddenError, NotFoundError, ValidationError
from src.infrastructure.geo_index import GeoIndex
from src.infrastructure.live_state import LiveStateCache
from src.infrastructure.repositories import DriverRepository
from src.infrastructure.ride_store import RideStore
from src.infrastructure.timeouts import bounded
from src.realtime.channel import ride_topic
from src.realtime.notifier import Notifier
from src.realtime.sessions import SessionRegistry, session_key

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PresenceService:
    def __init__(
        self,
        store: RideStore,
        geo: GeoIndex,
        live_state: LiveStateCache,
        notifier: Notifier,
        registry: SessionRegistry,
        *,
        grace_seconds: float = 30.0,
        io_timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.geo = geo
        self.live_state = live_state
        self.notifier = notifier
        self.registry = registry
        self.grace_seconds = grace_seconds
        self.io_timeout = io_timeout_seconds
        self._now = clock
        self._grace: dict[str, asyncio.Task] = {}

    async def _profile(self, driver_id: str) -> DriverProfile:
        profile = await self.store.run(lambda s: DriverRepository(s).get_by_id(driver_id))
        if profile is None:
            raise NotFoundError(f"Driver {driver_id} not found")
        return profile

    async def go_online(self, driver_id: str, lat: float, lng: float) -> DriverProfile:
        if not valid_coordinates(lat, lng):
            raise ValidationError(f"Invalid coordinates ({lat}, {lng})")
        profile = await self._profile(driver_id)
        if profile.status is not DriverStatus.APPROVED:
            raise ForbiddenError("Complete verification before going online")

        now = self._now()
        await self.store.run(
            lambda s: DriverRepository(s).set_online(driver_id, True, lat, lng, now),
            commit=True,
        )
        await bounded(self.geo.upsert(driver_id, lat, lng), self.io_timeout, "Geo-Index")
        logger.info("Driver %s online at (%.5f, %.5f)", driver_id, lat, lng)
        profile.is_online = True
        profile.current_lat, profile.current_lng = lat, lng
        return profile

    async def go_offline(self, driver_id: str) -> None:
        updated = await self.store.run(
            lambda s: DriverRepository(s).set_online(driver_id, False), commit=True
        )
        if not updated:
            raise NotFoundError(f"Driver {driver_id} not found")
        await bounded(self.geo.remove(driver_id), self.io_timeout, "Geo-Index")
        logger.info("Driver %s offline", driver_id)

    async def update_location(
        self,
        driver_id: str,
        lat: float,
        lng: float,
        ride_id: Optional[str] = None,
    ) -> None:
        if not valid_coordinates(lat, lng):
            raise ValidationError(f"Invalid coordinates ({lat}, {lng})")
        now = self._now()

        async def _save(session: AsyncSession) -> Optional[DriverProfile]:
            repo = DriverRepository(session)
            profile = await repo.get_by_id(driver_id)
            if profile is not None:
                await repo.set_location(driver_id, lat, lng, now)
            return profile

        profile = await self.store.run(_save, commit=True)
        if profile is None:
            raise NotFoundError(f"Driver {driver_id} not found")
        if profile.is_online:
            await bounded(self.geo.upsert(driver_id, lat, lng), self.io_timeout, "Geo-Index")
        logger.debug("Driver %s at (%.5f, %.5f)", driver_id, lat, lng)

        if ride_id:
            await self._forward_location(driver_id, ride_id, lat, lng, now)

    async def _forward_location(
        self, driver_id: str, ride_id: str, lat: float, lng: float, at: datetime
    ) -> None:
        state = await self.live_state.get(ride_id)
        if state is None:
            ride = await self.store.get(ride_id)
            state = ride.summary()
        if state.get("driver_id") != driver_id:
            raise ForbiddenError("Not your ride")
        await self.notifier.channel.publish(
            ride_topic(ride_id),
            "driver:location_update",
            {"ride_id": ride_id, "lat": lat, "lng": lng, "updated_at": at.isoformat()},
            also=[session_key(Role.RIDER, state["rider_id"])],
        )

    # ── Connection lifecycle ──────────────────────────────────────────

    def on_connect(self, driver_id: str) -> None:
        task = self._grace.pop(driver_id, None)
        if task is not None:
            task.cancel()
            logger.info("Driver %s reconnected within grace period", driver_id)

    def on_disconnect(self, driver_id: str) -> None:
        previous = self._grace.pop(driver_id, None)
        if previous is not None:
            previous.cancel()
        self._grace[driver_id] = asyncio.create_task(self._offline_after_grace(driver_id))

    async def _offline_after_grace(self, driver_id: str) -> None:
        await asyncio.sleep(self.grace_seconds)
        if self._grace.get(driver_id) is asyncio.current_task():
            del self._grace[driver_id]
        if session_key(Role.DRIVER, driver_id) in self.registry:
            return
        try:
            await self.go_offline(driver_id)
        except Exception:
            logger.exception("Could not take driver %s offline", driver_id)

    async def shutdown(self) -> None:
        tasks = list(self._grace.values())
        self._grace.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

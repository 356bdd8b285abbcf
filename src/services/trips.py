"""
Trip Lifecycle
==============

    ACCEPTED -> ARRIVED -> IN_PROGRESS -> COMPLETED
         \\          \\            \\
          +----------+------------+--> CANCELLED   (REQUESTED too)

Forward steps are driver-initiated and applied with the store's
compare-and-swap, conditioned on the ride being assigned to that driver,
so a duplicated "start trip" or "complete trip" event fails with
``ConflictError`` instead of applying twice.

Completion writes the earning row and bumps the driver's counters in the
same transaction as the status change: one COMPLETED transition, one
ledger entry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .matching_engine import MatchingEngine
from src.domain.entities import Identity, Ride
from src.domain.enums import (
    ACTIVE_STATUSES,
    TRACKING_STATUSES,
    CancelledBy,
    EarningStatus,
    RideStatus,
    Role,
)
from src.domain.errors import ConflictError, ForbiddenError
from src.infrastructure.live_state import LiveStateCache
from src.infrastructure.models import EarningModel
from src.infrastructure.repositories import DriverRepository, EarningRepository
from src.infrastructure.ride_store import RideStore
from src.realtime.notifier import Notifier

logger = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TripService:
    def __init__(
        self,
        store: RideStore,
        engine: MatchingEngine,
        live_state: LiveStateCache,
        notifier: Notifier,
        cancellation_fee: float = 5.00,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.engine = engine
        self.live_state = live_state
        self.notifier = notifier
        self.cancellation_fee = cancellation_fee
        self._now = clock

    async def arrive(self, driver_id: str, ride_id: str) -> Ride:
        ride = await self.store.transition(
            ride_id,
            {RideStatus.ACCEPTED},
            RideStatus.ARRIVED,
            {"arrived_at": self._now()},
            driver_id=driver_id,
        )
        logger.info("Ride %s: driver %s arrived", ride_id, driver_id)
        await self.live_state.put(ride)
        await self._tell_rider(ride, "ride:driver_arrived", {"ride_id": ride_id})
        return ride

    async def start(self, driver_id: str, ride_id: str) -> Ride:
        ride = await self.store.transition(
            ride_id,
            {RideStatus.ARRIVED},
            RideStatus.IN_PROGRESS,
            {"started_at": self._now()},
            driver_id=driver_id,
        )
        logger.info("Ride %s: trip started", ride_id)
        await self.live_state.put(ride)
        await self._tell_rider(ride, "ride:trip_started", {"ride_id": ride_id})
        return ride

    async def complete(self, driver_id: str, ride_id: str) -> Ride:
        async def _book_earning(session: AsyncSession, ride: Ride) -> None:
            fare = ride.fare
            await EarningRepository(session).create(
                EarningModel(
                    driver_id=driver_id,
                    ride_id=ride.id,
                    gross_amount=fare.total_fare,
                    platform_fee=fare.platform_fee,
                    net_amount=fare.driver_earnings,
                    tip=0.0,
                    status=EarningStatus.PENDING,
                )
            )
            await DriverRepository(session).record_completed_ride(
                driver_id, fare.driver_earnings
            )

        ride = await self.store.transition(
            ride_id,
            {RideStatus.IN_PROGRESS},
            RideStatus.COMPLETED,
            {"completed_at": self._now()},
            driver_id=driver_id,
            on_applied=_book_earning,
        )
        logger.info(
            "Ride %s completed; driver %s earns %.2f",
            ride_id,
            driver_id,
            ride.fare.driver_earnings,
        )
        await self.live_state.clear(ride_id)
        await self._tell_rider(
            ride,
            "ride:completed",
            {"ride_id": ride_id, "fare": ride.fare.to_dict()},
        )
        self.notifier.close_ride(ride_id)
        return ride

    async def cancel(
        self, identity: Identity, ride_id: str, reason: Optional[str] = None
    ) -> tuple[Ride, float]:
        """Cancel on behalf of *identity*; returns the ride and the fee charged.

        The rider pays ``cancellation_fee`` once a driver is assigned;
        driver cancellations are free.  The fee is decided from the status
        the compare-and-swap is conditioned on, so it always matches the
        state the ride was actually cancelled from.
        """
        for _ in range(CANCEL_ATTEMPTS):
            ride = await self.store.get(ride_id)
            if not ride.involves(identity):
                raise ForbiddenError("Not your ride")
            if ride.status not in ACTIVE_STATUSES:
                raise ConflictError(
                    f"Ride is {ride.status.value}; it can no longer be cancelled",
                    current_status=ride.status,
                    expected=ACTIVE_STATUSES,
                )

            by_rider = identity.role is Role.RIDER
            fee = (
                self.cancellation_fee
                if by_rider and ride.status in TRACKING_STATUSES
                else 0.0
            )
            try:
                cancelled = await self.store.transition(
                    ride_id,
                    {ride.status},
                    RideStatus.CANCELLED,
                    {
                        "cancelled_at": self._now(),
                        "cancelled_by": CancelledBy.RIDER if by_rider else CancelledBy.DRIVER,
                        "cancel_reason": reason,
                        "cancellation_fee": fee,
                    },
                    driver_id=None if by_rider else identity.id,
                )
            except ConflictError as exc:
                if exc.current_status in ACTIVE_STATUSES:
                    # Moved on (e.g. just accepted); re-price and retry
                    continue
                raise
            break
        else:
            raise ConflictError("Ride is changing state; try again")

        logger.info(
            "Ride %s cancelled by %s from %s (fee %.2f)",
            ride_id,
            identity.role.value,
            ride.status.value,
            fee,
        )
        await self.live_state.clear(ride_id)
        if ride.status is RideStatus.REQUESTED:
            await self.engine.revoke(ride_id)

        payload = {
            "ride_id": ride_id,
            "cancelled_by": cancelled.cancelled_by.value,
            "reason": reason,
            "cancellation_fee": fee,
        }
        await self.notifier.to_ride(
            ride_id,
            "ride:cancelled",
            payload,
            rider_id=cancelled.rider_id,
            driver_id=cancelled.driver_id,
        )
        self.notifier.close_ride(ride_id)
        return cancelled, fee

    async def _tell_rider(self, ride: Ride, event: str, data: dict) -> None:
        await self.notifier.to_ride(ride.id, event, data, rider_id=ride.rider_id)

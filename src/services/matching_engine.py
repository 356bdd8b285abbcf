"""
Matching Engine
===============

Runs the request -> broadcast -> accept -> assign protocol for each ride.

Per ride
--------
1. Query the Geo-Index around the pickup and keep the nearest ``fanout``
   eligible drivers (approved, online, offering the ride's class and not
   already on a trip).
2. No candidates: REQUESTED -> NO_DRIVERS right away.
3. Otherwise broadcast the offer and arm an expiry timer.
4. The first accept whose compare-and-swap REQUESTED -> ACCEPTED lands
   in the store wins.  Everyone else gets "ride no longer available".
5. Timer fires with the ride still REQUESTED: either open a wider round
   (``max_attempts > 1``) or finish with NO_DRIVERS.

Concurrency
-----------
Rounds are independent; the store is the only serialisation point for a
ride.  Timers never need to be cancelled for correctness: the callback
re-reads the ride and does nothing unless it is still REQUESTED, and the
NO_DRIVERS transition is itself a compare-and-swap, so duplicate expiries
(timer + decline + sweeper) move the ride at most once.

``_rounds`` is per-process bookkeeping (who was offered what, and when).
A ride whose round lived in a process that died is picked up by the
sweeper through ``expire``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from src.domain.entities import Candidate, Ride
from src.domain.enums import RideStatus, Role
from src.domain.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from src.domain.matching import (
    MatchingRound,
    build_offer,
    search_radius,
    select_candidates,
)
from src.infrastructure.geo_index import GeoIndex
from src.infrastructure.live_state import LiveStateCache
from src.infrastructure.repositories import DriverRepository
from src.infrastructure.ride_store import RideStore
from src.infrastructure.timeouts import bounded
from src.realtime.notifier import Notifier

logger = logging.getLogger(__name__)

# Proximity hits fetched per offered seat; ineligible drivers are
# filtered after the query.
OVERFETCH = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchingEngine:
    def __init__(
        self,
        store: RideStore,
        geo: GeoIndex,
        live_state: LiveStateCache,
        notifier: Notifier,
        *,
        fanout: int = 5,
        timeout_seconds: float = 30.0,
        radius_miles: float = 10.0,
        radius_step_miles: float = 5.0,
        max_attempts: int = 1,
        io_timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.geo = geo
        self.live_state = live_state
        self.notifier = notifier
        self.fanout = fanout
        self.timeout = timeout_seconds
        self.radius_miles = radius_miles
        self.radius_step_miles = radius_step_miles
        self.max_attempts = max(1, max_attempts)
        self.io_timeout = io_timeout_seconds
        self._clock = clock
        self._now = wall_clock
        self._rounds: dict[str, MatchingRound] = {}
        self._timers: dict[str, asyncio.Task] = {}

    # ── Public API ────────────────────────────────────────────────────

    def round_for(self, ride_id: str) -> Optional[MatchingRound]:
        return self._rounds.get(ride_id)

    async def dispatch(self, ride: Ride) -> Optional[MatchingRound]:
        """Open the first round for *ride*.

        Returns the open round, or ``None`` when nobody was eligible and
        the ride went straight to NO_DRIVERS.
        """
        if ride.status is not RideStatus.REQUESTED:
            raise ConflictError(
                f"Ride is {ride.status.value}; expected REQUESTED",
                current_status=ride.status,
                expected={RideStatus.REQUESTED},
            )
        return await self._open_round(ride, attempt=1)

    async def accept(self, ride_id: str, driver_id: str) -> Ride:
        """Try to win *ride_id* for *driver_id*.

        Raises ``ConflictError`` when another driver already won (or the
        ride left REQUESTED for any other reason).  Without a local round
        (offered by another process, or never offered) the driver must
        still be eligible for the ride and the ride must have been
        dispatched.
        """
        current = self._rounds.get(ride_id)
        if current is not None:
            if not current.was_offered(driver_id):
                raise ForbiddenError("No offer for this ride")
            if driver_id not in current.candidate_ids or (
                current.is_open and self._clock() > current.deadline
            ):
                raise ExpiredError("Offer expired")

        ride = await self.store.get(ride_id)
        if (
            current is None
            and ride.status is RideStatus.REQUESTED
            and ride.dispatched_at is None
        ):
            raise ForbiddenError("No offer for this ride")

        async def _driver_state(session):
            repo = DriverRepository(session)
            return await repo.get_by_id(driver_id), await repo.get_busy_ids([driver_id])

        profile, busy = await self.store.run(_driver_state)
        if profile is None:
            raise NotFoundError(f"Driver {driver_id} not found")
        if not profile.can_receive_offers(ride.service_class):
            raise ForbiddenError("Not eligible for this ride")
        if busy:
            raise ValidationError("Finish your current ride first")

        try:
            ride = await self.store.transition(
                ride_id,
                {RideStatus.REQUESTED},
                RideStatus.ACCEPTED,
                {"driver_id": driver_id, "accepted_at": self._now()},
            )
        except ConflictError as exc:
            logger.info(
                "Driver %s lost ride %s (now %s)",
                driver_id,
                ride_id,
                exc.current_status.value if exc.current_status else "?",
            )
            raise ConflictError(
                "Ride no longer available",
                current_status=exc.current_status,
                expected=exc.expected,
            ) from exc

        logger.info("Ride %s accepted by driver %s", ride_id, driver_id)
        losers: list[str] = []
        pickup_distance: Optional[float] = None
        if current is not None:
            current.resolve(driver_id)
            losers = current.losers()
            pickup_distance = current.distance_of(driver_id)
        self._forget(ride_id)

        await self.live_state.put(ride)
        self.notifier.join_ride(Role.DRIVER, driver_id, ride_id)
        await self._announce_acceptance(ride, pickup_distance)
        if losers:
            await self.notifier.to_drivers(
                losers, "ride:offer_revoked", {"ride_id": ride_id, "reason": "taken"}
            )
        return ride

    def may_accept(self, ride_id: str, driver_id: str) -> bool:
        """False when a local round for *ride_id* does not include *driver_id*."""
        current = self._rounds.get(ride_id)
        return current is None or (
            current.was_offered(driver_id) and driver_id in current.candidate_ids
        )

    async def decline(self, ride_id: str, driver_id: str) -> bool:
        """Record a decline; the round ends early once everyone declined.

        Returns ``False`` when there is no open round offering this ride
        to *driver_id*.
        """
        current = self._rounds.get(ride_id)
        if current is None or not current.is_open:
            return False
        if driver_id not in current.candidate_ids:
            return False
        logger.debug("Driver %s declined ride %s", driver_id, ride_id)
        if current.decline(driver_id):
            logger.info("All candidates declined ride %s", ride_id)
            await self.expire(ride_id, attempt=current.attempt)
        return True

    async def expire(self, ride_id: str, attempt: Optional[int] = None) -> bool:
        """Close the current round of *ride_id*.

        ``attempt`` identifies the round a timer was armed for; a timer
        outliving its round is ignored.  Returns ``True`` only for the call
        that moved the ride to NO_DRIVERS.
        """
        current = self._rounds.get(ride_id)
        if current is not None:
            if attempt is not None and current.attempt != attempt:
                return False
            if not current.is_open:
                return False
            # Claim the round before the first await so concurrent
            # expiries of the same round fall through above.
            current.expire()
            self._cancel_timer(ride_id)

        try:
            ride = await self.store.get(ride_id)
        except NotFoundError:
            self._forget(ride_id)
            return False
        except UnavailableError:
            # Leave the ride REQUESTED for the sweeper to retry
            self._forget(ride_id)
            raise

        if ride.status is not RideStatus.REQUESTED:
            self._forget(ride_id)
            return False

        if current is not None and current.attempt < self.max_attempts:
            opened = await self._open_round(
                ride, attempt=current.attempt + 1, previous=current
            )
            return opened is None

        self._forget(ride_id)
        return await self._finish_no_drivers(
            ride, current.candidate_ids if current else []
        )

    async def revoke(self, ride_id: str, reason: str = "cancelled") -> None:
        """Withdraw outstanding offers (the rider cancelled during matching)."""
        current = self._rounds.get(ride_id)
        self._forget(ride_id)
        if current is None:
            return
        current.expire()
        await self.notifier.to_drivers(
            current.candidate_ids,
            "ride:offer_revoked",
            {"ride_id": ride_id, "reason": reason},
        )

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._rounds.clear()

    # ── Internals ─────────────────────────────────────────────────────

    async def _open_round(
        self,
        ride: Ride,
        attempt: int,
        previous: Optional[MatchingRound] = None,
    ) -> Optional[MatchingRound]:
        radius = search_radius(self.radius_miles, self.radius_step_miles, attempt)
        exclude = previous.offered if previous else set()
        # Stamped first so the sweeper can finish the ride if this round
        # never completes.
        try:
            await self.store.mark_dispatched(ride.id)
        except UnavailableError:
            logger.warning("Could not stamp dispatch time on ride %s", ride.id)
        try:
            candidates = await self._find_candidates(ride, radius, exclude)
        except UnavailableError as exc:
            logger.warning(
                "Candidate search for ride %s failed, treating as empty: %s",
                ride.id,
                exc,
            )
            candidates = []

        if previous is not None:
            await self.notifier.to_drivers(
                previous.candidate_ids, "ride:offer_expired", {"ride_id": ride.id}
            )

        if not candidates:
            self._forget(ride.id)
            await self._finish_no_drivers(ride, [])
            return None

        now = self._clock()
        if previous is None:
            current = MatchingRound(
                ride_id=ride.id,
                candidates=candidates,
                started_at=now,
                deadline=now + self.timeout,
                radius_miles=radius,
            )
        else:
            current = previous.next_attempt(
                candidates, now, now + self.timeout, radius
            )
        self._rounds[ride.id] = current
        self._timers[ride.id] = asyncio.create_task(
            self._expire_later(ride.id, current.attempt, self.timeout)
        )

        logger.info(
            "Round %d for ride %s: %d candidates within %.1f mi",
            current.attempt,
            ride.id,
            len(candidates),
            radius,
        )
        await asyncio.gather(
            *(
                self.notifier.to_driver(
                    c.driver_id, "ride:request", build_offer(ride, c, self.timeout)
                )
                for c in candidates
            )
        )
        return current

    async def _find_candidates(
        self, ride: Ride, radius_miles: float, exclude: Iterable[str]
    ) -> list[Candidate]:
        exclude = set(exclude)
        hits = await bounded(
            self.geo.query(
                ride.pickup.latitude,
                ride.pickup.longitude,
                radius_miles,
                self.fanout * OVERFETCH + len(exclude),
            ),
            self.io_timeout,
            "Geo-Index",
        )
        if not hits:
            return []
        ids = [h.driver_id for h in hits if h.driver_id not in exclude]

        async def _eligibility(session) -> set[str]:
            repo = DriverRepository(session)
            profiles = await repo.get_many(ids)
            busy = await repo.get_busy_ids(ids)
            return {
                p.id
                for p in profiles
                if p.can_receive_offers(ride.service_class) and p.id not in busy
            }

        eligible = await self.store.run(_eligibility)
        return select_candidates(hits, eligible.__contains__, self.fanout, exclude)

    async def _finish_no_drivers(self, ride: Ride, candidate_ids: list[str]) -> bool:
        try:
            await self.store.transition(
                ride.id,
                {RideStatus.REQUESTED},
                RideStatus.NO_DRIVERS,
                {"no_drivers_at": self._now()},
            )
        except ConflictError:
            # Accepted or cancelled in the meantime
            return False

        logger.info("Ride %s: no drivers", ride.id)
        await self.live_state.clear(ride.id)
        if candidate_ids:
            await self.notifier.to_drivers(
                candidate_ids, "ride:offer_expired", {"ride_id": ride.id}
            )
        await self.notifier.to_rider(
            ride.rider_id,
            "ride:no_drivers",
            {"ride_id": ride.id, "message": "No drivers available. Please try again."},
        )
        self.notifier.close_ride(ride.id)
        return True

    async def _announce_acceptance(
        self, ride: Ride, pickup_distance: Optional[float]
    ) -> None:
        driver_id = ride.driver_id
        profile = await self.store.run(lambda s: DriverRepository(s).get_by_id(driver_id))
        location = None
        try:
            presence = await bounded(
                self.geo.position(driver_id), self.io_timeout, "Geo-Index"
            )
        except UnavailableError:
            presence = None
        if presence is not None:
            location = {"lat": presence.latitude, "lng": presence.longitude}

        await self.notifier.to_rider(
            ride.rider_id,
            "ride:accepted",
            {
                "ride_id": ride.id,
                "ride": ride.summary(),
                "driver": profile.public_view() if profile else None,
                "driver_location": location,
                "pickup_distance_miles": pickup_distance,
            },
        )

    async def _expire_later(self, ride_id: str, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(ride_id) is asyncio.current_task():
            del self._timers[ride_id]
        try:
            await self.expire(ride_id, attempt)
        except Exception:
            logger.exception("Expiry of ride %s (round %d) failed", ride_id, attempt)

    def _cancel_timer(self, ride_id: str) -> None:
        task = self._timers.pop(ride_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _forget(self, ride_id: str) -> None:
        self._rounds.pop(ride_id, None)
        self._cancel_timer(ride_id)

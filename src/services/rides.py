"""
Ride requests and queries
=========================

* ``estimate``      -- per-class quote plus nearby supply, no side effects
* ``request_ride``  -- price, persist, and (unless scheduled) run the first
                       matching round before returning
* ``get_ride_view`` -- ride + assigned driver + live driver position
* ``history``       -- paginated rides for the caller
* ``open_requests`` -- polling view of dispatched rides a driver may accept
* ``add_tip`` / ``rate`` -- post-trip extras on COMPLETED rides
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .matching_engine import MatchingEngine
from src.domain.distance import haversine_miles, valid_coordinates
from src.domain.entities import Candidate, DriverProfile, Identity, Location, Ride
from src.domain.enums import (
    TRACKING_STATUSES,
    DriverStatus,
    RideStatus,
    Role,
    ServiceClass,
)
from src.domain.errors import (
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from src.domain.pricing import PricingEngine
from src.infrastructure.geo_index import GeoIndex
from src.infrastructure.live_state import LiveStateCache
from src.infrastructure.models import RatingModel
from src.infrastructure.repositories import (
    DriverRepository,
    EarningRepository,
    PromoRepository,
    RatingRepository,
    RideRepository,
)
from src.infrastructure.ride_store import RideStore
from src.infrastructure.timeouts import bounded
from src.realtime.notifier import Notifier

logger = logging.getLogger(__name__)

MINUTES_PER_PICKUP_MILE = 3
SUPPLY_SAMPLE = 100
MAX_TIP = 100.0
REQUEST_WINDOW_SECONDS = 60
MAX_OPEN_REQUESTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RideRequest:
    pickup: Location
    dropoff: Location
    service_class: ServiceClass = ServiceClass.STANDARD
    stops: list[Location] = field(default_factory=list)
    promo_code: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    idempotency_key: Optional[str] = None


def _check_locations(*locations: Location) -> None:
    for loc in locations:
        if not valid_coordinates(loc.latitude, loc.longitude):
            raise ValidationError(
                f"Invalid coordinates ({loc.latitude}, {loc.longitude})"
            )


class RideService:
    def __init__(
        self,
        store: RideStore,
        geo: GeoIndex,
        engine: MatchingEngine,
        live_state: LiveStateCache,
        notifier: Notifier,
        pricing: PricingEngine,
        *,
        radius_miles: float = 10.0,
        io_timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.geo = geo
        self.engine = engine
        self.live_state = live_state
        self.notifier = notifier
        self.pricing = pricing
        self.radius_miles = radius_miles
        self.io_timeout = io_timeout_seconds
        self._now = clock

    # ── Supply ────────────────────────────────────────────────────────

    async def _nearby_supply(self, pickup: Location) -> list[tuple[Candidate, DriverProfile]]:
        """Eligible-looking drivers near *pickup*, nearest first."""
        hits = await bounded(
            self.geo.query(
                pickup.latitude, pickup.longitude, self.radius_miles, SUPPLY_SAMPLE
            ),
            self.io_timeout,
            "Geo-Index",
        )
        if not hits:
            return []

        async def _load(session: AsyncSession):
            repo = DriverRepository(session)
            ids = [h.driver_id for h in hits]
            return await repo.get_many(ids), await repo.get_busy_ids(ids)

        profiles, busy = await self.store.run(_load)
        by_id = {p.id: p for p in profiles if p.id not in busy}
        return [(h, by_id[h.driver_id]) for h in hits if h.driver_id in by_id]

    async def _surge(self, supply: Optional[list]) -> float:
        if supply is None:
            return 1.0
        active = await self.store.run(lambda s: RideRepository(s).count_requested())
        available = sum(1 for _, p in supply if p.is_online)
        return self.pricing.compute_surge(active, available)

    async def _supply_or_none(self, pickup: Location):
        try:
            return await self._nearby_supply(pickup)
        except UnavailableError as exc:
            logger.warning("Supply lookup failed, pricing without surge: %s", exc)
            return None

    # ── Operations ────────────────────────────────────────────────────

    async def estimate(
        self, pickup: Location, dropoff: Location, stops: list[Location] = ()
    ) -> dict[str, Any]:
        _check_locations(pickup, dropoff, *stops)
        trip = self.pricing.estimate_trip(pickup, dropoff, list(stops))
        supply = await self._supply_or_none(pickup)
        surge = await self._surge(supply)

        options = []
        for service_class in ServiceClass:
            eligible = [
                (c, p) for c, p in supply or [] if p.can_receive_offers(service_class)
            ]
            eta = (
                max(1, math.ceil(eligible[0][0].distance_miles * MINUTES_PER_PICKUP_MILE))
                if eligible
                else None
            )
            fare = self.pricing.quote(
                trip.distance_miles, trip.duration_minutes, service_class, surge
            )
            options.append(
                {
                    "service_class": service_class.value,
                    "fare": fare.to_dict(),
                    "available_drivers": len(eligible),
                    "eta_minutes": eta,
                }
            )

        return {
            "distance_miles": round(trip.distance_miles, 2),
            "duration_minutes": trip.duration_minutes,
            "surge_multiplier": surge,
            "options": options,
        }

    async def request_ride(self, identity: Identity, request: RideRequest) -> Ride:
        if identity.role is not Role.RIDER:
            raise ForbiddenError("Only riders can request rides")
        _check_locations(request.pickup, request.dropoff, *request.stops)

        now = self._now()
        scheduled_for = request.scheduled_for
        if scheduled_for is not None:
            if scheduled_for.tzinfo is None:
                scheduled_for = scheduled_for.replace(tzinfo=timezone.utc)
            if scheduled_for <= now:
                raise ValidationError("Scheduled time must be in the future")

        if request.idempotency_key:
            existing = await self.store.run(
                lambda s: RideRepository(s).get_by_idempotency_key(
                    request.idempotency_key
                )
            )
            if existing:
                return existing

        trip = self.pricing.estimate_trip(request.pickup, request.dropoff, request.stops)
        surge = await self._surge(await self._supply_or_none(request.pickup))

        promo_code, discount = None, 0.0
        if request.promo_code:
            discount = await self._promo_discount(
                identity.id, request.promo_code, trip, request.service_class, surge
            )
            if discount > 0:
                promo_code = request.promo_code.upper()

        fare = self.pricing.quote(
            trip.distance_miles,
            trip.duration_minutes,
            request.service_class,
            surge,
            discount,
        )
        ride = Ride(
            rider_id=identity.id,
            pickup=request.pickup,
            dropoff=request.dropoff,
            stops=list(request.stops),
            service_class=request.service_class,
            fare=fare,
            distance_miles=trip.distance_miles,
            duration_minutes=trip.duration_minutes,
            promo_code=promo_code,
            is_scheduled=scheduled_for is not None,
            scheduled_for=scheduled_for,
            idempotency_key=request.idempotency_key,
            requested_at=now,
        )
        created = await self.store.create(ride)
        if created.id != ride.id:
            # Lost an idempotency race; the other request owns dispatch
            return created

        await self.live_state.put(created)
        self.notifier.join_ride(Role.RIDER, identity.id, created.id)
        if created.is_scheduled:
            logger.info("Ride %s scheduled for %s", created.id, scheduled_for)
            return created

        await self.engine.dispatch(created)
        return await self.store.get(created.id)

    async def _promo_discount(
        self,
        rider_id: str,
        code: str,
        trip,
        service_class: ServiceClass,
        surge: float,
    ) -> float:
        async def _load(session: AsyncSession):
            repo = PromoRepository(session)
            promo = await repo.get(code)
            usages = await repo.count_usages(code, rider_id) if promo else 0
            return promo, usages

        promo, usages = await self.store.run(_load)
        if promo is None:
            logger.info("Unknown promo code %s ignored", code)
            return 0.0
        gross = self.pricing.gross_total(
            trip.distance_miles, trip.duration_minutes, service_class, surge
        )
        try:
            return promo.discount_for(gross, usages, self._now())
        except ValidationError as exc:
            logger.info("Promo %s not applied for %s: %s", code, rider_id, exc)
            return 0.0

    async def open_requests(self, driver_id: str) -> list[dict[str, Any]]:
        """Recently dispatched rides *driver_id* could accept right now.

        Polling fallback for drivers without a realtime session.  Offline
        or busy drivers get an empty list; unapproved drivers are refused.
        """

        async def _load(session: AsyncSession):
            repo = DriverRepository(session)
            return await repo.get_by_id(driver_id), await repo.get_busy_ids([driver_id])

        profile, busy = await self.store.run(_load)
        if profile is None:
            raise NotFoundError(f"Driver {driver_id} not found")
        if profile.status is not DriverStatus.APPROVED:
            raise ForbiddenError("Driver is not approved")
        if not profile.is_online or busy or not profile.service_types:
            return []

        since = self._now() - timedelta(seconds=REQUEST_WINDOW_SECONDS)
        rides = await self.store.run(
            lambda s: RideRepository(s).list_open_requests(
                profile.service_types, since, SUPPLY_SAMPLE
            )
        )

        requests = []
        for ride in rides:
            if not self.engine.may_accept(ride.id, driver_id):
                continue
            pickup_distance = None
            if profile.current_lat is not None and profile.current_lng is not None:
                pickup_distance = haversine_miles(
                    profile.current_lat,
                    profile.current_lng,
                    ride.pickup.latitude,
                    ride.pickup.longitude,
                )
                if pickup_distance > self.radius_miles:
                    continue
            item = ride.summary()
            item["driver_earnings"] = ride.fare.driver_earnings
            item["pickup_distance_miles"] = (
                round(pickup_distance, 2) if pickup_distance is not None else None
            )
            item["requested_at"] = ride.requested_at
            requests.append(item)
            if len(requests) == MAX_OPEN_REQUESTS:
                break
        return requests

    async def get_ride_view(self, identity: Identity, ride_id: str) -> dict[str, Any]:
        ride = await self.store.get(ride_id)
        if not ride.involves(identity):
            raise ForbiddenError("Not your ride")

        driver = None
        location = None
        if ride.driver_id:
            profile = await self.store.run(
                lambda s: DriverRepository(s).get_by_id(ride.driver_id)
            )
            driver = profile.public_view() if profile else None
            if ride.status in TRACKING_STATUSES:
                try:
                    presence = await bounded(
                        self.geo.position(ride.driver_id), self.io_timeout, "Geo-Index"
                    )
                except UnavailableError:
                    logger.warning("No live location for ride %s", ride_id)
                    presence = None
                if presence is not None:
                    location = {
                        "lat": presence.latitude,
                        "lng": presence.longitude,
                        "updated_at": presence.updated_at,
                    }
        return {"ride": ride, "driver": driver, "driver_location": location}

    async def history(
        self,
        identity: Identity,
        status: Optional[RideStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Ride], int]:
        if identity.role is Role.RIDER:
            filters = {"rider_id": identity.id}
        else:
            filters = {"driver_id": identity.id}
        return await self.store.run(
            lambda s: RideRepository(s).list_for(
                **filters, status=status, limit=limit, offset=offset
            )
        )

    async def add_tip(self, identity: Identity, ride_id: str, amount: float) -> Ride:
        if identity.role is not Role.RIDER:
            raise ForbiddenError("Only riders can tip")
        if not 0 <= amount <= MAX_TIP:
            raise ValidationError(f"Tip must be between 0 and {MAX_TIP:.0f}")
        ride = await self.store.get(ride_id)
        if not ride.involves(identity):
            raise ForbiddenError("Not your ride")
        if ride.status is not RideStatus.COMPLETED:
            raise ValidationError("Can only tip completed rides")

        async def _tip(session: AsyncSession) -> None:
            await RideRepository(session).set_tip(ride_id, amount)
            await EarningRepository(session).set_tip(ride_id, amount)

        await self.store.run(_tip, commit=True)
        logger.info("Tip of %.2f on ride %s", amount, ride_id)
        if ride.driver_id:
            await self.notifier.to_driver(
                ride.driver_id, "ride:tip_received", {"ride_id": ride_id, "amount": amount}
            )
        return await self.store.get(ride_id)

    async def rate(
        self,
        identity: Identity,
        ride_id: str,
        score: int,
        comment: Optional[str] = None,
    ) -> None:
        if not 1 <= score <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        ride = await self.store.get(ride_id)
        if not ride.involves(identity):
            raise ForbiddenError("Not your ride")
        if ride.status is not RideStatus.COMPLETED:
            raise ValidationError("Can only rate completed rides")
        to_id = ride.driver_id if identity.role is Role.RIDER else ride.rider_id

        async def _rate(session: AsyncSession) -> None:
            ratings = RatingRepository(session)
            if await ratings.exists(ride_id, identity.role):
                raise ValidationError("Ride already rated")
            await ratings.create(
                RatingModel(
                    ride_id=ride_id,
                    from_role=identity.role,
                    from_id=identity.id,
                    to_id=to_id,
                    score=score,
                    comment=comment,
                )
            )
            if identity.role is Role.RIDER:
                average = await ratings.average_for(to_id)
                if average is not None:
                    await DriverRepository(session).set_rating(to_id, round(average, 2))

        try:
            await self.store.run(_rate, commit=True)
        except IntegrityError as exc:
            raise ValidationError("Ride already rated") from exc

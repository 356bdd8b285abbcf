"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Rows leave this module as domain entities
(``Ride``, ``DriverProfile``, ``Earning``); ORM objects never do.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DriverModel,
    EarningModel,
    PromoCodeModel,
    PromoUsageModel,
    RatingModel,
    RideModel,
    RideStopModel,
)
from src.domain.entities import (
    DriverProfile,
    Earning,
    FareBreakdown,
    Location,
    Ride,
)
from src.domain.enums import (
    ACTIVE_STATUSES,
    TRACKING_STATUSES,
    DriverStatus,
    RideStatus,
    Role,
    ServiceClass,
)
from src.domain.pricing import Promo


# ── Mapping ───────────────────────────────────────────────────────────


def ride_from_model(row: RideModel) -> Ride:
    return Ride(
        id=row.id,
        rider_id=row.rider_id,
        driver_id=row.driver_id,
        pickup=Location(row.pickup_lat, row.pickup_lng, row.pickup_address),
        dropoff=Location(row.dropoff_lat, row.dropoff_lng, row.dropoff_address),
        stops=[Location(s.lat, s.lng, s.address) for s in row.stops],
        service_class=ServiceClass(row.service_class),
        status=RideStatus(row.status),
        fare=FareBreakdown(
            base_fare=row.base_fare,
            distance_fare=row.distance_fare,
            time_fare=row.time_fare,
            booking_fee=row.booking_fee,
            surge_multiplier=row.surge_multiplier,
            promo_discount=row.promo_discount,
            total_fare=row.total_fare,
            platform_fee=row.platform_fee,
            driver_earnings=row.driver_earnings,
            tip=row.tip,
        ),
        distance_miles=row.distance_miles,
        duration_minutes=row.duration_minutes,
        promo_code=row.promo_code,
        cancellation_fee=row.cancellation_fee,
        cancel_reason=row.cancel_reason,
        cancelled_by=row.cancelled_by,
        is_scheduled=row.is_scheduled,
        scheduled_for=row.scheduled_for,
        idempotency_key=row.idempotency_key,
        requested_at=row.requested_at,
        dispatched_at=row.dispatched_at,
        accepted_at=row.accepted_at,
        arrived_at=row.arrived_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        cancelled_at=row.cancelled_at,
        no_drivers_at=row.no_drivers_at,
    )


def ride_to_model(ride: Ride) -> RideModel:
    fare = ride.fare
    return RideModel(
        id=ride.id,
        rider_id=ride.rider_id,
        pickup_address=ride.pickup.address,
        pickup_lat=ride.pickup.latitude,
        pickup_lng=ride.pickup.longitude,
        dropoff_address=ride.dropoff.address,
        dropoff_lat=ride.dropoff.latitude,
        dropoff_lng=ride.dropoff.longitude,
        service_class=ride.service_class,
        status=ride.status,
        distance_miles=ride.distance_miles,
        duration_minutes=ride.duration_minutes,
        base_fare=fare.base_fare,
        distance_fare=fare.distance_fare,
        time_fare=fare.time_fare,
        booking_fee=fare.booking_fee,
        surge_multiplier=fare.surge_multiplier,
        promo_code=ride.promo_code,
        promo_discount=fare.promo_discount,
        total_fare=fare.total_fare,
        platform_fee=fare.platform_fee,
        driver_earnings=fare.driver_earnings,
        tip=fare.tip,
        is_scheduled=ride.is_scheduled,
        scheduled_for=ride.scheduled_for,
        idempotency_key=ride.idempotency_key,
        requested_at=ride.requested_at,
        stops=[
            RideStopModel(
                position=i, address=s.address, lat=s.latitude, lng=s.longitude
            )
            for i, s in enumerate(ride.stops, start=1)
        ],
    )


def driver_from_model(row: DriverModel) -> DriverProfile:
    return DriverProfile(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        vehicle_make=row.vehicle_make,
        vehicle_model=row.vehicle_model,
        vehicle_color=row.vehicle_color,
        license_plate=row.license_plate,
        status=DriverStatus(row.status),
        service_types=[ServiceClass(s) for s in (row.service_types or [])],
        is_online=row.is_online,
        current_lat=row.current_lat,
        current_lng=row.current_lng,
        rating=row.rating,
        total_rides=row.total_rides,
        total_earnings=row.total_earnings,
    )


def earning_from_model(row: EarningModel) -> Earning:
    return Earning(
        id=row.id,
        driver_id=row.driver_id,
        ride_id=row.ride_id,
        gross_amount=row.gross_amount,
        platform_fee=row.platform_fee,
        net_amount=row.net_amount,
        tip=row.tip,
        status=row.status,
        created_at=row.created_at,
    )


# ── Repositories ──────────────────────────────────────────────────────


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, ride: Ride) -> RideModel:
        row = ride_to_model(ride)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_row(self, ride_id: str) -> Optional[RideModel]:
        result = await self.session.execute(
            select(RideModel)
            .where(RideModel.id == ride_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, ride_id: str) -> Optional[Ride]:
        row = await self.get_row(ride_id)
        return ride_from_model(row) if row else None

    async def get_by_idempotency_key(self, key: str) -> Optional[Ride]:
        result = await self.session.execute(
            select(RideModel).where(RideModel.idempotency_key == key)
        )
        row = result.scalar_one_or_none()
        return ride_from_model(row) if row else None

    async def get_active_for_rider(self, rider_id: str) -> Optional[Ride]:
        result = await self.session.execute(
            select(RideModel).where(
                RideModel.rider_id == rider_id,
                RideModel.status.in_(list(ACTIVE_STATUSES)),
            )
        )
        row = result.scalars().first()
        return ride_from_model(row) if row else None

    async def get_status(self, ride_id: str) -> Optional[RideStatus]:
        result = await self.session.execute(
            select(RideModel.status).where(RideModel.id == ride_id)
        )
        status = result.scalar_one_or_none()
        return RideStatus(status) if status is not None else None

    async def conditional_update(
        self,
        ride_id: str,
        from_statuses: Iterable[RideStatus],
        to_status: RideStatus,
        values: dict,
        driver_id: Optional[str] = None,
    ) -> int:
        """UPDATE ... WHERE id = :id AND status IN (...).  Returns rowcount."""
        query = (
            update(RideModel)
            .where(
                RideModel.id == ride_id,
                RideModel.status.in_(list(from_statuses)),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if driver_id is not None:
            query = query.where(RideModel.driver_id == driver_id)
        result = await self.session.execute(query)
        return result.rowcount

    async def list_for(
        self,
        *,
        rider_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        status: Optional[RideStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Ride], int]:
        conditions = []
        if rider_id is not None:
            conditions.append(RideModel.rider_id == rider_id)
        if driver_id is not None:
            conditions.append(RideModel.driver_id == driver_id)
        if status is not None:
            conditions.append(RideModel.status == status)

        result = await self.session.execute(
            select(RideModel)
            .where(*conditions)
            .order_by(RideModel.requested_at.desc())
            .limit(limit)
            .offset(offset)
        )
        rides = [ride_from_model(r) for r in result.scalars().all()]
        total = await self.session.execute(
            select(func.count()).select_from(RideModel).where(*conditions)
        )
        return rides, total.scalar() or 0

    async def get_due_scheduled(self, now: datetime) -> list[Ride]:
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.status == RideStatus.REQUESTED,
                RideModel.is_scheduled.is_(True),
                RideModel.dispatched_at.is_(None),
                RideModel.scheduled_for <= now,
            )
            .order_by(RideModel.scheduled_for)
        )
        return [ride_from_model(r) for r in result.scalars().all()]

    async def get_stale_requested(self, cutoff: datetime) -> list[str]:
        """REQUESTED rides whose round should have closed before *cutoff*.

        Includes immediate rides whose first dispatch never got under way;
        scheduled ones are left to ``get_due_scheduled``.
        """
        result = await self.session.execute(
            select(RideModel.id).where(
                RideModel.status == RideStatus.REQUESTED,
                or_(
                    RideModel.dispatched_at < cutoff,
                    and_(
                        RideModel.dispatched_at.is_(None),
                        RideModel.is_scheduled.is_(False),
                        RideModel.requested_at < cutoff,
                    ),
                ),
            )
        )
        return list(result.scalars().all())

    async def mark_dispatched(self, ride_id: str, at: datetime) -> None:
        await self.session.execute(
            update(RideModel)
            .where(RideModel.id == ride_id, RideModel.status == RideStatus.REQUESTED)
            .values(dispatched_at=at)
        )

    async def list_open_requests(
        self, service_classes: Iterable[ServiceClass], since: datetime, limit: int
    ) -> list[Ride]:
        """REQUESTED rides of *service_classes* dispatched since *since*, newest first."""
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.status == RideStatus.REQUESTED,
                RideModel.service_class.in_(list(service_classes)),
                RideModel.dispatched_at >= since,
            )
            .order_by(RideModel.dispatched_at.desc())
            .limit(limit)
        )
        return [ride_from_model(r) for r in result.scalars().all()]

    async def count_requested(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(RideModel)
            .where(RideModel.status == RideStatus.REQUESTED)
        )
        return result.scalar() or 0

    async def set_tip(self, ride_id: str, amount: float) -> None:
        await self.session.execute(
            update(RideModel).where(RideModel.id == ride_id).values(tip=amount)
        )


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, driver_id: str) -> Optional[DriverProfile]:
        row = await self.session.get(DriverModel, driver_id)
        return driver_from_model(row) if row else None

    async def get_many(self, driver_ids: list[str]) -> list[DriverProfile]:
        if not driver_ids:
            return []
        result = await self.session.execute(
            select(DriverModel).where(DriverModel.id.in_(driver_ids))
        )
        return [driver_from_model(r) for r in result.scalars().all()]

    async def get_busy_ids(self, driver_ids: list[str]) -> set[str]:
        """Drivers among *driver_ids* currently assigned to an active ride."""
        if not driver_ids:
            return set()
        result = await self.session.execute(
            select(RideModel.driver_id).where(
                RideModel.driver_id.in_(driver_ids),
                RideModel.status.in_(list(TRACKING_STATUSES)),
            )
        )
        return set(result.scalars().all())

    async def set_online(
        self,
        driver_id: str,
        online: bool,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        at: Optional[datetime] = None,
    ) -> int:
        values: dict = {"is_online": online}
        if lat is not None and lng is not None:
            values.update(current_lat=lat, current_lng=lng, last_location_at=at)
        result = await self.session.execute(
            update(DriverModel).where(DriverModel.id == driver_id).values(**values)
        )
        return result.rowcount

    async def set_location(
        self, driver_id: str, lat: float, lng: float, at: datetime
    ) -> int:
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(current_lat=lat, current_lng=lng, last_location_at=at)
        )
        return result.rowcount

    async def record_completed_ride(self, driver_id: str, net: float) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(
                total_rides=DriverModel.total_rides + 1,
                total_earnings=DriverModel.total_earnings + net,
            )
        )

    async def set_rating(self, driver_id: str, rating: float) -> None:
        await self.session.execute(
            update(DriverModel).where(DriverModel.id == driver_id).values(rating=rating)
        )


class EarningRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, earning: EarningModel) -> EarningModel:
        self.session.add(earning)
        await self.session.flush()
        return earning

    async def get_for_ride(self, ride_id: str) -> Optional[Earning]:
        result = await self.session.execute(
            select(EarningModel).where(EarningModel.ride_id == ride_id)
        )
        row = result.scalar_one_or_none()
        return earning_from_model(row) if row else None

    async def count_for_ride(self, ride_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(EarningModel)
            .where(EarningModel.ride_id == ride_id)
        )
        return result.scalar() or 0

    async def set_tip(self, ride_id: str, amount: float) -> None:
        await self.session.execute(
            update(EarningModel).where(EarningModel.ride_id == ride_id).values(tip=amount)
        )

    async def list_for_driver(
        self, driver_id: str, since: datetime, limit: int = 50
    ) -> list[Earning]:
        result = await self.session.execute(
            select(EarningModel)
            .where(EarningModel.driver_id == driver_id, EarningModel.created_at >= since)
            .order_by(EarningModel.created_at.desc())
            .limit(limit)
        )
        return [earning_from_model(r) for r in result.scalars().all()]

    async def totals_for_driver(
        self, driver_id: str, since: datetime
    ) -> tuple[float, float, int]:
        """(net, tips, count) since *since*."""
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(EarningModel.net_amount), 0.0),
                func.coalesce(func.sum(EarningModel.tip), 0.0),
                func.count(EarningModel.id),
            ).where(EarningModel.driver_id == driver_id, EarningModel.created_at >= since)
        )
        net, tips, count = result.one()
        return float(net), float(tips), int(count)


class RatingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, ride_id: str, from_role: Role) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(RatingModel)
            .where(RatingModel.ride_id == ride_id, RatingModel.from_role == from_role)
        )
        return bool(result.scalar())

    async def create(self, rating: RatingModel) -> RatingModel:
        self.session.add(rating)
        await self.session.flush()
        return rating

    async def average_for(self, to_id: str) -> Optional[float]:
        result = await self.session.execute(
            select(func.avg(RatingModel.score)).where(
                RatingModel.to_id == to_id, RatingModel.from_role == Role.RIDER
            )
        )
        avg = result.scalar()
        return float(avg) if avg is not None else None


class PromoRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_row(self, code: str) -> Optional[PromoCodeModel]:
        result = await self.session.execute(
            select(PromoCodeModel).where(PromoCodeModel.code == code.upper())
        )
        return result.scalar_one_or_none()

    async def get(self, code: str) -> Optional[Promo]:
        row = await self.get_row(code)
        if row is None:
            return None
        return Promo(
            code=row.code,
            type=row.type,
            value=row.value,
            max_discount=row.max_discount,
            min_fare=row.min_fare,
            usage_limit=row.usage_limit,
            usage_count=row.usage_count,
            per_user_limit=row.per_user_limit,
            valid_until=row.valid_until,
            is_active=row.is_active,
        )

    async def count_usages(self, code: str, rider_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PromoUsageModel)
            .join(PromoCodeModel, PromoCodeModel.id == PromoUsageModel.promo_code_id)
            .where(PromoCodeModel.code == code.upper(), PromoUsageModel.rider_id == rider_id)
        )
        return result.scalar() or 0

    async def record_usage(self, code: str, rider_id: str, ride_id: str) -> None:
        row = await self.get_row(code)
        if row is None:
            return
        row.usage_count += 1
        self.session.add(
            PromoUsageModel(promo_code_id=row.id, rider_id=rider_id, ride_id=ride_id)
        )
        await self.session.flush()

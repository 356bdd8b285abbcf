"""
SQLAlchemy ORM models.

Tables
------
* ``drivers``       -- registered drivers, verification state, counters
* ``rides``         -- ride requests with their frozen fare breakdown
* ``ride_stops``    -- ordered intermediate stops
* ``earnings``      -- one ledger row per completed ride
* ``ratings``       -- post-trip ratings, one per side
* ``promo_codes`` / ``promo_usages`` -- promotions applied at request time

Indexes
-------
* **Partial unique** on ``rides.rider_id`` over active statuses: the
  database itself refuses a second active ride for the same rider.
* **Unique** on ``earnings.ride_id``: a ride can be paid out once.
* **B-Tree** on ``status``, ``driver_id``, ``rider_id`` and the scheduling
  columns used by the sweeper.

Positions live in the Geo-Index, not here; ``drivers.current_lat/lng``
is only the last-known point for profile screens.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from src.domain.enums import (
    CancelledBy,
    DriverStatus,
    EarningStatus,
    PromoType,
    RideStatus,
    Role,
    ServiceClass,
)

ACTIVE_RIDE_PREDICATE = text(
    "status IN ('REQUESTED', 'ACCEPTED', 'ARRIVED', 'IN_PROGRESS')"
)
ASSIGNED_RIDE_PREDICATE = text("status IN ('ACCEPTED', 'ARRIVED', 'IN_PROGRESS')")


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(64), primary_key=True)
    first_name = Column(String(80), nullable=False, default="")
    last_name = Column(String(80), nullable=False, default="")
    phone = Column(String(32), nullable=True)
    vehicle_make = Column(String(60), nullable=True)
    vehicle_model = Column(String(60), nullable=True)
    vehicle_color = Column(String(30), nullable=True)
    license_plate = Column(String(20), nullable=True)
    status = Column(Enum(DriverStatus), default=DriverStatus.PENDING, nullable=False)
    service_types = Column(JSON, nullable=False, default=list)
    is_online = Column(Boolean, default=False, nullable=False)
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    last_location_at = Column(DateTime(timezone=True), nullable=True)
    rating = Column(Float, default=5.0, nullable=False)
    total_rides = Column(Integer, default=0, nullable=False)
    total_earnings = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_drivers_online", "is_online", "status"),
    )


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(String(36), primary_key=True)
    rider_id = Column(String(64), nullable=False)
    driver_id = Column(String(64), ForeignKey("drivers.id"), nullable=True)

    pickup_address = Column(String(255), nullable=False, default="")
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_address = Column(String(255), nullable=False, default="")
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)

    service_class = Column(Enum(ServiceClass), nullable=False)
    status = Column(Enum(RideStatus), default=RideStatus.REQUESTED, nullable=False)

    distance_miles = Column(Float, nullable=False, default=0.0)
    duration_minutes = Column(Integer, nullable=False, default=0)

    # Fare breakdown, frozen at creation (tip excepted)
    base_fare = Column(Float, nullable=False, default=0.0)
    distance_fare = Column(Float, nullable=False, default=0.0)
    time_fare = Column(Float, nullable=False, default=0.0)
    booking_fee = Column(Float, nullable=False, default=0.0)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    promo_code = Column(String(32), nullable=True)
    promo_discount = Column(Float, nullable=False, default=0.0)
    total_fare = Column(Float, nullable=False, default=0.0)
    platform_fee = Column(Float, nullable=False, default=0.0)
    driver_earnings = Column(Float, nullable=False, default=0.0)
    tip = Column(Float, nullable=False, default=0.0)

    cancellation_fee = Column(Float, nullable=False, default=0.0)
    cancel_reason = Column(String(255), nullable=True)
    cancelled_by = Column(Enum(CancelledBy), nullable=True)

    is_scheduled = Column(Boolean, nullable=False, default=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    idempotency_key = Column(String(64), unique=True, nullable=True)

    requested_at = Column(DateTime(timezone=True), server_default=func.now())
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    no_drivers_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    stops = relationship(
        "RideStopModel",
        order_by="RideStopModel.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_rides_status", "status"),
        Index("idx_rides_rider", "rider_id"),
        Index("idx_rides_driver", "driver_id"),
        Index("idx_rides_scheduled", "is_scheduled", "scheduled_for"),
        Index(
            "uq_rides_rider_active",
            "rider_id",
            unique=True,
            postgresql_where=ACTIVE_RIDE_PREDICATE,
            sqlite_where=ACTIVE_RIDE_PREDICATE,
        ),
        Index(
            "uq_rides_driver_assigned",
            "driver_id",
            unique=True,
            postgresql_where=ASSIGNED_RIDE_PREDICATE,
            sqlite_where=ASSIGNED_RIDE_PREDICATE,
        ),
    )


class RideStopModel(Base):
    __tablename__ = "ride_stops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(String(36), ForeignKey("rides.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    address = Column(String(255), nullable=False, default="")
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)

    __table_args__ = (Index("idx_ride_stops_ride", "ride_id"),)


class EarningModel(Base):
    __tablename__ = "earnings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(String(64), ForeignKey("drivers.id"), nullable=False)
    ride_id = Column(String(36), ForeignKey("rides.id"), unique=True, nullable=False)
    gross_amount = Column(Float, nullable=False)
    platform_fee = Column(Float, nullable=False)
    net_amount = Column(Float, nullable=False)
    tip = Column(Float, nullable=False, default=0.0)
    status = Column(Enum(EarningStatus), default=EarningStatus.PENDING, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_earnings_driver", "driver_id", "created_at"),)


class RatingModel(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(String(36), ForeignKey("rides.id"), nullable=False)
    from_role = Column(Enum(Role), nullable=False)
    from_id = Column(String(64), nullable=False)
    to_id = Column(String(64), nullable=False)
    score = Column(Integer, nullable=False)
    comment = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("ride_id", "from_role", name="uq_ratings_ride_side"),
        Index("idx_ratings_to", "to_id"),
    )


class PromoCodeModel(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False)
    type = Column(Enum(PromoType), nullable=False)
    value = Column(Float, nullable=False)
    max_discount = Column(Float, nullable=True)
    min_fare = Column(Float, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    per_user_limit = Column(Integer, nullable=False, default=1)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class PromoUsageModel(Base):
    __tablename__ = "promo_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False)
    rider_id = Column(String(64), nullable=False)
    ride_id = Column(String(36), ForeignKey("rides.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_promo_usages_rider", "promo_code_id", "rider_id"),)

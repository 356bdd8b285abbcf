"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Ride``: enforces valid lifecycle transitions
  (REQUESTED -> ACCEPTED -> ARRIVED -> IN_PROGRESS -> COMPLETED, with
  CANCELLED / NO_DRIVERS side exits).
- ``Ride.summary`` is the payload shape shared by offers, realtime events
  and the live-state cache.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from .enums import (
    ACTIVE_STATUSES,
    RIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    CancelledBy,
    DriverStatus,
    EarningStatus,
    RideStatus,
    Role,
    ServiceClass,
)


class InvalidStateTransition(Exception):
    """Raised when a ride status change violates the state machine."""


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    address: str = ""

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "lat": self.latitude, "lng": self.longitude}


@dataclass(frozen=True)
class FareBreakdown:
    base_fare: float = 0.0
    distance_fare: float = 0.0
    time_fare: float = 0.0
    booking_fee: float = 0.0
    surge_multiplier: float = 1.0
    promo_discount: float = 0.0
    total_fare: float = 0.0
    platform_fee: float = 0.0
    driver_earnings: float = 0.0
    tip: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, as vouched for by the auth gateway."""

    id: str
    role: Role

    @property
    def channel_key(self) -> str:
        return f"{self.role.value}:{self.id}"


@dataclass(frozen=True)
class Candidate:
    driver_id: str
    distance_miles: float


@dataclass(frozen=True)
class DriverPresence:
    driver_id: str
    latitude: float
    longitude: float
    updated_at: float  # epoch seconds

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.updated_at <= ttl_seconds


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Ride:
    id: str = ""
    rider_id: str = ""
    driver_id: Optional[str] = None
    pickup: Location = field(default_factory=lambda: Location(0, 0))
    dropoff: Location = field(default_factory=lambda: Location(0, 0))
    stops: list[Location] = field(default_factory=list)
    service_class: ServiceClass = ServiceClass.STANDARD
    status: RideStatus = RideStatus.REQUESTED
    fare: FareBreakdown = field(default_factory=FareBreakdown)
    distance_miles: float = 0.0
    duration_minutes: int = 0
    promo_code: Optional[str] = None
    cancellation_fee: float = 0.0
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    is_scheduled: bool = False
    scheduled_for: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    requested_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_drivers_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return new_status in RIDE_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: RideStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        if not self.can_transition_to(new_status):
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def involves(self, identity: Identity) -> bool:
        if identity.role is Role.RIDER:
            return self.rider_id == identity.id
        return self.driver_id is not None and self.driver_id == identity.id

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rider_id": self.rider_id,
            "driver_id": self.driver_id,
            "status": self.status.value,
            "service_class": self.service_class.value,
            "pickup": self.pickup.to_dict(),
            "dropoff": self.dropoff.to_dict(),
            "stops": [s.to_dict() for s in self.stops],
            "distance_miles": round(self.distance_miles, 2),
            "duration_minutes": self.duration_minutes,
            "total_fare": self.fare.total_fare,
        }


@dataclass
class DriverProfile:
    id: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    vehicle_make: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    license_plate: Optional[str] = None
    status: DriverStatus = DriverStatus.PENDING
    service_types: list[ServiceClass] = field(default_factory=list)
    is_online: bool = False
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    rating: float = 5.0
    total_rides: int = 0
    total_earnings: float = 0.0

    @property
    def display_name(self) -> str:
        initial = f" {self.last_name[0]}." if self.last_name else ""
        return f"{self.first_name}{initial}"

    def can_receive_offers(self, service_class: ServiceClass) -> bool:
        return (
            self.status is DriverStatus.APPROVED
            and self.is_online
            and service_class in self.service_types
        )

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "phone": self.phone,
            "rating": self.rating,
            "vehicle": {
                "make": self.vehicle_make,
                "model": self.vehicle_model,
                "color": self.vehicle_color,
                "plate": self.license_plate,
            },
        }


@dataclass
class Earning:
    id: Optional[int] = None
    driver_id: str = ""
    ride_id: str = ""
    gross_amount: float = 0.0
    platform_fee: float = 0.0
    net_amount: float = 0.0
    tip: float = 0.0
    status: EarningStatus = EarningStatus.PENDING
    created_at: Optional[datetime] = None

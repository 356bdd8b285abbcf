"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from src.domain.entities import Location, Ride
from src.domain.enums import ServiceClass


# ── Shared ────────────────────────────────────────────────────────────


class Point(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = Field("", max_length=255)

    def to_location(self) -> Location:
        return Location(self.lat, self.lng, self.address)


# ── Requests ──────────────────────────────────────────────────────────


class EstimateRequest(BaseModel):
    pickup: Point
    dropoff: Point
    stops: list[Point] = Field(default_factory=list, max_length=5)


class RideCreateRequest(BaseModel):
    pickup: Point
    dropoff: Point
    stops: list[Point] = Field(default_factory=list, max_length=5)
    service_class: ServiceClass = ServiceClass.STANDARD
    promo_code: Optional[str] = Field(None, max_length=32)
    scheduled_for: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class TipRequest(BaseModel):
    amount: float = Field(..., ge=0, le=100)


class RateRequest(BaseModel):
    score: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    ride_id: Optional[str] = None


class DriverStatusRequest(BaseModel):
    online: bool
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


# ── Responses ─────────────────────────────────────────────────────────


class FareResponse(BaseModel):
    base_fare: float
    distance_fare: float
    time_fare: float
    booking_fee: float
    surge_multiplier: float
    promo_discount: float
    total_fare: float
    platform_fee: float
    driver_earnings: float
    tip: float


class RideResponse(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    status: str
    service_class: str
    pickup: dict[str, Any]
    dropoff: dict[str, Any]
    stops: list[dict[str, Any]] = []
    distance_miles: float
    duration_minutes: int
    fare: FareResponse
    promo_code: Optional[str] = None
    cancellation_fee: float = 0.0
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    is_scheduled: bool = False
    scheduled_for: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_ride(cls, ride: Ride) -> "RideResponse":
        return cls(
            id=ride.id,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            status=ride.status.value,
            service_class=ride.service_class.value,
            pickup=ride.pickup.to_dict(),
            dropoff=ride.dropoff.to_dict(),
            stops=[s.to_dict() for s in ride.stops],
            distance_miles=round(ride.distance_miles, 2),
            duration_minutes=ride.duration_minutes,
            fare=FareResponse(**ride.fare.to_dict()),
            promo_code=ride.promo_code,
            cancellation_fee=ride.cancellation_fee,
            cancelled_by=ride.cancelled_by.value if ride.cancelled_by else None,
            cancel_reason=ride.cancel_reason,
            is_scheduled=ride.is_scheduled,
            scheduled_for=ride.scheduled_for,
            requested_at=ride.requested_at,
            accepted_at=ride.accepted_at,
            arrived_at=ride.arrived_at,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
            cancelled_at=ride.cancelled_at,
        )


class RideDetailResponse(BaseModel):
    ride: RideResponse
    driver: Optional[dict[str, Any]] = None
    driver_location: Optional[dict[str, Any]] = None


class RideListResponse(BaseModel):
    rides: list[RideResponse]
    total: int
    limit: int
    offset: int


class CancelResponse(BaseModel):
    ride: RideResponse
    cancellation_fee: float


class EstimateOption(BaseModel):
    service_class: str
    fare: FareResponse
    available_drivers: int
    eta_minutes: Optional[int] = None


class EstimateResponse(BaseModel):
    distance_miles: float
    duration_minutes: int
    surge_multiplier: float
    options: list[EstimateOption]


class AckResponse(BaseModel):
    status: str = "ok"


class OnlineDriver(BaseModel):
    driver_id: str
    lat: float
    lng: float
    updated_at: float


class HealthResponse(BaseModel):
    status: str = "ok"
    connected_sessions: int = 0


class ErrorResponse(BaseModel):
    detail: str
    code: str
    current_status: Optional[str] = None


EarningsPeriod = Literal["today", "week", "month"]

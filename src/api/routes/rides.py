"""
Ride endpoints
==============

POST /api/v1/rides/estimate          -- fare quote per service class
POST /api/v1/rides                   -- request a ride (first matching round
                                        runs before the response)
GET  /api/v1/rides                   -- caller's ride history
GET  /api/v1/rides/{ride_id}         -- status, driver, live driver location
POST /api/v1/rides/{ride_id}/cancel  -- cancel; returns the fee applied
POST /api/v1/rides/{ride_id}/accept | decline | arrive | start | complete
POST /api/v1/rides/{ride_id}/tip | rate
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from src.api.dependencies import get_identity, get_services, require_driver, require_rider
from src.api.middleware import limiter
from src.api.schemas import (
    AckResponse,
    CancelRequest,
    CancelResponse,
    EstimateRequest,
    EstimateResponse,
    RateRequest,
    RideCreateRequest,
    RideDetailResponse,
    RideListResponse,
    RideResponse,
    TipRequest,
)
from src.domain.entities import Identity
from src.domain.enums import RideStatus
from src.services.container import Services
from src.services.rides import RideRequest

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "/estimate",
    response_model=EstimateResponse,
    summary="Estimate fares for every service class",
)
@limiter.limit("100/minute")
async def estimate(
    request: Request,
    body: EstimateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    return await services.rides.estimate(
        body.pickup.to_location(),
        body.dropoff.to_location(),
        [s.to_location() for s in body.stops],
    )


@router.post(
    "",
    status_code=201,
    response_model=RideResponse,
    summary="Request a ride",
    description=(
        "Prices the trip and dispatches it to nearby drivers.  When nobody "
        "is eligible the ride comes back already NO_DRIVERS.  Resubmitting "
        "with the same idempotency key returns the original ride."
    ),
)
@limiter.limit("30/minute")
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    identity: Identity = Depends(require_rider),
    services: Services = Depends(get_services),
):
    ride = await services.rides.request_ride(
        identity,
        RideRequest(
            pickup=body.pickup.to_location(),
            dropoff=body.dropoff.to_location(),
            service_class=body.service_class,
            stops=[s.to_location() for s in body.stops],
            promo_code=body.promo_code,
            scheduled_for=body.scheduled_for,
            idempotency_key=body.idempotency_key,
        ),
    )
    return RideResponse.from_ride(ride)


@router.get("", response_model=RideListResponse, summary="Ride history")
@limiter.limit("100/minute")
async def list_rides(
    request: Request,
    status: Optional[RideStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    rides, total = await services.rides.history(identity, status, limit, offset)
    return RideListResponse(
        rides=[RideResponse.from_ride(r) for r in rides],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{ride_id}",
    response_model=RideDetailResponse,
    summary="Get ride status, driver and live location",
)
@limiter.limit("100/minute")
async def get_ride(
    request: Request,
    ride_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    view = await services.rides.get_ride_view(identity, ride_id)
    return RideDetailResponse(
        ride=RideResponse.from_ride(view["ride"]),
        driver=view["driver"],
        driver_location=view["driver_location"],
    )


@router.post(
    "/{ride_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a ride",
    description=(
        "Either party may cancel an active ride.  A rider cancelling after "
        "a driver was assigned pays the flat cancellation fee."
    ),
)
@limiter.limit("100/minute")
async def cancel_ride(
    request: Request,
    ride_id: str,
    body: Optional[CancelRequest] = None,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    ride, fee = await services.trips.cancel(
        identity, ride_id, body.reason if body else None
    )
    return CancelResponse(ride=RideResponse.from_ride(ride), cancellation_fee=fee)


# ── Driver actions ────────────────────────────────────────────────────


@router.post("/{ride_id}/accept", response_model=RideResponse, summary="Accept an offer")
@limiter.limit("100/minute")
async def accept_ride(
    request: Request,
    ride_id: str,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    return RideResponse.from_ride(await services.engine.accept(ride_id, identity.id))


@router.post("/{ride_id}/decline", response_model=AckResponse, summary="Decline an offer")
@limiter.limit("100/minute")
async def decline_ride(
    request: Request,
    ride_id: str,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    await services.engine.decline(ride_id, identity.id)
    return AckResponse()


@router.post("/{ride_id}/arrive", response_model=RideResponse, summary="Arrived at pickup")
@limiter.limit("100/minute")
async def arrive(
    request: Request,
    ride_id: str,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    return RideResponse.from_ride(await services.trips.arrive(identity.id, ride_id))


@router.post("/{ride_id}/start", response_model=RideResponse, summary="Start the trip")
@limiter.limit("100/minute")
async def start_trip(
    request: Request,
    ride_id: str,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    return RideResponse.from_ride(await services.trips.start(identity.id, ride_id))


@router.post("/{ride_id}/complete", response_model=RideResponse, summary="Complete the trip")
@limiter.limit("100/minute")
async def complete_trip(
    request: Request,
    ride_id: str,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    return RideResponse.from_ride(await services.trips.complete(identity.id, ride_id))


# ── After the trip ────────────────────────────────────────────────────


@router.post("/{ride_id}/tip", response_model=RideResponse, summary="Tip the driver")
@limiter.limit("100/minute")
async def tip(
    request: Request,
    ride_id: str,
    body: TipRequest,
    identity: Identity = Depends(require_rider),
    services: Services = Depends(get_services),
):
    return RideResponse.from_ride(
        await services.rides.add_tip(identity, ride_id, body.amount)
    )


@router.post("/{ride_id}/rate", response_model=AckResponse, summary="Rate the other party")
@limiter.limit("100/minute")
async def rate(
    request: Request,
    ride_id: str,
    body: RateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    await services.rides.rate(identity, ride_id, body.score, body.comment)
    return AckResponse()

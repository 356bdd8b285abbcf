"""
Driver endpoints
================

POST /api/v1/drivers/location     -- position ping (fire-and-forget ack)
POST /api/v1/drivers/status       -- go online / offline
GET  /api/v1/drivers/me           -- own profile
GET  /api/v1/drivers/me/earnings  -- earnings summary for a period
GET  /api/v1/drivers/requests     -- recent ride requests open to this driver
"""

from typing import Any

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_services, require_driver
from src.api.middleware import limiter
from src.api.schemas import (
    AckResponse,
    DriverStatusRequest,
    EarningsPeriod,
    LocationUpdateRequest,
)
from src.domain.entities import Identity
from src.domain.errors import ValidationError
from src.services.container import Services

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("/location", response_model=AckResponse, summary="Report position")
@limiter.limit("600/minute")
async def update_location(
    request: Request,
    body: LocationUpdateRequest,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    await services.presence.update_location(identity.id, body.lat, body.lng, body.ride_id)
    return AckResponse()


@router.post("/status", response_model=AckResponse, summary="Go online or offline")
@limiter.limit("60/minute")
async def set_status(
    request: Request,
    body: DriverStatusRequest,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
):
    if body.online:
        if body.lat is None or body.lng is None:
            raise ValidationError("A position is required to go online")
        await services.presence.go_online(identity.id, body.lat, body.lng)
        return AckResponse(status="online")
    await services.presence.go_offline(identity.id)
    return AckResponse(status="offline")


@router.get("/me", summary="Own driver profile")
@limiter.limit("100/minute")
async def me(
    request: Request,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.drivers.profile(identity.id)


@router.get("/me/earnings", summary="Earnings summary")
@limiter.limit("100/minute")
async def earnings(
    request: Request,
    period: EarningsPeriod = "week",
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.drivers.earnings(identity.id, period)


@router.get("/requests", summary="Open ride requests (polling fallback)")
@limiter.limit("60/minute")
async def open_requests(
    request: Request,
    identity: Identity = Depends(require_driver),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {"requests": await services.rides.open_requests(identity.id)}

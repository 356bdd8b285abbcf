"""
Admin / observability endpoints
===============================

GET /api/v1/admin/online-drivers -- fresh presence records in the Geo-Index
GET /api/v1/admin/health         -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_services
from src.api.middleware import limiter
from src.api.schemas import HealthResponse, OnlineDriver
from src.services.container import Services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/online-drivers",
    response_model=list[OnlineDriver],
    summary="List drivers with a fresh presence record",
)
@limiter.limit("100/minute")
async def get_online_drivers(
    request: Request,
    services: Services = Depends(get_services),
):
    return [
        OnlineDriver(
            driver_id=p.driver_id,
            lat=p.latitude,
            lng=p.longitude,
            updated_at=p.updated_at,
        )
        for p in await services.geo.online()
    ]


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(services: Services = Depends(get_services)):
    return HealthResponse(connected_sessions=len(services.registry))

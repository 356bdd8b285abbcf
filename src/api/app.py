"""
FastAPI application factory.

* Registers REST routes for rides, drivers and admin, plus the ``/ws``
  realtime gateway.
* Builds the service container and starts / stops the background
  sweeper via lifespan events.
* Maps domain errors to HTTP responses and applies rate limiting.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.errors import register_error_handlers
from src.api.middleware import limiter
from src.api.routes import admin, drivers, realtime, rides
from src.config import settings
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.redis_client import close_redis, get_redis
from src.services.container import build_services
from src.workers import sweeper

logging.basicConfig(level=settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services and start the sweeper on startup; tear down on shutdown."""
    redis = await get_redis()
    services = build_services(async_session_factory, redis, settings)
    app.state.services = services
    await sweeper.start_sweeper(services)
    yield
    await sweeper.stop_sweeper()
    await services.shutdown()
    await close_redis()
    await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Rideshare Dispatch API",
        description=(
            "Matches ride requests to nearby drivers in real time: "
            "geospatial candidate search, broadcast offers with a single "
            "winner, and the trip lifecycle through completion."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(realtime.router)

    return app

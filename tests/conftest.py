"""
Shared test fixtures.

Uses a throwaway SQLite file database (via aiosqlite) per test so the
suite runs without Docker / PostgreSQL / Redis.  The Geo-Index is the
in-process H3 backend; Redis is an ``AsyncMock`` that behaves as an
empty, always-available server.  Realtime sessions are ``FakeSession``
objects that record every message sent to them.
"""

import uuid
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.api.app import create_app
from src.api.middleware import limiter
from src.config import Settings
from src.domain.entities import Identity
from src.domain.enums import DriverStatus, Role, ServiceClass
from src.infrastructure.database import Base, build_engine, build_session_factory
from src.infrastructure.geo_index import H3GeoIndex
from src.infrastructure.models import DriverModel
from src.services.container import Services, build_services

# Union Square, San Francisco
PICKUP = (37.7880, -122.4075)
DROPOFF = (37.8080, -122.4177)  # Fisherman's Wharf

# 0.001 deg of latitude ~ 0.069 mi
NEAR = (37.7895, -122.4075)  # ~0.1 mi
MID = (37.7950, -122.4075)  # ~0.5 mi
FAR = (37.8025, -122.4075)  # ~1.0 mi

RIDER = Identity("rider-1", Role.RIDER)
OTHER_RIDER = Identity("rider-2", Role.RIDER)

TEST_DRIVERS = [
    {"id": "driver-1", "first": "Maria", "last": "Lopez", "types": [ServiceClass.STANDARD]},
    {"id": "driver-2", "first": "James", "last": "Chen", "types": [ServiceClass.STANDARD]},
    {"id": "driver-3", "first": "Aisha", "last": "Okafor", "types": [ServiceClass.STANDARD, ServiceClass.XL]},
    {"id": "driver-black", "first": "Sofia", "last": "Rossi", "types": [ServiceClass.BLACK]},
    {"id": "driver-pending", "first": "Noah", "last": "Wright", "types": [ServiceClass.STANDARD], "status": DriverStatus.PENDING},
]


def driver_identity(driver_id: str) -> Identity:
    return Identity(driver_id, Role.DRIVER)


# ── Fakes ─────────────────────────────────────────────────────────────


class FakeSession:
    """Stands in for a websocket session; records what it is sent."""

    def __init__(self, identity: Identity):
        self.id = str(uuid.uuid4())
        self.identity = identity
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    @property
    def key(self) -> str:
        return self.identity.channel_key

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError(f"Session {self.id} is closed")
        self.sent.append(message)

    def events(self, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        return [m for m in self.sent if event_type is None or m["type"] == event_type]

    def event_types(self) -> list[str]:
        return [m["type"] for m in self.sent]


def make_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.eval = AsyncMock(return_value=1)
    redis.publish = AsyncMock(return_value=0)
    return redis


def connect(services: Services, identity: Identity) -> FakeSession:
    session = FakeSession(identity)
    services.registry.register(session.key, session)
    return session


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        geo_backend="memory",
        match_fanout=3,
        match_timeout_seconds=30.0,
        match_max_attempts=1,
        io_timeout_seconds=5.0,
        disconnect_grace_seconds=0.05,
        cancellation_fee=5.00,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Create tables in a fresh database file and seed the test drivers."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = build_session_factory(engine)
    async with factory() as session:
        for d in TEST_DRIVERS:
            session.add(
                DriverModel(
                    id=d["id"],
                    first_name=d["first"],
                    last_name=d["last"],
                    vehicle_make="Toyota",
                    vehicle_model="Camry",
                    vehicle_color="Silver",
                    license_plate=d["id"].upper()[:8],
                    status=d.get("status", DriverStatus.APPROVED),
                    service_types=[t.value for t in d["types"]],
                )
            )
        await session.commit()

    yield factory
    await engine.dispose()


@pytest.fixture
def mock_redis() -> AsyncMock:
    return make_redis()


@pytest_asyncio.fixture
async def services(session_factory, mock_redis, test_settings) -> AsyncGenerator[Services, None]:
    geo = H3GeoIndex(test_settings.h3_resolution, test_settings.presence_ttl_seconds)
    services = build_services(session_factory, mock_redis, test_settings, geo=geo)
    yield services
    await services.shutdown()


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, bypassing the lifespan."""
    app = create_app()
    app.state.services = services
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

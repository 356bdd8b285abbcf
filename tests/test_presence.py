"""Driver presence tests: online/offline, location pings, disconnect grace."""

import asyncio

import pytest

from src.domain.entities import Location
from src.domain.errors import ForbiddenError, NotFoundError, ValidationError
from src.infrastructure.repositories import DriverRepository
from src.services.rides import RideRequest
from tests.conftest import (
    DROPOFF,
    MID,
    NEAR,
    PICKUP,
    RIDER,
    connect,
    driver_identity,
)


async def is_online(services, driver_id):
    profile = await services.store.run(lambda s: DriverRepository(s).get_by_id(driver_id))
    return profile.is_online


class TestOnlineOffline:
    @pytest.mark.asyncio
    async def test_go_online_indexes_driver(self, services):
        profile = await services.presence.go_online("driver-1", *NEAR)
        assert profile.is_online
        assert await is_online(services, "driver-1")
        hits = await services.geo.query(*PICKUP, 1.0, 10)
        assert [h.driver_id for h in hits] == ["driver-1"]

    @pytest.mark.asyncio
    async def test_unapproved_driver_cannot_go_online(self, services):
        with pytest.raises(ForbiddenError):
            await services.presence.go_online("driver-pending", *NEAR)
        assert await services.geo.position("driver-pending") is None

    @pytest.mark.asyncio
    async def test_unknown_driver(self, services):
        with pytest.raises(NotFoundError):
            await services.presence.go_online("ghost", *NEAR)
        with pytest.raises(NotFoundError):
            await services.presence.go_offline("ghost")

    @pytest.mark.asyncio
    async def test_invalid_coordinates(self, services):
        with pytest.raises(ValidationError):
            await services.presence.go_online("driver-1", 123.0, 0.0)

    @pytest.mark.asyncio
    async def test_go_offline_removes_from_index(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        await services.presence.go_offline("driver-1")
        assert not await is_online(services, "driver-1")
        assert await services.geo.query(*PICKUP, 1.0, 10) == []


class TestLocationUpdates:
    @pytest.mark.asyncio
    async def test_ping_moves_online_driver(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        await services.presence.update_location("driver-1", *MID)
        presence = await services.geo.position("driver-1")
        assert (presence.latitude, presence.longitude) == MID

    @pytest.mark.asyncio
    async def test_offline_ping_not_indexed(self, services):
        await services.presence.update_location("driver-2", *MID)
        assert await services.geo.position("driver-2") is None
        profile = await services.store.run(lambda s: DriverRepository(s).get_by_id("driver-2"))
        assert (profile.current_lat, profile.current_lng) == MID

    @pytest.mark.asyncio
    async def test_ping_forwarded_to_rider(self, services):
        rider = connect(services, RIDER)
        await services.presence.go_online("driver-1", *NEAR)
        ride = await services.rides.request_ride(
            RIDER, RideRequest(pickup=Location(*PICKUP), dropoff=Location(*DROPOFF))
        )
        await services.engine.accept(ride.id, "driver-1")

        await services.presence.update_location("driver-1", *MID, ride_id=ride.id)

        updates = rider.events("driver:location_update")
        assert len(updates) == 1
        assert (updates[0]["data"]["lat"], updates[0]["data"]["lng"]) == MID

    @pytest.mark.asyncio
    async def test_ping_for_someone_elses_ride(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        ride = await services.rides.request_ride(
            RIDER, RideRequest(pickup=Location(*PICKUP), dropoff=Location(*DROPOFF))
        )
        await services.engine.accept(ride.id, "driver-1")
        with pytest.raises(ForbiddenError):
            await services.presence.update_location("driver-2", *MID, ride_id=ride.id)


class TestDisconnectGrace:
    @pytest.mark.asyncio
    async def test_offline_after_grace(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        services.presence.on_disconnect("driver-1")

        await asyncio.sleep(0.3)

        assert not await is_online(services, "driver-1")
        assert await services.geo.position("driver-1") is None

    @pytest.mark.asyncio
    async def test_reconnect_within_grace(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        services.presence.on_disconnect("driver-1")
        connect(services, driver_identity("driver-1"))
        services.presence.on_connect("driver-1")

        await asyncio.sleep(0.3)

        assert await is_online(services, "driver-1")
        assert await services.geo.position("driver-1") is not None

    @pytest.mark.asyncio
    async def test_new_session_keeps_driver_online(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        services.presence.on_disconnect("driver-1")
        # Session registered without an on_connect call
        connect(services, driver_identity("driver-1"))

        await asyncio.sleep(0.3)

        assert await is_online(services, "driver-1")

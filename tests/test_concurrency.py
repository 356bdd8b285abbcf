"""
Concurrency safety tests.

Demonstrates:
1. Idempotency keys prevent double-booking on network retries.
2. Distributed lock prevents simultaneous acquire.
3. The sweeper dispatches due scheduled rides and expires rounds
   orphaned by another process, once, under the lock.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.domain.entities import Location, Ride
from src.domain.enums import RideStatus
from src.domain.errors import UnavailableError, ValidationError
from src.infrastructure.locks import DistributedLock
from src.infrastructure.repositories import RideRepository
from src.services.rides import RideRequest
from src.workers.sweeper import run_sweep_cycle
from tests.conftest import DROPOFF, NEAR, PICKUP, RIDER


def _request(**kwargs) -> RideRequest:
    return RideRequest(pickup=Location(*PICKUP), dropoff=Location(*DROPOFF), **kwargs)


class TestIdempotentRequests:
    @pytest.mark.asyncio
    async def test_retry_returns_same_ride(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        first = await services.rides.request_ride(RIDER, _request(idempotency_key="k-1"))
        again = await services.rides.request_ride(RIDER, _request(idempotency_key="k-1"))
        assert again.id == first.id
        assert services.engine.round_for(first.id).attempt == 1

    @pytest.mark.asyncio
    async def test_simultaneous_retries_create_one_ride(self, services):
        results = await asyncio.gather(
            services.rides.request_ride(RIDER, _request(idempotency_key="k-2")),
            services.rides.request_ride(RIDER, _request(idempotency_key="k-2")),
        )
        assert results[0].id == results[1].id
        rides, total = await services.rides.history(RIDER)
        assert total == 1

    @pytest.mark.asyncio
    async def test_second_active_ride_rejected(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        await services.rides.request_ride(RIDER, _request())
        with pytest.raises(ValidationError, match="active ride"):
            await services.rides.request_ride(RIDER, _request())


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "lock:test-key", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_checks_ownership(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=0)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        await lock.acquire()
        assert await lock.release() is False

        _, numkeys, key, token = mock_redis.eval.call_args.args
        assert (numkeys, key, token) == (1, "lock:test-key", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        with pytest.raises(RuntimeError, match="Could not acquire lock"):
            async with lock:
                pass

    @pytest.mark.asyncio
    async def test_unreachable_redis(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("down"))

        lock = DistributedLock(mock_redis, "test-key")
        with pytest.raises(UnavailableError):
            await lock.acquire()


class TestSweeper:
    @pytest.mark.asyncio
    async def test_scheduled_request_waits(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        now = datetime.now(timezone.utc)
        ride = await services.rides.request_ride(
            RIDER, _request(scheduled_for=now + timedelta(hours=1))
        )
        assert ride.is_scheduled
        assert ride.status is RideStatus.REQUESTED
        assert ride.dispatched_at is None
        assert services.engine.round_for(ride.id) is None

        assert await run_sweep_cycle(services) == (0, 0)

    @pytest.mark.asyncio
    async def test_schedule_in_past_rejected(self, services):
        with pytest.raises(ValidationError, match="future"):
            await services.rides.request_ride(
                RIDER,
                _request(scheduled_for=datetime.now(timezone.utc) - timedelta(minutes=1)),
            )

    @pytest.mark.asyncio
    async def test_dispatches_due_scheduled_ride(self, services):
        await services.presence.go_online("driver-1", *NEAR)
        ride = await services.store.create(
            Ride(
                rider_id="rider-1",
                pickup=Location(*PICKUP),
                dropoff=Location(*DROPOFF),
                is_scheduled=True,
                scheduled_for=datetime.now(timezone.utc) - timedelta(minutes=1),
            )
        )

        assert await run_sweep_cycle(services) == (1, 0)
        assert services.engine.round_for(ride.id).candidate_ids == ["driver-1"]
        # Dispatched once only
        assert await run_sweep_cycle(services) == (0, 0)

    @pytest.mark.asyncio
    async def test_expires_orphaned_round(self, services):
        ride = await services.store.create(
            Ride(rider_id="rider-1", pickup=Location(*PICKUP), dropoff=Location(*DROPOFF))
        )
        # Dispatched by a process that has since died: no local round
        await services.store.mark_dispatched(ride.id)

        now = datetime.now(timezone.utc)
        assert await run_sweep_cycle(services, now=now) == (0, 0)
        assert await run_sweep_cycle(services, now=now + timedelta(minutes=5)) == (0, 1)
        assert (await services.store.get(ride.id)).status is RideStatus.NO_DRIVERS
        assert await run_sweep_cycle(services, now=now + timedelta(minutes=6)) == (0, 0)

    @pytest.mark.asyncio
    async def test_skips_cycle_when_lock_held(self, services, mock_redis):
        await services.store.create(
            Ride(rider_id="rider-1", pickup=Location(*PICKUP), dropoff=Location(*DROPOFF))
        )
        mock_redis.set = AsyncMock(return_value=None)
        assert await run_sweep_cycle(
            services, now=datetime.now(timezone.utc) + timedelta(hours=1)
        ) == (0, 0)
        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_releases_lock_after_cycle(self, services, mock_redis):
        await run_sweep_cycle(services)
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expires_ride_left_requested_by_store_outage(self, services, monkeypatch):
        monkeypatch.setattr(
            services.store,
            "transition",
            AsyncMock(side_effect=UnavailableError("Ride store unavailable")),
        )
        with pytest.raises(UnavailableError):
            await services.rides.request_ride(RIDER, _request())
        monkeypatch.undo()

        ride = await services.store.run(
            lambda s: RideRepository(s).get_active_for_rider("rider-1")
        )
        assert ride.status is RideStatus.REQUESTED
        assert ride.dispatched_at is not None

        now = datetime.now(timezone.utc)
        assert await run_sweep_cycle(services, now=now + timedelta(hours=2)) == (0, 1)
        assert (await services.store.get(ride.id)).status is RideStatus.NO_DRIVERS
        # The rider can book again
        retry = await services.rides.request_ride(RIDER, _request())
        assert retry.id != ride.id

    @pytest.mark.asyncio
    async def test_expires_immediate_ride_never_dispatched(self, services):
        ride = await services.store.create(
            Ride(rider_id="rider-1", pickup=Location(*PICKUP), dropoff=Location(*DROPOFF))
        )
        assert ride.dispatched_at is None

        now = datetime.now(timezone.utc)
        assert await run_sweep_cycle(services, now=now) == (0, 0)
        assert await run_sweep_cycle(services, now=now + timedelta(minutes=5)) == (0, 1)
        assert (await services.store.get(ride.id)).status is RideStatus.NO_DRIVERS

"""Wires the services together; one ``Services`` per process."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .drivers import DriverAccountService
from .matching_engine import MatchingEngine
from .presence import PresenceService
from .rides import RideService
from .trips import TripService
from src.config import Settings
from src.domain.pricing import PricingEngine
from src.infrastructure.geo_index import GeoIndex, H3GeoIndex, RedisGeoIndex
from src.infrastructure.live_state import LiveStateCache
from src.infrastructure.outbox import NotificationOutbox
from src.infrastructure.ride_store import RideStore
from src.realtime.channel import RealtimeChannel
from src.realtime.notifier import Notifier
from src.realtime.sessions import SessionRegistry


@dataclass
class Services:
    config: Settings
    redis: aioredis.Redis
    store: RideStore
    geo: GeoIndex
    live_state: LiveStateCache
    registry: SessionRegistry
    channel: RealtimeChannel
    notifier: Notifier
    pricing: PricingEngine
    engine: MatchingEngine
    trips: TripService
    rides: RideService
    presence: PresenceService
    drivers: DriverAccountService

    async def shutdown(self) -> None:
        await self.engine.shutdown()
        await self.presence.shutdown()


def build_geo_index(config: Settings, redis: aioredis.Redis) -> GeoIndex:
    if config.geo_backend == "memory":
        return H3GeoIndex(config.h3_resolution, config.presence_ttl_seconds)
    if config.geo_backend == "redis":
        return RedisGeoIndex(redis, config.presence_ttl_seconds)
    raise ValueError(f"Unknown geo backend: {config.geo_backend!r}")


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
    config: Settings,
    geo: Optional[GeoIndex] = None,
) -> Services:
    timeout = config.io_timeout_seconds
    store = RideStore(session_factory, timeout_seconds=timeout)
    geo = geo or build_geo_index(config, redis)
    live_state = LiveStateCache(redis, config.ride_state_ttl_seconds)
    registry = SessionRegistry()
    channel = RealtimeChannel(registry, send_timeout=timeout)
    notifier = Notifier(channel, NotificationOutbox(redis), timeout_seconds=timeout)
    pricing = PricingEngine(config.platform_fee_percent)

    engine = MatchingEngine(
        store,
        geo,
        live_state,
        notifier,
        fanout=config.match_fanout,
        timeout_seconds=config.match_timeout_seconds,
        radius_miles=config.match_radius_miles,
        radius_step_miles=config.match_radius_step_miles,
        max_attempts=config.match_max_attempts,
        io_timeout_seconds=timeout,
    )
    return Services(
        config=config,
        redis=redis,
        store=store,
        geo=geo,
        live_state=live_state,
        registry=registry,
        channel=channel,
        notifier=notifier,
        pricing=pricing,
        engine=engine,
        trips=TripService(
            store, engine, live_state, notifier, config.cancellation_fee
        ),
        rides=RideService(
            store,
            geo,
            engine,
            live_state,
            notifier,
            pricing,
            radius_miles=config.match_radius_miles,
            io_timeout_seconds=timeout,
        ),
        presence=PresenceService(
            store,
            geo,
            live_state,
            notifier,
            registry,
            grace_seconds=config.disconnect_grace_seconds,
            io_timeout_seconds=timeout,
        ),
        drivers=DriverAccountService(store),
    )

"""
Geo-Index: driver presence records and proximity queries.

Two interchangeable backends share the ``GeoIndex`` protocol:

* ``RedisGeoIndex`` -- GEOADD / GEOSEARCH over a shared key, so every API
  process sees the same drivers.  A companion sorted set stores the last
  ping time per driver; members older than the freshness window are
  filtered out of results and pruned lazily.
* ``H3GeoIndex``    -- in-process index bucketing drivers by H3 cell.
  A query scans only the ring of cells covering the radius, so cost
  tracks the drivers nearby rather than the fleet size.

Both return ``Candidate`` lists sorted by great-circle distance and never
include a driver whose last ping is older than ``ttl_seconds``.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Callable, Optional, Protocol

import h3
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.distance import haversine_miles, miles_to_km, valid_coordinates
from src.domain.entities import Candidate, DriverPresence
from src.domain.errors import UnavailableError, ValidationError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Re-checks each member's last ping inside Redis, so a driver who pinged
# after the query read its score is kept.
_PRUNE_SCRIPT = """
local cutoff = tonumber(ARGV[1])
local removed = 0
for i = 2, #ARGV do
    local seen = redis.call("zscore", KEYS[2], ARGV[i])
    if not seen or tonumber(seen) < cutoff then
        redis.call("zrem", KEYS[1], ARGV[i])
        redis.call("zrem", KEYS[2], ARGV[i])
        removed = removed + 1
    end
end
return removed
"""


def _check_coordinates(lat: float, lng: float) -> None:
    if not valid_coordinates(lat, lng):
        raise ValidationError(f"Invalid coordinates ({lat}, {lng})")


class GeoIndex(Protocol):
    async def upsert(self, driver_id: str, lat: float, lng: float) -> None: ...

    async def query(
        self, lat: float, lng: float, radius_miles: float, limit: int
    ) -> list[Candidate]: ...

    async def remove(self, driver_id: str) -> None: ...

    async def position(self, driver_id: str) -> Optional[DriverPresence]: ...

    async def online(self) -> list[DriverPresence]: ...


# ── In-process H3 backend ─────────────────────────────────────────────


class H3GeoIndex:
    """Spatial index for driver positions using H3 hexagonal cells."""

    def __init__(
        self,
        h3_resolution: int = 7,
        ttl_seconds: float = 300,
        clock: Clock = time.time,
    ):
        self._h3_resolution = h3_resolution
        self._ttl = ttl_seconds
        self._clock = clock
        self._h3_cells: dict[str, set[str]] = {}
        self._records: dict[str, DriverPresence] = {}
        self._driver_cell: dict[str, str] = {}
        self._edge_km = h3.average_hexagon_edge_length(h3_resolution, unit="km")

    async def upsert(self, driver_id: str, lat: float, lng: float) -> None:
        _check_coordinates(lat, lng)
        new_cell = h3.latlng_to_cell(lat, lng, self._h3_resolution)
        old_cell = self._driver_cell.get(driver_id)
        if old_cell is not None and old_cell != new_cell:
            self._discard(old_cell, driver_id)
        self._h3_cells.setdefault(new_cell, set()).add(driver_id)
        self._driver_cell[driver_id] = new_cell
        self._records[driver_id] = DriverPresence(driver_id, lat, lng, self._clock())

    async def query(
        self, lat: float, lng: float, radius_miles: float, limit: int
    ) -> list[Candidate]:
        _check_coordinates(lat, lng)
        if limit <= 0 or not self._records:
            return []

        now = self._clock()
        center = h3.latlng_to_cell(lat, lng, self._h3_resolution)
        # Neighbouring centres sit ~sqrt(3) edges apart; one ring per edge
        # length over-covers the radius.
        k = math.ceil(miles_to_km(radius_miles) / self._edge_km) + 1

        candidates: list[Candidate] = []
        stale: list[str] = []
        for cell in h3.grid_disk(center, k):
            for driver_id in self._h3_cells.get(cell, ()):
                record = self._records[driver_id]
                if not record.is_fresh(now, self._ttl):
                    stale.append(driver_id)
                    continue
                distance = haversine_miles(lat, lng, record.latitude, record.longitude)
                if distance <= radius_miles:
                    candidates.append(Candidate(driver_id, distance))

        for driver_id in stale:
            self._drop(driver_id)

        candidates.sort(key=lambda c: c.distance_miles)
        return candidates[:limit]

    async def remove(self, driver_id: str) -> None:
        self._drop(driver_id)

    async def position(self, driver_id: str) -> Optional[DriverPresence]:
        record = self._records.get(driver_id)
        if record is None or not record.is_fresh(self._clock(), self._ttl):
            return None
        return record

    async def online(self) -> list[DriverPresence]:
        """Fresh records; stale ones anywhere in the index are dropped."""
        now = self._clock()
        fresh: list[DriverPresence] = []
        for record in list(self._records.values()):
            if record.is_fresh(now, self._ttl):
                fresh.append(record)
            else:
                self._drop(record.driver_id)
        return fresh

    def _drop(self, driver_id: str) -> None:
        cell = self._driver_cell.pop(driver_id, None)
        if cell is not None:
            self._discard(cell, driver_id)
        self._records.pop(driver_id, None)

    def _discard(self, cell: str, driver_id: str) -> None:
        members = self._h3_cells.get(cell)
        if members is None:
            return
        members.discard(driver_id)
        if not members:
            del self._h3_cells[cell]

    def clear(self) -> None:
        self._h3_cells.clear()
        self._records.clear()
        self._driver_cell.clear()


# ── Redis backend ─────────────────────────────────────────────────────


class RedisGeoIndex:
    GEO_KEY = "drivers:geo"  # GEOADD positions
    SEEN_KEY = "drivers:seen"  # ZSET driver -> last ping (epoch seconds)
    LOCATION_PREFIX = "driver:location:"  # JSON snapshot, expires with presence

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 300,
        clock: Clock = time.time,
    ):
        self.redis = client
        self._ttl = ttl_seconds
        self._clock = clock

    async def upsert(self, driver_id: str, lat: float, lng: float) -> None:
        _check_coordinates(lat, lng)
        now = self._clock()
        snapshot = json.dumps({"lat": lat, "lng": lng, "updated_at": now})
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                # Redis GEO takes (longitude, latitude)
                pipe.geoadd(self.GEO_KEY, (lng, lat, driver_id))
                pipe.zadd(self.SEEN_KEY, {driver_id: now})
                pipe.setex(self.LOCATION_PREFIX + driver_id, self._ttl, snapshot)
                await pipe.execute()
        except RedisError as exc:
            raise UnavailableError("Geo-Index unavailable") from exc

    async def query(
        self, lat: float, lng: float, radius_miles: float, limit: int
    ) -> list[Candidate]:
        _check_coordinates(lat, lng)
        if limit <= 0:
            return []
        try:
            hits = await self.redis.geosearch(
                self.GEO_KEY,
                longitude=lng,
                latitude=lat,
                radius=radius_miles,
                unit="mi",
                sort="ASC",
                withdist=True,
            )
            if not hits:
                return []
            ids = [member for member, _ in hits]
            seen = await self.redis.zmscore(self.SEEN_KEY, ids)
        except RedisError as exc:
            raise UnavailableError("Geo-Index unavailable") from exc

        cutoff = self._clock() - self._ttl
        fresh: list[Candidate] = []
        stale: list[str] = []
        for (driver_id, distance), last_seen in zip(hits, seen):
            if last_seen is None or float(last_seen) < cutoff:
                stale.append(driver_id)
            elif len(fresh) < limit:
                fresh.append(Candidate(driver_id, float(distance)))

        if stale:
            await self._prune(stale, cutoff)
        return fresh

    async def remove(self, driver_id: str) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self.GEO_KEY, driver_id)
                pipe.zrem(self.SEEN_KEY, driver_id)
                pipe.delete(self.LOCATION_PREFIX + driver_id)
                await pipe.execute()
        except RedisError as exc:
            raise UnavailableError("Geo-Index unavailable") from exc

    async def position(self, driver_id: str) -> Optional[DriverPresence]:
        try:
            raw = await self.redis.get(self.LOCATION_PREFIX + driver_id)
        except RedisError as exc:
            raise UnavailableError("Geo-Index unavailable") from exc
        if not raw:
            return None
        data = json.loads(raw)
        return DriverPresence(driver_id, data["lat"], data["lng"], data["updated_at"])

    async def online(self) -> list[DriverPresence]:
        cutoff = self._clock() - self._ttl
        try:
            ids = await self.redis.zrangebyscore(self.SEEN_KEY, cutoff, "+inf")
            if not ids:
                return []
            positions = await self.redis.geopos(self.GEO_KEY, *ids)
            seen = await self.redis.zmscore(self.SEEN_KEY, ids)
        except RedisError as exc:
            raise UnavailableError("Geo-Index unavailable") from exc
        return [
            DriverPresence(driver_id, float(pos[1]), float(pos[0]), float(ts))
            for driver_id, pos, ts in zip(ids, positions, seen)
            if pos is not None and ts is not None
        ]

    async def _prune(self, driver_ids: list[str], cutoff: float) -> None:
        """Drop members still older than *cutoff*; a failure only delays cleanup."""
        try:
            removed = await self.redis.eval(
                _PRUNE_SCRIPT, 2, self.GEO_KEY, self.SEEN_KEY, cutoff, *driver_ids
            )
        except RedisError:
            logger.warning("Could not prune %d stale drivers", len(driver_ids))
            return
        logger.debug("Pruned %s of %d stale drivers", removed, len(driver_ids))

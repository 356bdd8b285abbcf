"""Tests for the Redis-backed Geo-Index (mocked Redis)."""

import json
from unittest.mock import AsyncMock, MagicMock, call

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.domain.errors import UnavailableError, ValidationError
from src.infrastructure.geo_index import RedisGeoIndex

NOW = 1_000_000.0


def _pipeline_redis():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1, True])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    redis = AsyncMock()
    redis.pipeline = MagicMock(return_value=pipe)
    return redis, pipe


@pytest.fixture
def redis_and_pipe():
    return _pipeline_redis()


@pytest.fixture
def index(redis_and_pipe):
    redis, _ = redis_and_pipe
    return RedisGeoIndex(redis, ttl_seconds=300, clock=lambda: NOW)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_writes_position_freshness_and_snapshot(self, index, redis_and_pipe):
        _, pipe = redis_and_pipe
        await index.upsert("d1", 40.7128, -74.0060)

        pipe.geoadd.assert_called_once_with("drivers:geo", (-74.0060, 40.7128, "d1"))
        pipe.zadd.assert_called_once_with("drivers:seen", {"d1": NOW})
        key, ttl, payload = pipe.setex.call_args.args
        assert key == "driver:location:d1"
        assert ttl == 300
        assert json.loads(payload) == {"lat": 40.7128, "lng": -74.0060, "updated_at": NOW}
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_coordinates(self, index, redis_and_pipe):
        _, pipe = redis_and_pipe
        with pytest.raises(ValidationError):
            await index.upsert("d1", 95.0, 0.0)
        pipe.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_failure_is_unavailable(self, index, redis_and_pipe):
        _, pipe = redis_and_pipe
        pipe.execute.side_effect = RedisConnectionError("down")
        with pytest.raises(UnavailableError):
            await index.upsert("d1", 40.7128, -74.0060)


class TestQuery:
    @pytest.mark.asyncio
    async def test_filters_and_prunes_stale_members(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.geosearch = AsyncMock(
            return_value=[["d1", 0.1], ["d2", 0.5], ["d3", 0.7], ["d4", 0.9]]
        )
        redis.zmscore = AsyncMock(return_value=[NOW - 10, NOW - 400, None, NOW - 299])

        hits = await index.query(40.7128, -74.0060, 1.0, 10)

        assert [(h.driver_id, h.distance_miles) for h in hits] == [("d1", 0.1), ("d4", 0.9)]
        redis.geosearch.assert_awaited_once()
        kwargs = redis.geosearch.call_args.kwargs
        assert kwargs["unit"] == "mi" and kwargs["sort"] == "ASC"
        redis.eval.assert_awaited_once()
        script, numkeys, *args = redis.eval.call_args.args
        assert numkeys == 2
        assert args == ["drivers:geo", "drivers:seen", NOW - 300, "d2", "d3"]
        # The cutoff is re-checked inside Redis, never a blind ZREM
        assert "zscore" in script
        redis.zrem.assert_not_called()

    @pytest.mark.asyncio
    async def test_prune_failure_still_returns_fresh(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.geosearch = AsyncMock(return_value=[["d1", 0.1], ["d2", 0.5]])
        redis.zmscore = AsyncMock(return_value=[NOW, NOW - 400])
        redis.eval = AsyncMock(side_effect=RedisConnectionError("down"))

        hits = await index.query(40.7128, -74.0060, 1.0, 10)

        assert [h.driver_id for h in hits] == ["d1"]

    @pytest.mark.asyncio
    async def test_limit_applies_after_freshness(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.geosearch = AsyncMock(return_value=[["d1", 0.1], ["d2", 0.2], ["d3", 0.3]])
        redis.zmscore = AsyncMock(return_value=[NOW, NOW, NOW])
        hits = await index.query(40.7128, -74.0060, 1.0, 2)
        assert [h.driver_id for h in hits] == ["d1", "d2"]
        redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_hits(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.geosearch = AsyncMock(return_value=[])
        assert await index.query(40.7128, -74.0060, 1.0, 5) == []
        redis.zmscore.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_failure_is_unavailable(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.geosearch = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(UnavailableError):
            await index.query(40.7128, -74.0060, 1.0, 5)


class TestPosition:
    @pytest.mark.asyncio
    async def test_reads_snapshot(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.get = AsyncMock(
            return_value=json.dumps({"lat": 1.5, "lng": 2.5, "updated_at": NOW})
        )
        presence = await index.position("d1")
        assert (presence.driver_id, presence.latitude, presence.longitude) == ("d1", 1.5, 2.5)
        redis.get.assert_awaited_once_with("driver:location:d1")

    @pytest.mark.asyncio
    async def test_expired_snapshot_is_none(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.get = AsyncMock(return_value=None)
        assert await index.position("d1") is None

    @pytest.mark.asyncio
    async def test_online_lists_fresh_members(self, index, redis_and_pipe):
        redis, _ = redis_and_pipe
        redis.zrangebyscore = AsyncMock(return_value=["d1", "d2"])
        redis.geopos = AsyncMock(return_value=[(-74.0, 40.7), None])
        redis.zmscore = AsyncMock(return_value=[NOW, NOW])

        online = await index.online()

        assert [(p.driver_id, p.latitude, p.longitude) for p in online] == [("d1", 40.7, -74.0)]
        redis.zrangebyscore.assert_awaited_once_with("drivers:seen", NOW - 300, "+inf")


class TestRemove:
    @pytest.mark.asyncio
    async def test_removes_all_keys(self, index, redis_and_pipe):
        _, pipe = redis_and_pipe
        await index.remove("d1")
        pipe.zrem.assert_has_calls([call("drivers:geo", "d1"), call("drivers:seen", "d1")])
        pipe.delete.assert_called_once_with("driver:location:d1")

"""
Redis Repository Tests

Unit tests for RedisLevelRepository against an in-process Redis double.
"""

import fnmatch
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tests.conftest import FakeClock
from tiercache.domain.cache.entities import CacheEntry
from tiercache.domain.cache.exceptions import (
    CacheCircuitOpenException,
    CacheStorageException,
    CacheValidationException,
)
from tiercache.infrastructure.circuit_breaker import CircuitBreakerConfig
from tiercache.infrastructure.repositories import RedisLevelRepository


class FakeRedis:
    """Minimal async Redis double covering the commands the repository uses."""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.expiries = {}

    async def ping(self):
        return True

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, px=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.expiries[key] = px / 1000 if px is not None else ex
        return True

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    async def delete(self, *keys):
        return sum(1 for key in keys if self._drop(key))

    async def unlink(self, *keys):
        return await self.delete(*keys)

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.values or key in self.sets)

    async def mget(self, keys):
        return [self.values.get(key) for key in keys]

    async def strlen(self, key):
        return len(self.values.get(key, ""))

    async def scan_iter(self, match=None, count=None):
        for key in list(self.values) + list(self.sets):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        return None

    def _drop(self, key):
        found = key in self.values or key in self.sets
        self.values.pop(key, None)
        self.sets.pop(key, None)
        return found


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_clock():
    return FakeClock(start=1000.0)


@pytest.fixture
def repository(fake_redis, redis_clock):
    return RedisLevelRepository(key_prefix="tc", client=fake_redis, clock=redis_clock)


class TestRedisLevelRepository:
    """Test cases for RedisLevelRepository."""

    @pytest.mark.asyncio
    async def test_put_sets_native_ttl(self, repository, fake_redis):
        """Native expiry matches the time left on a fresh entry."""
        await repository.put("tc:default:k", CacheEntry.create({"a": 1}, 30, now=1000.0))

        assert fake_redis.expiries["tc:default:k"] == 30
        assert (await repository.get("tc:default:k")).value == {"a": 1}

    @pytest.mark.asyncio
    async def test_copied_entry_keeps_original_expiry(
        self, repository, fake_redis, redis_clock
    ):
        """An entry written part-way through its life expires with the original."""
        redis_clock.advance(10.5)
        await repository.put("tc:default:k", CacheEntry.create("v", 30, now=1000.0))

        assert fake_redis.expiries["tc:default:k"] == 19.5

        redis_clock.advance(19.5)
        assert await repository.get("tc:default:k") is None

    @pytest.mark.asyncio
    async def test_expired_entry_is_not_written(self, repository, fake_redis, redis_clock):
        """Writing an already expired entry removes any previous value."""
        await repository.put("tc:default:k", CacheEntry.create("old", 30, now=1000.0))
        redis_clock.advance(60)

        await repository.put("tc:default:k", CacheEntry.create("new", 30, now=1000.0))

        assert "tc:default:k" not in fake_redis.values

    @pytest.mark.asyncio
    async def test_add_uses_nx(self, repository):
        """add() does not overwrite an existing key."""
        assert await repository.add("tc:default:k", CacheEntry.create(1, 30)) is True
        assert await repository.add("tc:default:k", CacheEntry.create(2, 30)) is False
        assert (await repository.get("tc:default:k")).value == 1

    @pytest.mark.asyncio
    async def test_tag_lookup_skips_stale_members(self, repository):
        """Keys re-tagged by an overwrite are not returned for their old tag."""
        await repository.put("tc:default:a", CacheEntry.create(1, 30, ["red"]))
        await repository.put("tc:default:b", CacheEntry.create(2, 30, ["red"]))
        await repository.put("tc:default:b", CacheEntry.create(3, 30, ["blue"]))

        assert await repository.keys_for_tags(["red"]) == ["tc:default:a"]

    @pytest.mark.asyncio
    async def test_scan_excludes_tag_index(self, repository):
        """Tag index keys never show up in pattern scans."""
        await repository.put("tc:default:a", CacheEntry.create(1, 30, ["t"]))
        assert await repository.scan("tc*") == ["tc:default:a"]

    @pytest.mark.asyncio
    async def test_flush_and_optimize(self, repository, fake_redis):
        """flush() removes entries and tag sets; optimize prunes dangling members."""
        await repository.put("tc:default:a", CacheEntry.create(1, 30, ["t"]))
        await repository.forget("tc:default:a")
        assert await repository.optimize() == 1

        await repository.put("tc:default:b", CacheEntry.create(1, 30, ["t"]))
        await repository.flush()
        assert fake_redis.values == {}
        assert fake_redis.sets == {}

    @pytest.mark.asyncio
    async def test_non_json_value_is_rejected(self, repository):
        """Values that cannot be serialized raise a validation error."""
        with pytest.raises(CacheValidationException):
            await repository.put("tc:default:k", CacheEntry.create(object(), 30))

    @pytest.mark.asyncio
    async def test_redis_errors_open_the_circuit(self, fake_redis):
        """Repeated Redis failures surface as storage errors then open the circuit."""
        fake_redis.get = AsyncMock(side_effect=RedisConnectionError("down"))
        repository = RedisLevelRepository(
            client=fake_redis,
            breaker_config=CircuitBreakerConfig(failure_threshold=2, recovery_timeout=60),
        )

        for _ in range(2):
            with pytest.raises(CacheStorageException):
                await repository.get("tiercache:default:k")

        with pytest.raises(CacheCircuitOpenException):
            await repository.get("tiercache:default:k")
        assert repository.get_status()["circuit_breaker"]["state"] == "open"

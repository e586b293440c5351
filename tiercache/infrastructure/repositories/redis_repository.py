"""
Redis Level Repository

MEMORY-level repository over redis.asyncio. Entries are JSON envelopes
stored with a native Redis expiry; tags are indexed in Redis sets. Every
store call runs through a circuit breaker so an unreachable Redis turns
into fast CacheStorageExceptions instead of stalled requests.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, TypeVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from ...domain.cache.domain_services import compile_glob
from ...domain.cache.entities import CacheEntry, LevelSize
from ...domain.cache.exceptions import CacheStorageException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import DEFAULT_KEY_PREFIX, CacheLevel
from ..circuit_breaker import CircuitBreakerConfig, StoreCircuitBreaker
from .codec import decode_entry, encode_entry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCAN_COUNT = 100
DELETE_CHUNK = 500


def to_redis_glob(pattern: str) -> str:
    """Escape Redis glob specials other than ``*`` and ``?``."""
    return "".join(f"\\{char}" if char in "[]\\^" else char for char in pattern)


class RedisLevelRepository(LevelRepository):
    """Redis implementation of a cache level repository."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = DEFAULT_KEY_PREFIX,
        level: CacheLevel = CacheLevel.MEMORY,
        max_connections: int = 10,
        client: Optional[Redis] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.level = level
        self.url = url
        self._clock = clock
        self.key_prefix = key_prefix
        self.tag_prefix = f"{key_prefix}__tags"
        self.max_connections = max_connections
        self._client = client
        self._pool: Optional[ConnectionPool] = None
        self._owns_client = client is None
        self._initialized = client is not None
        self._lock = asyncio.Lock()
        config = breaker_config or CircuitBreakerConfig()
        config = replace(
            config, failure_exceptions=config.failure_exceptions + (RedisError,)
        )
        self.circuit_breaker = StoreCircuitBreaker(level.value, config)

    async def initialize(self) -> None:
        """Create the connection pool and verify connectivity."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return
            try:
                self._pool = ConnectionPool.from_url(
                    self.url,
                    decode_responses=True,
                    max_connections=self.max_connections,
                )
                self._client = Redis(connection_pool=self._pool)
                await self._client.ping()
                self._initialized = True
                logger.info(
                    "Redis cache level initialized",
                    extra={"level": self.level.value, "max_connections": self.max_connections},
                )
            except (RedisError, OSError) as e:
                logger.error(f"Failed to initialize Redis cache level: {e}")
                raise CacheStorageException(
                    "Redis cache level initialization failed",
                    level=self.level.value,
                    operation="initialize",
                    original_error=e,
                )

    async def close(self) -> None:
        async with self._lock:
            if self._owns_client and self._client is not None:
                await self._client.aclose()
            if self._pool is not None:
                await self._pool.disconnect()
            self._pool = None
            if self._owns_client:
                self._client = None
                self._initialized = False
        logger.info("Redis cache level closed", extra={"level": self.level.value})

    async def _execute(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        if not self._initialized:
            await self.initialize()
        try:
            return await self.circuit_breaker.call(operation, func, *args, **kwargs)
        except CacheStorageException:
            raise
        except (RedisError, OSError) as e:
            raise CacheStorageException(
                f"Redis {operation} failed: {e}",
                level=self.level.value,
                operation=operation,
                original_error=e,
            )

    async def _command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        return await getattr(self._client, name)(*args, **kwargs)

    def _tag_key(self, tag: str) -> str:
        return f"{self.tag_prefix}:{tag}"

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self._execute("get", self._command, "get", key)
        if raw is None:
            return None
        entry = decode_entry(raw)
        return None if entry.is_expired(self._clock()) else entry

    async def _write(self, key: str, entry: CacheEntry, only_if_absent: bool) -> bool:
        payload = encode_entry(entry)
        # Native expiry tracks expires_at, not a fresh ttl from now
        remaining_ms = int(entry.remaining_seconds(self._clock()) * 1000)
        if remaining_ms <= 0:
            if not only_if_absent:
                await self._client.delete(key)
            return False
        stored = await self._client.set(key, payload, px=remaining_ms, nx=only_if_absent)
        if not stored:
            return False
        for tag in entry.tags:
            await self._client.sadd(self._tag_key(tag), key)
        return True

    async def put(self, key: str, entry: CacheEntry) -> None:
        await self._execute("put", self._write, key, entry, False)

    async def add(self, key: str, entry: CacheEntry) -> bool:
        return bool(await self._execute("add", self._write, key, entry, True))

    async def forget(self, key: str) -> bool:
        deleted = await self._execute("forget", self._command, "delete", key)
        return bool(deleted)

    async def has(self, key: str) -> bool:
        return bool(await self._execute("has", self._command, "exists", key))

    async def _scan_keys(self, pattern: str) -> List[str]:
        keys: List[str] = []
        async for key in self._client.scan_iter(match=pattern, count=SCAN_COUNT):
            keys.append(key)
        return keys

    async def scan(self, pattern: str) -> List[str]:
        keys = await self._execute("scan", self._scan_keys, to_redis_glob(pattern))
        regex = compile_glob(pattern)
        return [
            key
            for key in keys
            if regex.match(key) and not key.startswith(f"{self.tag_prefix}:")
        ]

    async def _tagged_keys(self, tags: List[str]) -> List[str]:
        candidates: Set[str] = set()
        for tag in tags:
            candidates.update(await self._client.smembers(self._tag_key(tag)))
        if not candidates:
            return []
        ordered = sorted(candidates)
        wanted = set(tags)
        # Index members can be stale after an overwrite with different tags
        live: List[str] = []
        for key, raw in zip(ordered, await self._client.mget(ordered)):
            if raw is not None and decode_entry(raw).has_any_tag(wanted):
                live.append(key)
        return live

    async def keys_for_tags(self, tags: Iterable[str]) -> List[str]:
        return await self._execute("keys_for_tags", self._tagged_keys, list(tags))

    async def _delete_matching(self) -> int:
        keys = await self._scan_keys(f"{self.key_prefix}:*")
        keys += await self._scan_keys(f"{self.tag_prefix}:*")
        removed = 0
        for start in range(0, len(keys), DELETE_CHUNK):
            removed += await self._client.unlink(*keys[start : start + DELETE_CHUNK])
        return removed

    async def flush(self) -> None:
        removed = await self._execute("flush", self._delete_matching)
        logger.info(
            f"Flushed {removed} Redis keys for {self.level.value} level",
            extra={"level": self.level.value, "removed": removed},
        )

    async def _measure(self) -> LevelSize:
        keys = await self._scan_keys(f"{self.key_prefix}:*")
        size_bytes = 0
        for key in keys:
            size_bytes += await self._client.strlen(key)
        return LevelSize(entries=len(keys), size_bytes=size_bytes)

    async def size(self) -> LevelSize:
        return await self._execute("size", self._measure)

    async def purge_expired(self) -> int:
        # Redis expires keys natively
        return 0

    async def _prune_tag_index(self) -> int:
        pruned = 0
        for tag_key in await self._scan_keys(f"{self.tag_prefix}:*"):
            for member in await self._client.smembers(tag_key):
                if not await self._client.exists(member):
                    pruned += await self._client.srem(tag_key, member)
        return pruned

    async def optimize(self) -> int:
        return await self._execute("optimize", self._prune_tag_index)

    def get_status(self) -> dict:
        return {
            "level": self.level.value,
            "backend": "redis",
            "initialized": self._initialized,
            "circuit_breaker": self.circuit_breaker.get_status(),
        }

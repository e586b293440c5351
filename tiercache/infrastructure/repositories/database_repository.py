"""
SQL Level Repository

DATABASE-level repository over SQLAlchemy async. Each entry is a row with
its JSON envelope and absolute expiry; tags live in a side table. Expired
rows are invisible to reads and removed by purge_expired().
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...domain.cache.domain_services import compile_glob
from ...domain.cache.entities import CacheEntry, LevelSize
from ...domain.cache.exceptions import CacheStorageException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel
from ...models import Base, CacheEntryRecord, CacheEntryTag
from ..circuit_breaker import CircuitBreakerConfig, StoreCircuitBreaker
from .codec import decode_entry, encode_entry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def glob_to_like(pattern: str) -> str:
    """Translate ``*``/``?`` globs to a LIKE expression escaped with ``\\``."""
    out = []
    for char in pattern:
        if char in "%_\\":
            out.append("\\" + char)
        elif char == "*":
            out.append("%")
        elif char == "?":
            out.append("_")
        else:
            out.append(char)
    return "".join(out)


class SqlLevelRepository(LevelRepository):
    """SQLAlchemy async implementation of a cache level repository."""

    def __init__(
        self,
        url: str = "postgresql+asyncpg://localhost:5432/tiercache",
        level: CacheLevel = CacheLevel.DATABASE,
        engine: Optional[AsyncEngine] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.level = level
        self.url = url
        self._engine = engine
        self._owns_engine = engine is None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
        self._initialized = False
        self._lock = asyncio.Lock()
        self._clock = clock
        config = breaker_config or CircuitBreakerConfig()
        config = replace(
            config, failure_exceptions=config.failure_exceptions + (OperationalError,)
        )
        self.circuit_breaker = StoreCircuitBreaker(level.value, config)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type((OperationalError, ConnectionError, OSError)),
        reraise=True,
    )
    async def _create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def initialize(self) -> None:
        """Create the engine and the cache tables."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return
            try:
                if self._engine is None:
                    self._engine = create_async_engine(self.url, pool_pre_ping=True)
                await self._create_schema()
                self._sessionmaker = async_sessionmaker(
                    self._engine, expire_on_commit=False
                )
                self._initialized = True
                logger.info(
                    "SQL cache level initialized",
                    extra={"level": self.level.value, "dialect": self._engine.dialect.name},
                )
            except (SQLAlchemyError, OSError) as e:
                logger.error(f"Failed to initialize SQL cache level: {e}")
                raise CacheStorageException(
                    "SQL cache level initialization failed",
                    level=self.level.value,
                    operation="initialize",
                    original_error=e,
                )

    async def close(self) -> None:
        async with self._lock:
            if self._owns_engine and self._engine is not None:
                await self._engine.dispose()
                self._engine = None
            self._initialized = False
        logger.info("SQL cache level closed", extra={"level": self.level.value})

    async def _execute(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        if not self._initialized:
            await self.initialize()
        try:
            return await self.circuit_breaker.call(operation, func, *args)
        except CacheStorageException:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise CacheStorageException(
                f"SQL {operation} failed: {e}",
                level=self.level.value,
                operation=operation,
                original_error=e,
            )

    @staticmethod
    async def _delete_keys(session: AsyncSession, keys: List[str]) -> int:
        if not keys:
            return 0
        await session.execute(delete(CacheEntryTag).where(CacheEntryTag.key.in_(keys)))
        result = await session.execute(
            delete(CacheEntryRecord).where(CacheEntryRecord.key.in_(keys))
        )
        return result.rowcount or 0

    @staticmethod
    def _record(key: str, entry: CacheEntry) -> CacheEntryRecord:
        return CacheEntryRecord(
            key=key,
            payload=encode_entry(entry),
            stored_at=entry.stored_at,
            expires_at=entry.expires_at,
            size_bytes=entry.size_bytes,
        )

    async def _get(self, key: str) -> Optional[CacheEntry]:
        async with self._sessionmaker() as session:
            record = await session.get(CacheEntryRecord, key)
            if record is None or record.expires_at <= self._clock():
                return None
            return decode_entry(record.payload)

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await self._execute("get", self._get, key)

    async def _put(self, key: str, entry: CacheEntry) -> None:
        record = self._record(key, entry)
        async with self._sessionmaker() as session:
            async with session.begin():
                await self._delete_keys(session, [key])
                session.add(record)
                await session.flush()
                session.add_all(CacheEntryTag(key=key, tag=tag) for tag in entry.tags)

    async def put(self, key: str, entry: CacheEntry) -> None:
        await self._execute("put", self._put, key, entry)

    async def _add(self, key: str, entry: CacheEntry) -> bool:
        record = self._record(key, entry)
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    existing = await session.get(CacheEntryRecord, key)
                    if existing is not None:
                        if existing.expires_at > self._clock():
                            return False
                        await session.execute(
                            delete(CacheEntryTag).where(CacheEntryTag.key == key)
                        )
                        await session.delete(existing)
                        await session.flush()
                    session.add(record)
                    await session.flush()
                    session.add_all(
                        CacheEntryTag(key=key, tag=tag) for tag in entry.tags
                    )
        except IntegrityError:
            # Lost the insert race to a concurrent writer
            return False
        return True

    async def add(self, key: str, entry: CacheEntry) -> bool:
        return await self._execute("add", self._add, key, entry)

    async def _forget(self, key: str) -> bool:
        async with self._sessionmaker() as session:
            async with session.begin():
                return await self._delete_keys(session, [key]) > 0

    async def forget(self, key: str) -> bool:
        return await self._execute("forget", self._forget, key)

    async def _has(self, key: str) -> bool:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(CacheEntryRecord.key).where(
                    CacheEntryRecord.key == key,
                    CacheEntryRecord.expires_at > self._clock(),
                )
            )
            return result.scalar_one_or_none() is not None

    async def has(self, key: str) -> bool:
        return await self._execute("has", self._has, key)

    async def _scan(self, pattern: str) -> List[str]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(CacheEntryRecord.key).where(
                    CacheEntryRecord.key.like(glob_to_like(pattern), escape="\\"),
                    CacheEntryRecord.expires_at > self._clock(),
                )
            )
            regex = compile_glob(pattern)
            return [key for key in result.scalars() if regex.match(key)]

    async def scan(self, pattern: str) -> List[str]:
        return await self._execute("scan", self._scan, pattern)

    async def _keys_for_tags(self, tags: List[str]) -> List[str]:
        if not tags:
            return []
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(CacheEntryTag.key)
                .join(CacheEntryRecord, CacheEntryRecord.key == CacheEntryTag.key)
                .where(
                    CacheEntryTag.tag.in_(tags),
                    CacheEntryRecord.expires_at > self._clock(),
                )
                .distinct()
                .order_by(CacheEntryTag.key)
            )
            return list(result.scalars())

    async def keys_for_tags(self, tags: Iterable[str]) -> List[str]:
        return await self._execute("keys_for_tags", self._keys_for_tags, list(tags))

    async def _flush(self) -> None:
        async with self._sessionmaker() as session:
            async with session.begin():
                await session.execute(delete(CacheEntryTag))
                await session.execute(delete(CacheEntryRecord))

    async def flush(self) -> None:
        await self._execute("flush", self._flush)

    async def _size(self) -> LevelSize:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(
                    func.count(CacheEntryRecord.key),
                    func.coalesce(func.sum(CacheEntryRecord.size_bytes), 0),
                ).where(CacheEntryRecord.expires_at > self._clock())
            )
            entries, size_bytes = result.one()
            return LevelSize(entries=int(entries), size_bytes=int(size_bytes))

    async def size(self) -> LevelSize:
        return await self._execute("size", self._size)

    async def _purge_expired(self) -> int:
        async with self._sessionmaker() as session:
            now = self._clock()
            async with session.begin():
                expired = select(CacheEntryRecord.key).where(
                    CacheEntryRecord.expires_at <= now
                )
                await session.execute(
                    delete(CacheEntryTag).where(CacheEntryTag.key.in_(expired))
                )
                result = await session.execute(
                    delete(CacheEntryRecord).where(CacheEntryRecord.expires_at <= now)
                )
                return result.rowcount or 0

    async def purge_expired(self) -> int:
        removed = await self._execute("purge_expired", self._purge_expired)
        if removed:
            logger.debug(
                f"Purged {removed} expired rows from {self.level.value} level",
                extra={"level": self.level.value, "count": removed},
            )
        return removed

    async def _optimize(self) -> int:
        async with self._sessionmaker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(CacheEntryTag).where(
                        CacheEntryTag.key.not_in(select(CacheEntryRecord.key))
                    )
                )
                return result.rowcount or 0

    async def optimize(self) -> int:
        return await self._execute("optimize", self._optimize)

    def get_status(self) -> dict:
        return {
            "level": self.level.value,
            "backend": "sql",
            "initialized": self._initialized,
            "circuit_breaker": self.circuit_breaker.get_status(),
        }

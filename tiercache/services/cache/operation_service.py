"""
Cache Operation Service

Primary get/put/add/remember/forget/has/flush logic across cache levels.
Lookups probe levels fastest first and backfill faster levels on a slower
hit. Store failures degrade to misses on read and to False on write;
only producer failures from remember() reach the caller.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from opentelemetry import trace

from ...core.config import CacheConfiguration
from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import CacheProducerException, CacheValidationException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheKey, CacheLevel, LevelsArg
from .metrics_recorder import CacheMetricsRecorder

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

KeyArg = Union[CacheKey, str]

_MISSING = object()


async def call_producer(producer: Callable[[], Any]) -> Any:
    """Call a sync or async producer and return its value."""
    result = producer()
    if inspect.isawaitable(result):
        result = await result
    return result


class CacheOperationService:
    """
    Cross-level cache operations.

    Owns writes to the metrics recorder; nothing else increments it.
    """

    def __init__(
        self,
        repositories: Mapping[CacheLevel, LevelRepository],
        recorder: CacheMetricsRecorder,
        configuration: CacheConfiguration,
    ):
        self.repositories = dict(repositories)
        self.recorder = recorder
        self.configuration = configuration
        self._in_flight: Dict[str, asyncio.Future] = {}

    @property
    def prefix(self) -> str:
        return self.configuration.key_prefix

    def normalize(self, key: KeyArg) -> Tuple[CacheKey, str]:
        cache_key = CacheKey.coerce(key)
        return cache_key, cache_key.normalize(self.prefix)

    def is_enabled(self, level: CacheLevel) -> bool:
        return level in self.repositories and self.configuration.level(level).enabled

    def resolve_levels(
        self, levels: LevelsArg = None, cache_key: Optional[CacheKey] = None
    ) -> List[CacheLevel]:
        """Requested (or key-hinted, or all) levels that are enabled, fastest first."""
        if levels is not None:
            requested = CacheLevel.by_priority(levels)
        elif cache_key is not None and cache_key.levels:
            requested = list(cache_key.levels)
        else:
            requested = CacheLevel.ordered()
        return [level for level in requested if self.is_enabled(level)]

    def ttl_for(
        self, level: CacheLevel, ttl: Optional[int] = None, forever: bool = False
    ) -> int:
        level_config = self.configuration.level(level)
        if forever:
            return level_config.max_ttl
        return level.ttl_clamp(
            ttl, default_ttl=level_config.default_ttl, max_ttl=level_config.max_ttl
        )

    @staticmethod
    def _validate_ttl(ttl: Optional[int]) -> None:
        if ttl is not None and ttl < 0:
            raise CacheValidationException("TTL cannot be negative", field="ttl", value=ttl)

    # Reads

    async def _lookup(
        self, normalized: str, levels: List[CacheLevel]
    ) -> Tuple[Any, Optional[CacheLevel]]:
        start_time = time.perf_counter()

        for index, level in enumerate(levels):
            try:
                entry = await self.repositories[level].get(normalized)
            except Exception as e:
                logger.warning(
                    f"Cache get failed at {level.value} level, treating as miss: {e}",
                    extra={"level": level.value, "key": normalized},
                )
                entry = None

            if entry is None:
                self.recorder.record_level_miss(level)
                continue

            self.recorder.record_hit(level, time.perf_counter() - start_time)
            if index > 0:
                await self._backfill(normalized, entry, levels[:index])
            return entry.value, level

        self.recorder.record_miss(time.perf_counter() - start_time)
        return _MISSING, None

    async def _backfill(
        self, normalized: str, entry: CacheEntry, faster_levels: List[CacheLevel]
    ) -> None:
        """Copy a hit into faster levels without extending its lifetime."""
        for level in faster_levels:
            copy = entry.capped_copy(self.configuration.level(level).max_ttl)
            try:
                await self.repositories[level].put(normalized, copy)
                logger.debug(
                    f"Backfilled {normalized} into {level.value} level",
                    extra={
                        "level": level.value,
                        "key": normalized,
                        "expires_at": copy.expires_at,
                    },
                )
            except Exception as e:
                logger.warning(
                    f"Cache backfill failed at {level.value} level: {e}",
                    extra={"level": level.value, "key": normalized},
                )

    async def get(self, key: KeyArg, default: Any = None, levels: LevelsArg = None) -> Any:
        """Return the cached value from the fastest level holding it."""
        cache_key, normalized = self.normalize(key)
        targeted = self.resolve_levels(levels, cache_key)

        with tracer.start_as_current_span("cache.get") as span:
            span.set_attribute("cache.key", normalized)
            value, hit_level = await self._lookup(normalized, targeted)
            span.set_attribute("cache.hit", hit_level is not None)
            if hit_level is None:
                return default
            span.set_attribute("cache.level", hit_level.value)
            return value

    async def has(self, key: KeyArg, levels: LevelsArg = None) -> bool:
        _, normalized = self.normalize(key)
        for level in self.resolve_levels(levels, CacheKey.coerce(key)):
            try:
                if await self.repositories[level].has(normalized):
                    return True
            except Exception as e:
                logger.warning(
                    f"Cache has() failed at {level.value} level: {e}",
                    extra={"level": level.value, "key": normalized},
                )
        return False

    # Writes

    async def _store(
        self,
        cache_key: CacheKey,
        normalized: str,
        value: Any,
        ttl: Optional[int],
        levels: List[CacheLevel],
        forever: bool = False,
        only_if_absent: bool = False,
    ) -> Tuple[List[CacheLevel], bool]:
        """Write to each level. Returns (levels written, no level failed)."""
        effective_ttl = ttl if ttl is not None else cache_key.ttl
        stored: List[CacheLevel] = []
        all_ok = True

        for level in levels:
            entry = CacheEntry.create(
                value, self.ttl_for(level, effective_ttl, forever), cache_key.tags
            )
            if not level.is_suitable_for_size(entry.size_bytes):
                logger.debug(
                    f"Skipping {level.value} level for oversized value",
                    extra={"level": level.value, "size_bytes": entry.size_bytes},
                )
                continue
            repository = self.repositories[level]
            try:
                if only_if_absent:
                    if not await repository.add(normalized, entry):
                        all_ok = False
                        continue
                else:
                    await repository.put(normalized, entry)
                stored.append(level)
            except Exception as e:
                all_ok = False
                logger.warning(
                    f"Cache put failed at {level.value} level: {e}",
                    extra={"level": level.value, "key": normalized},
                )

        if stored:
            self.recorder.record_put(stored)
        return stored, all_ok and bool(stored or not levels)

    async def put(
        self,
        key: KeyArg,
        value: Any,
        ttl: Optional[int] = None,
        levels: LevelsArg = None,
    ) -> bool:
        """Store value at every enabled targeted level."""
        self._validate_ttl(ttl)
        cache_key, normalized = self.normalize(key)
        targeted = self.resolve_levels(levels, cache_key)

        if value is None:
            logger.debug(f"Refusing to cache None for {normalized}")
            return False
        if not targeted:
            return False

        with tracer.start_as_current_span("cache.put") as span:
            span.set_attribute("cache.key", normalized)
            stored, ok = await self._store(cache_key, normalized, value, ttl, targeted)
            span.set_attribute("cache.levels", [level.value for level in stored])
            if not ok:
                span.set_status(
                    trace.Status(trace.StatusCode.ERROR, "partial cache write")
                )
            return ok

    async def put_levels(
        self,
        key: KeyArg,
        value: Any,
        ttl: Optional[int] = None,
        levels: LevelsArg = None,
    ) -> List[CacheLevel]:
        """Like put() but reports which levels were written."""
        self._validate_ttl(ttl)
        cache_key, normalized = self.normalize(key)
        targeted = self.resolve_levels(levels, cache_key)
        if value is None or not targeted:
            return []
        stored, _ = await self._store(cache_key, normalized, value, ttl, targeted)
        return stored

    async def add(
        self,
        key: KeyArg,
        value: Any,
        ttl: Optional[int] = None,
        levels: LevelsArg = None,
    ) -> bool:
        """Store only if the key is absent from every targeted level."""
        self._validate_ttl(ttl)
        cache_key, normalized = self.normalize(key)
        targeted = self.resolve_levels(levels, cache_key)
        if value is None or not targeted:
            return False

        if await self.has(cache_key, targeted):
            return False

        _, ok = await self._store(
            cache_key, normalized, value, ttl, targeted, only_if_absent=True
        )
        return ok

    async def _produce_and_store(
        self,
        cache_key: CacheKey,
        normalized: str,
        producer: Callable[[], Any],
        ttl: Optional[int],
        targeted: List[CacheLevel],
        forever: bool,
    ) -> Any:
        try:
            value = await call_producer(producer)
        except Exception as e:
            logger.error(
                f"Cache producer failed for {normalized}: {e}",
                extra={"key": normalized},
            )
            raise CacheProducerException(key=normalized, original_error=e) from e

        if value is not None and targeted:
            await self._store(cache_key, normalized, value, ttl, targeted, forever)
        return value

    async def _remember(
        self,
        key: KeyArg,
        ttl: Optional[int],
        producer: Callable[[], Any],
        levels: LevelsArg,
        forever: bool,
    ) -> Any:
        self._validate_ttl(ttl)
        cache_key, normalized = self.normalize(key)
        targeted = self.resolve_levels(levels, cache_key)

        with tracer.start_as_current_span("cache.remember") as span:
            span.set_attribute("cache.key", normalized)
            value, hit_level = await self._lookup(normalized, targeted)
            if hit_level is not None:
                span.set_attribute("cache.hit", True)
                return value
            span.set_attribute("cache.hit", False)

            if not self.configuration.remember_coalesce:
                return await self._produce_and_store(
                    cache_key, normalized, producer, ttl, targeted, forever
                )

            in_flight = self._in_flight.get(normalized)
            if in_flight is not None:
                span.set_attribute("cache.coalesced", True)
                return await asyncio.shield(in_flight)

            future = asyncio.get_running_loop().create_future()
            self._in_flight[normalized] = future
            try:
                value = await self._produce_and_store(
                    cache_key, normalized, producer, ttl, targeted, forever
                )
                future.set_result(value)
                return value
            except BaseException as e:
                future.set_exception(e)
                # Mark retrieved so an unawaited failure is not logged at GC
                future.exception()
                raise
            finally:
                self._in_flight.pop(normalized, None)

    async def remember(
        self,
        key: KeyArg,
        ttl: Optional[int],
        producer: Callable[[], Any],
        levels: LevelsArg = None,
    ) -> Any:
        """Return the cached value or compute, store and return it.

        A None result is returned but not cached. Producer errors raise
        CacheProducerException.
        """
        return await self._remember(key, ttl, producer, levels, forever=False)

    async def remember_forever(
        self, key: KeyArg, producer: Callable[[], Any], levels: LevelsArg = None
    ) -> Any:
        """remember() storing at each level's maximum TTL."""
        return await self._remember(key, None, producer, levels, forever=True)

    async def forget(self, key: KeyArg, levels: LevelsArg = None) -> bool:
        """Remove key from every enabled targeted level."""
        cache_key, normalized = self.normalize(key)
        targeted = self.resolve_levels(levels, cache_key)
        removed_from: List[CacheLevel] = []
        ok = True

        for level in targeted:
            try:
                if await self.repositories[level].forget(normalized):
                    removed_from.append(level)
            except Exception as e:
                ok = False
                logger.warning(
                    f"Cache forget failed at {level.value} level: {e}",
                    extra={"level": level.value, "key": normalized},
                )

        if removed_from:
            self.recorder.record_delete(removed_from)
        return ok

    async def flush(self, levels: LevelsArg = None) -> bool:
        """Remove every entry from the targeted levels."""
        ok = True
        with tracer.start_as_current_span("cache.flush") as span:
            for level in self.resolve_levels(levels):
                try:
                    await self.repositories[level].flush()
                    logger.info(
                        f"Flushed {level.value} cache level",
                        extra={"level": level.value},
                    )
                except Exception as e:
                    ok = False
                    logger.error(f"Cache flush failed at {level.value} level: {e}")
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
        return ok

    # Level control

    def toggle_level(self, level: Union[CacheLevel, str], enabled: bool) -> bool:
        try:
            cache_level = CacheLevel.coerce(level)
        except CacheValidationException as e:
            logger.warning(f"Cannot toggle cache level: {e.message}")
            return False
        if cache_level not in self.repositories:
            return False
        self.configuration.level(cache_level).enabled = bool(enabled)
        logger.info(
            f"Cache level {cache_level.value} {'enabled' if enabled else 'disabled'}",
            extra={"level": cache_level.value, "enabled": bool(enabled)},
        )
        return True

    def get_enabled_levels(self) -> List[CacheLevel]:
        return [level for level in CacheLevel.ordered() if self.is_enabled(level)]

    def get_disabled_levels(self) -> List[CacheLevel]:
        return [level for level in CacheLevel.ordered() if not self.is_enabled(level)]

    def enable_all_levels(self) -> None:
        for level in self.repositories:
            self.configuration.level(level).enabled = True

    def disable_all_levels(self) -> None:
        for level in self.repositories:
            self.configuration.level(level).enabled = False

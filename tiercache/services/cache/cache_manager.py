"""
Cache Manager Service

High-level cache management service that composes the level repositories
and the operation, statistics, invalidation, warming, validation and
maintenance services behind one interface.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from opentelemetry import trace
from pydantic import ValidationError

from ...core.config import CacheConfiguration, CacheSettings, get_settings
from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import CacheException, CacheValidationException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel, LevelsArg
from ...infrastructure.circuit_breaker import CircuitBreakerConfig
from ...infrastructure.repositories import (
    InMemoryLevelRepository,
    RedisLevelRepository,
    RequestLevelRepository,
    SqlLevelRepository,
)
from .invalidation_service import CacheInvalidationService
from .maintenance_service import DEFAULT_OPERATIONS, CacheMaintenanceService
from .metrics_recorder import CacheMetricsRecorder
from .operation_service import CacheOperationService, KeyArg
from .statistics_service import CacheStatisticsService
from .validation_service import CacheValidationService
from .warming_service import CacheWarmingService, Warmers

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CONFIGURATION_TAGS = ["configuration", "config"]
STATUS_NAMESPACE = "__status__"


def build_repositories(settings: CacheSettings) -> Dict[CacheLevel, LevelRepository]:
    """Level repositories for the configured backends."""
    breaker_config = CircuitBreakerConfig(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT,
        success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
        operation_timeout=settings.STORE_OPERATION_TIMEOUT,
    )

    if settings.is_redis_memory:
        memory: LevelRepository = RedisLevelRepository(
            url=settings.REDIS_URL,
            key_prefix=settings.KEY_PREFIX,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            breaker_config=breaker_config,
        )
    else:
        memory = InMemoryLevelRepository(level=CacheLevel.MEMORY)

    if settings.is_sql_database:
        database: LevelRepository = SqlLevelRepository(
            url=settings.DATABASE_URL, breaker_config=breaker_config
        )
    else:
        database = InMemoryLevelRepository(level=CacheLevel.DATABASE)

    return {
        CacheLevel.REQUEST: RequestLevelRepository(),
        CacheLevel.MEMORY: memory,
        CacheLevel.DATABASE: database,
    }


class CacheManager:
    """
    Multi-level cache manager.

    Provides a unified interface for cache reads and writes, invalidation,
    warming, statistics, validation and maintenance across the REQUEST,
    MEMORY and DATABASE levels.
    """

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        configuration: Optional[CacheConfiguration] = None,
        repositories: Optional[Mapping[CacheLevel, LevelRepository]] = None,
        recorder: Optional[CacheMetricsRecorder] = None,
    ):
        self.settings = settings or get_settings()
        self.configuration = configuration or CacheConfiguration.from_settings(
            self.settings
        )
        self.repositories: Dict[CacheLevel, LevelRepository] = (
            dict(repositories)
            if repositories is not None
            else build_repositories(self.settings)
        )
        self.recorder = recorder or CacheMetricsRecorder(self.settings.STATS_SAMPLE_SIZE)

        self.operations = CacheOperationService(
            self.repositories, self.recorder, self.configuration
        )
        self.statistics = CacheStatisticsService(
            self.recorder, self.repositories, self.configuration
        )
        self.invalidation = CacheInvalidationService(self.operations, self.repositories)
        self.warming = CacheWarmingService(self.operations, self.configuration)
        self.validation = CacheValidationService(
            self.repositories, self.statistics, self.configuration
        )
        self.maintenance_service = CacheMaintenanceService(
            self.operations, self.repositories
        )

        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize store connections for every level."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return
            with tracer.start_as_current_span("cache_manager.initialize") as span:
                try:
                    for repository in self.repositories.values():
                        await repository.initialize()
                    self._initialized = True
                    logger.info(
                        "Cache manager initialized successfully",
                        extra={"levels": [level.value for level in self.repositories]},
                    )
                except Exception as e:
                    logger.error(f"Failed to initialize cache manager: {e}")
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                    raise

    async def close(self) -> None:
        """Close store connections."""
        for level, repository in self.repositories.items():
            try:
                await repository.close()
            except Exception as e:
                logger.error(
                    f"Failed to close {level.value} cache level: {e}",
                    extra={"level": level.value},
                )
        self._initialized = False
        logger.info("Cache manager closed successfully")

    @contextlib.contextmanager
    def request_scope(self) -> Iterator[None]:
        """Bind a fresh REQUEST level store for the duration of the block."""
        repository = self.repositories.get(CacheLevel.REQUEST)
        if isinstance(repository, RequestLevelRepository):
            with repository.scope():
                yield
        else:
            yield

    # Core operations

    async def get(self, key: KeyArg, default: Any = None, levels: LevelsArg = None) -> Any:
        return await self.operations.get(key, default, levels)

    async def put(
        self, key: KeyArg, value: Any, ttl: Optional[int] = None, levels: LevelsArg = None
    ) -> bool:
        return await self.operations.put(key, value, ttl, levels)

    async def add(
        self, key: KeyArg, value: Any, ttl: Optional[int] = None, levels: LevelsArg = None
    ) -> bool:
        return await self.operations.add(key, value, ttl, levels)

    async def remember(
        self,
        key: KeyArg,
        ttl: Optional[int],
        producer: Callable[[], Any],
        levels: LevelsArg = None,
    ) -> Any:
        return await self.operations.remember(key, ttl, producer, levels)

    async def remember_forever(
        self, key: KeyArg, producer: Callable[[], Any], levels: LevelsArg = None
    ) -> Any:
        return await self.operations.remember_forever(key, producer, levels)

    async def forget(self, key: KeyArg, levels: LevelsArg = None) -> bool:
        return await self.operations.forget(key, levels)

    async def has(self, key: KeyArg, levels: LevelsArg = None) -> bool:
        return await self.operations.has(key, levels)

    async def flush(self, levels: LevelsArg = None) -> bool:
        return await self.operations.flush(levels)

    # Warming

    async def warm(
        self,
        warmers: Warmers,
        levels: LevelsArg = None,
        verbose: bool = False,
        ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self.warming.warm(warmers, levels=levels, verbose=verbose, ttl=ttl)

    # Invalidation

    async def invalidate(self, key: KeyArg, levels: LevelsArg = None) -> bool:
        return await self.invalidation.invalidate(key, levels)

    async def invalidate_by_tags(
        self, tags: Union[str, Iterable[str]], levels: LevelsArg = None
    ) -> bool:
        return await self.invalidation.invalidate_by_tags(tags, levels)

    async def invalidate_by_pattern(self, pattern: str, levels: LevelsArg = None) -> bool:
        return await self.invalidation.invalidate_by_pattern(pattern, levels)

    async def invalidate_by_namespace(
        self, namespace: str, levels: LevelsArg = None, cascade: bool = True
    ) -> bool:
        return await self.invalidation.invalidate_by_namespace(namespace, levels, cascade)

    async def invalidate_for_model(self, model_name: str) -> Dict[str, bool]:
        return await self.invalidation.invalidate_for_model(model_name)

    def add_dependency(self, source: KeyArg, dependent: KeyArg) -> None:
        self.invalidation.add_dependency(source, dependent)

    def remove_dependency(self, source: KeyArg, dependent: Optional[KeyArg] = None) -> bool:
        return self.invalidation.remove_dependency(source, dependent)

    # Statistics

    def get_stats(self, levels: LevelsArg = None) -> Dict[str, Any]:
        stats = self.statistics.get_stats(levels)
        stats["invalidation"] = self.invalidation.get_stats()
        stats["warming"] = self.warming.get_stats()
        return stats

    def get_hit_ratio(self, levels: LevelsArg = None) -> float:
        return self.statistics.get_hit_ratio(levels)

    def get_average_response_time(self, levels: LevelsArg = None) -> float:
        return self.statistics.get_average_response_time(levels)

    async def get_size(self, levels: LevelsArg = None) -> Dict[CacheLevel, int]:
        return await self.statistics.get_size(levels)

    async def get_cache_size(self, levels: LevelsArg = None) -> Dict[str, Any]:
        return await self.statistics.get_cache_size(levels)

    def reset_stats(self) -> None:
        self.statistics.reset_stats()
        self.invalidation.reset_stats()

    def export_metrics(self) -> str:
        return self.statistics.export_metrics()

    # Validation and maintenance

    async def validate_performance(
        self, duration_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        return await self.validation.validate_performance(duration_seconds)

    async def validate_cache_capacity(self) -> Dict[str, Any]:
        return await self.validation.validate_cache_capacity()

    async def validate_concurrent_operations(
        self, target_rpm: Optional[int] = None, duration_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        return await self.validation.validate_concurrent_operations(
            target_rpm, duration_seconds
        )

    async def manage_capacity(self) -> Dict[str, Any]:
        return await self.validation.manage_capacity()

    async def maintenance(
        self, operations: Iterable[str] = DEFAULT_OPERATIONS
    ) -> Dict[str, bool]:
        return await self.maintenance_service.maintenance(operations)

    async def maintain_database_cache(
        self, operations: Iterable[str] = CacheMaintenanceService.SUPPORTED_OPERATIONS
    ) -> Dict[str, Any]:
        return await self.maintenance_service.maintain_database_cache(operations)

    # Level control

    def toggle_level(self, level: Union[CacheLevel, str], enabled: bool) -> bool:
        return self.operations.toggle_level(level, enabled)

    def get_enabled_levels(self) -> List[CacheLevel]:
        return self.operations.get_enabled_levels()

    def get_disabled_levels(self) -> List[CacheLevel]:
        return self.operations.get_disabled_levels()

    def enable_all_levels(self) -> None:
        self.operations.enable_all_levels()

    def disable_all_levels(self) -> None:
        self.operations.disable_all_levels()

    async def _probe_level(self, level: CacheLevel) -> Dict[str, Any]:
        repository = self.repositories[level]
        key = f"{self.configuration.key_prefix}:{STATUS_NAMESPACE}:{uuid.uuid4().hex}"
        start_time = time.perf_counter()
        try:
            await repository.put(key, CacheEntry.create("ok", 10))
            entry = await repository.get(key)
            await repository.forget(key)
            healthy = entry is not None and entry.value == "ok"
            return {
                "status": "healthy" if healthy else "unhealthy",
                "response_time_ms": round((time.perf_counter() - start_time) * 1000, 3),
            }
        except Exception as e:
            message = e.message if isinstance(e, CacheException) else str(e)
            logger.warning(
                f"Health probe failed at {level.value} level: {message}",
                extra={"level": level.value},
            )
            return {"status": "unhealthy", "error": message}

    async def get_level_status_summary(self) -> Dict[str, Any]:
        """Health probe and capabilities for each level."""
        summary: Dict[str, Any] = {}
        for level in CacheLevel.ordered():
            entry: Dict[str, Any] = {
                "enabled": self.operations.is_enabled(level),
                "available": level in self.repositories,
                "capabilities": level.info.to_dict(),
            }
            if not entry["available"]:
                entry["status"] = "unavailable"
            elif not entry["enabled"]:
                entry["status"] = "disabled"
            else:
                entry.update(await self._probe_level(level))

            repository = self.repositories.get(level)
            get_status = getattr(repository, "get_status", None)
            if get_status is not None:
                entry["store"] = get_status()
            summary[level.value] = entry
        return summary

    # Configuration

    def get_configuration(self) -> Dict[str, Any]:
        return self.configuration.model_dump(mode="json")

    def _apply_configuration(self, configuration: CacheConfiguration) -> None:
        self.configuration = configuration
        for service in (
            self.operations,
            self.statistics,
            self.warming,
            self.validation,
        ):
            service.configuration = configuration

    async def update_configuration(self, changes: Dict[str, Any]) -> bool:
        """Deep-merge changes, validate, apply and drop configuration-tagged entries."""
        try:
            for name in (changes.get("levels") or {}):
                CacheLevel.coerce(name)
            configuration = self.configuration.merged(changes)
        except (CacheValidationException, ValidationError) as e:
            logger.warning(
                f"Rejected cache configuration update: {e}",
                extra={"changes": list(changes)},
            )
            return False

        self._apply_configuration(configuration)
        await self.invalidation.invalidate_by_tags(CONFIGURATION_TAGS)
        logger.info(
            "Cache configuration updated", extra={"changes": list(changes)}
        )
        return True


@lru_cache()
def get_cache_manager() -> CacheManager:
    """Get the process-wide cache manager."""
    return CacheManager()

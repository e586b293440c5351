"""
Cache Maintenance Service

Housekeeping across cache levels: purging expired entries, pruning tag
indexes and verifying that every level still round-trips a value.
"""

import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Mapping

from opentelemetry import trace

from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import CacheException, CacheReportableException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel, ValidationStatus
from .operation_service import CacheOperationService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_OPERATIONS = ("cleanup", "optimize")
MAINTENANCE_NAMESPACE = "__maintenance__"


class CacheMaintenanceService:
    """Runs named maintenance operations against cache levels."""

    SUPPORTED_OPERATIONS = ("cleanup", "optimize", "validate")

    def __init__(
        self,
        operations: CacheOperationService,
        repositories: Mapping[CacheLevel, LevelRepository],
    ):
        self.operations = operations
        self.repositories = dict(repositories)

    async def _cleanup(self, level: CacheLevel) -> int:
        return await self.repositories[level].purge_expired()

    async def _optimize(self, level: CacheLevel) -> int:
        return await self.repositories[level].optimize()

    async def _validate(self, level: CacheLevel) -> bool:
        repository = self.repositories[level]
        key = f"{self.operations.prefix}:{MAINTENANCE_NAMESPACE}:{uuid.uuid4().hex}"
        probe = {"probe": uuid.uuid4().hex}
        await repository.put(key, CacheEntry.create(probe, 60))
        try:
            entry = await repository.get(key)
        finally:
            await repository.forget(key)
        if entry is None or entry.value != probe:
            raise CacheReportableException(
                f"Integrity probe failed at {level.value} level", check="validate"
            )
        return True

    async def _run(self, operation: str, levels: List[CacheLevel]) -> Dict[str, Any]:
        """Run one operation on each level and report per-level details."""
        start_time = time.perf_counter()
        handler = {
            "cleanup": self._cleanup,
            "optimize": self._optimize,
            "validate": self._validate,
        }.get(operation)

        if handler is None:
            logger.warning(
                f"Unknown cache maintenance operation: {operation}",
                extra={"operation": operation},
            )
            return {
                "success": False,
                "duration_seconds": 0.0,
                "details": {"error": f"Unknown operation: {operation}"},
            }

        success = True
        details: Dict[str, Any] = {}
        for level in levels:
            try:
                details[level.value] = await handler(level)
            except Exception as e:
                success = False
                message = e.message if isinstance(e, CacheException) else str(e)
                details[level.value] = {"error": message}
                logger.error(
                    f"Maintenance {operation} failed at {level.value} level: {message}",
                    extra={"operation": operation, "level": level.value},
                )

        return {
            "success": success,
            "duration_seconds": round(time.perf_counter() - start_time, 4),
            "details": details,
        }

    async def maintenance(
        self, operations: Iterable[str] = DEFAULT_OPERATIONS
    ) -> Dict[str, bool]:
        """Run operations on every enabled level. Unknown operations map to False."""
        results: Dict[str, bool] = {}
        levels = self.operations.get_enabled_levels()
        with tracer.start_as_current_span("cache.maintenance") as span:
            for operation in operations:
                report = await self._run(operation, levels)
                results[operation] = report["success"]
            span.set_attribute("cache.maintenance.operations", list(results))
        logger.info("Cache maintenance completed", extra={"results": results})
        return results

    async def maintain_database_cache(
        self, operations: Iterable[str] = SUPPORTED_OPERATIONS
    ) -> Dict[str, Any]:
        """Detailed maintenance report for the database level."""
        if not self.operations.is_enabled(CacheLevel.DATABASE):
            return {
                "operations": {},
                "overall_status": ValidationStatus.ERROR.value,
                "error": "Database cache level is not available",
            }

        reports: Dict[str, Any] = {}
        for operation in operations:
            reports[operation] = await self._run(operation, [CacheLevel.DATABASE])

        all_ok = all(report["success"] for report in reports.values())
        return {
            "operations": reports,
            "overall_status": ValidationStatus.PASS.value
            if all_ok
            else ValidationStatus.FAIL.value,
        }

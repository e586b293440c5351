"""
Cache Validation Service

SLA checks for the cache levels: round-trip latency, sustained throughput,
hit ratio, capacity usage and concurrent operation handling. Every check
returns a report with an ``overall_status``; failures inside a check are
reported, never raised.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set

from opentelemetry import trace

from ...core.config import CacheConfiguration
from ...domain.cache.domain_services import CapacityPolicy
from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import CacheException, CacheReportableException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel, CapacityStatus, ValidationStatus
from .statistics_service import CacheStatisticsService, format_bytes

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

VALIDATION_NAMESPACE = "__validation__"
LATENCY_ITERATIONS = 10
MINIMUM_SUCCESS_RATE = 95.0
PROBE_TTL = 60


def meets_concurrency_requirements(
    actual_rpm: float, target_rpm: float, success_rate: float
) -> bool:
    """A concurrency run passes when it reaches the target rate with >= 95% success."""
    return actual_rpm >= target_rpm and success_rate >= MINIMUM_SUCCESS_RATE


def _error_report(error: Exception) -> Dict[str, Any]:
    message = error.message if isinstance(error, CacheException) else str(error)
    return {"overall_status": ValidationStatus.ERROR.value, "error": message}


def _combine(statuses: List[str]) -> str:
    if ValidationStatus.ERROR.value in statuses:
        return ValidationStatus.ERROR.value
    if ValidationStatus.FAIL.value in statuses:
        return ValidationStatus.FAIL.value
    return ValidationStatus.PASS.value


class CacheValidationService:
    """Performance, capacity and concurrency validation."""

    def __init__(
        self,
        repositories: Mapping[CacheLevel, LevelRepository],
        statistics: CacheStatisticsService,
        configuration: CacheConfiguration,
    ):
        self.repositories = dict(repositories)
        self.statistics = statistics
        self.configuration = configuration
        self.last_report: Optional[Dict[str, Any]] = None
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def policy(self) -> CapacityPolicy:
        validation = self.configuration.validation
        return CapacityPolicy(validation.warning_threshold, validation.critical_threshold)

    def _enabled_levels(self) -> List[CacheLevel]:
        return [
            level
            for level in self.configuration.enabled_levels
            if level in self.repositories
        ]

    def _probe_key(self) -> str:
        return f"{self.configuration.key_prefix}:{VALIDATION_NAMESPACE}:{uuid.uuid4().hex}"

    async def _round_trip(self, repository: LevelRepository, key: str) -> None:
        token = uuid.uuid4().hex
        await repository.put(key, CacheEntry.create({"token": token}, PROBE_TTL))
        entry = await repository.get(key)
        await repository.forget(key)
        if entry is None or entry.value != {"token": token}:
            raise CacheReportableException(
                f"Round trip mismatch at {repository.level.value} level", check="round_trip"
            )

    # Latency

    async def validate_latency(self, iterations: int = LATENCY_ITERATIONS) -> Dict[str, Any]:
        """Average put+get+forget round trip against the per-level targets."""
        targets = {
            CacheLevel.MEMORY: self.configuration.validation.memory_latency_ms,
            CacheLevel.DATABASE: self.configuration.validation.database_latency_ms,
        }
        try:
            checked = [level for level in targets if level in self._enabled_levels()]
            if not checked:
                raise CacheReportableException(
                    "No memory or database level is available", check="latency"
                )

            levels: Dict[str, Any] = {}
            for level in checked:
                repository = self.repositories[level]
                samples: List[float] = []
                for _ in range(max(1, iterations)):
                    start_time = time.perf_counter()
                    await self._round_trip(repository, self._probe_key())
                    samples.append((time.perf_counter() - start_time) * 1000)

                samples.sort()
                average = sum(samples) / len(samples)
                passed = average <= targets[level]
                levels[level.value] = {
                    "average_ms": round(average, 3),
                    "max_ms": round(samples[-1], 3),
                    "p95_ms": round(samples[min(len(samples) - 1, int(len(samples) * 0.95))], 3),
                    "target_ms": targets[level],
                    "iterations": len(samples),
                    "status": ValidationStatus.PASS.value if passed else ValidationStatus.FAIL.value,
                }

            return {
                "overall_status": _combine([item["status"] for item in levels.values()]),
                "levels": levels,
            }
        except Exception as e:
            logger.error(f"Latency validation failed: {e}")
            return _error_report(e)

    # Throughput and concurrency

    async def _worker(
        self, levels: List[CacheLevel], deadline: float, counters: Dict[str, int]
    ) -> None:
        while time.perf_counter() < deadline:
            key = self._probe_key()
            for level in levels:
                repository = self.repositories[level]
                for operation in ("put", "get", "forget"):
                    try:
                        if operation == "put":
                            await repository.put(key, CacheEntry.create(key, PROBE_TTL))
                        elif operation == "get":
                            entry = await repository.get(key)
                            if entry is None:
                                raise CacheReportableException(
                                    f"Probe missing at {level.value} level"
                                )
                        else:
                            await repository.forget(key)
                        counters["successful"] += 1
                    except Exception:
                        counters["failed"] += 1
            await asyncio.sleep(0)

    async def _run_workers(
        self, levels: List[CacheLevel], duration_seconds: float, concurrency: int
    ) -> Dict[str, Any]:
        counters = {"successful": 0, "failed": 0}
        start_time = time.perf_counter()
        deadline = start_time + duration_seconds
        await asyncio.gather(
            *(self._worker(levels, deadline, counters) for _ in range(max(1, concurrency)))
        )
        elapsed = max(time.perf_counter() - start_time, 1e-9)
        total = counters["successful"] + counters["failed"]
        rps = total / elapsed
        return {
            "levels": [level.value for level in levels],
            "total_operations": total,
            "successful_operations": counters["successful"],
            "failed_operations": counters["failed"],
            "duration_seconds": round(elapsed, 3),
            "actual_rps": round(rps, 2),
            "actual_rpm": round(rps * 60, 2),
            "success_rate": round(counters["successful"] / total * 100, 2) if total else 0.0,
        }

    async def _run_per_level_and_combined(
        self, duration_seconds: float
    ) -> Dict[str, Dict[str, Any]]:
        levels = self._enabled_levels()
        if not levels:
            raise CacheReportableException("No cache levels are enabled", check="throughput")

        # Split the time budget between each level and the combined run
        slice_seconds = duration_seconds / (len(levels) + 1)
        concurrency = self.configuration.validation.concurrency
        runs: Dict[str, Dict[str, Any]] = {}
        for level in levels:
            runs[level.value] = await self._run_workers([level], slice_seconds, concurrency)
        runs["combined"] = await self._run_workers(levels, slice_seconds, concurrency)
        return runs

    async def validate_throughput(
        self, duration_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        """Sustained operation rate per level and combined against the target RPM."""
        duration = duration_seconds or self.configuration.validation.duration_seconds
        target_rpm = self.configuration.validation.target_rpm
        with tracer.start_as_current_span("cache.validate_throughput") as span:
            try:
                runs = await self._run_per_level_and_combined(duration)
                combined = runs["combined"]
                passed = combined["actual_rpm"] >= target_rpm
                span.set_attribute("cache.actual_rpm", combined["actual_rpm"])
                return {
                    "overall_status": ValidationStatus.PASS.value
                    if passed
                    else ValidationStatus.FAIL.value,
                    "target_rpm": target_rpm,
                    "actual_rpm": combined["actual_rpm"],
                    "runs": runs,
                }
            except Exception as e:
                logger.error(f"Throughput validation failed: {e}")
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                return _error_report(e)

    async def validate_concurrent_operations(
        self, target_rpm: Optional[int] = None, duration_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Concurrent put/get/forget workers per level and combined.

        target_rpm and duration_seconds default to the validation configuration.
        Every run reports its own meets_requirements; the overall status follows
        the combined run.
        """
        duration = duration_seconds or self.configuration.validation.duration_seconds
        if target_rpm is None:
            target_rpm = self.configuration.validation.target_rpm
        with tracer.start_as_current_span("cache.validate_concurrency") as span:
            try:
                runs = await self._run_per_level_and_combined(duration)
                for run in runs.values():
                    run["meets_requirements"] = meets_concurrency_requirements(
                        run["actual_rpm"], target_rpm, run["success_rate"]
                    )
                combined = runs["combined"]
                meets = combined["meets_requirements"]
                span.set_attribute("cache.meets_requirements", meets)
                return {
                    "overall_status": ValidationStatus.PASS.value
                    if meets
                    else ValidationStatus.FAIL.value,
                    "runs": runs,
                    "summary": {
                        "target_rpm": target_rpm,
                        "actual_rpm": combined["actual_rpm"],
                        "success_rate": combined["success_rate"],
                        "concurrency": self.configuration.validation.concurrency,
                        "meets_requirements": meets,
                    },
                }
            except Exception as e:
                logger.error(f"Concurrency validation failed: {e}")
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                return _error_report(e)

    # Hit ratio

    def validate_hit_ratio(self) -> Dict[str, Any]:
        try:
            ratio = self.statistics.get_hit_ratio()
            target = self.configuration.validation.target_hit_ratio
            return {
                "overall_status": ValidationStatus.PASS.value
                if ratio >= target
                else ValidationStatus.FAIL.value,
                "hit_ratio": ratio,
                "target_hit_ratio": target,
            }
        except Exception as e:
            logger.error(f"Hit ratio validation failed: {e}")
            return _error_report(e)

    async def validate_performance(
        self, duration_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        """Latency, throughput and hit ratio in one report."""
        with tracer.start_as_current_span("cache.validate_performance"):
            validations = {
                "latency": await self.validate_latency(),
                "throughput": await self.validate_throughput(duration_seconds),
                "hit_ratio": self.validate_hit_ratio(),
            }

        recommendations: List[str] = []
        latency = validations["latency"].get("levels", {})
        for level, result in latency.items():
            if result["status"] == ValidationStatus.FAIL.value:
                recommendations.append(
                    f"{level} level latency {result['average_ms']}ms exceeds "
                    f"{result['target_ms']}ms; check store health and network"
                )
        if validations["throughput"]["overall_status"] == ValidationStatus.FAIL.value:
            recommendations.append(
                "Throughput is below target; raise connection pool sizes or concurrency"
            )
        if validations["hit_ratio"]["overall_status"] == ValidationStatus.FAIL.value:
            recommendations.append(
                "Hit ratio is below target; consider cache warming or longer TTLs"
            )

        return {
            "overall_status": _combine(
                [report["overall_status"] for report in validations.values()]
            ),
            "validations": validations,
            "recommendations": recommendations,
        }

    # Capacity

    async def validate_cache_capacity(self) -> Dict[str, Any]:
        """Usage per level and in total against the configured byte budgets."""
        try:
            policy = self.policy
            sizes = await self.statistics.get_level_sizes()
            levels: Dict[str, Any] = {}
            statuses: List[CapacityStatus] = []
            warnings: List[str] = []
            recommendations: List[str] = []

            for level, size in sizes.items():
                budget = self.configuration.level(level).capacity_budget
                usage = policy.usage_percent(size.size_bytes, budget)
                # Classify the unrounded usage
                status = policy.classify(usage)
                statuses.append(status)
                levels[level.value] = {
                    "used_bytes": size.size_bytes,
                    "used_human": format_bytes(size.size_bytes),
                    "budget_bytes": budget,
                    "budget_human": format_bytes(budget),
                    "entries": size.entries,
                    "usage_percent": round(usage, 2),
                    "status": status.value,
                }
                if status != CapacityStatus.OK:
                    warnings.append(f"{level.value} level at {usage:.2f}% of capacity")
                if status == CapacityStatus.CRITICAL:
                    recommendations.append(
                        f"Run manage_capacity() or raise the {level.value} level budget"
                    )
                elif status == CapacityStatus.WARNING:
                    recommendations.append(
                        f"Purge expired entries on the {level.value} level"
                    )

            total_used = sum(size.size_bytes for size in sizes.values())
            total_budget = self.configuration.total_capacity_budget
            total_usage = policy.usage_percent(total_used, total_budget)
            total_status = policy.classify(total_usage)
            statuses.append(total_status)
            if total_status != CapacityStatus.OK:
                warnings.append(f"Total cache usage at {total_usage:.2f}% of capacity")

            capacity_status = CapacityStatus.worst(statuses)
            return {
                "overall_status": ValidationStatus.FAIL.value
                if capacity_status == CapacityStatus.CRITICAL
                else ValidationStatus.PASS.value,
                "capacity_status": capacity_status.value,
                "levels": levels,
                "total": {
                    "used_bytes": total_used,
                    "budget_bytes": total_budget,
                    "usage_percent": round(total_usage, 2),
                    "status": total_status.value,
                },
                "warnings": warnings,
                "recommendations": recommendations,
            }
        except Exception as e:
            logger.error(f"Capacity validation failed: {e}")
            return _error_report(e)

    async def manage_capacity(self) -> Dict[str, Any]:
        """Purge on warning; also flush REQUEST and evict MEMORY on critical."""
        with tracer.start_as_current_span("cache.manage_capacity") as span:
            try:
                before = await self.validate_cache_capacity()
                if before["overall_status"] == ValidationStatus.ERROR.value:
                    raise CacheReportableException(before["error"], check="capacity")

                status = CapacityStatus(before["capacity_status"])
                actions: List[str] = []

                if status.severity >= CapacityStatus.WARNING.severity:
                    for level in self._enabled_levels():
                        purged = await self.repositories[level].purge_expired()
                        actions.append(
                            f"Purged {purged} expired entries from {level.value} level"
                        )

                if status == CapacityStatus.CRITICAL:
                    if CacheLevel.REQUEST in self.repositories:
                        await self.repositories[CacheLevel.REQUEST].flush()
                        actions.append("Flushed request level")
                    memory = self.repositories.get(CacheLevel.MEMORY)
                    evict = getattr(memory, "evict_to_budget", None)
                    if evict is not None:
                        budget = self.configuration.level(CacheLevel.MEMORY).capacity_budget
                        target = int(budget * self.policy.warning_threshold / 100)
                        evicted = await evict(target)
                        actions.append(f"Evicted {evicted} entries from memory level")

                after = await self.validate_cache_capacity()
                success = after.get("capacity_status") != CapacityStatus.CRITICAL.value
                span.set_attribute("cache.capacity_before", status.value)
                logger.info(
                    f"Capacity management finished with {len(actions)} actions",
                    extra={"status_before": status.value, "actions": actions},
                )
                return {
                    "capacity_before": before,
                    "actions_taken": actions,
                    "capacity_after": after,
                    "success": success,
                }
            except Exception as e:
                logger.error(f"Capacity management failed: {e}")
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                report = _error_report(e)
                report["success"] = False
                return report

    # Orchestration

    async def validate_all(self, duration_seconds: Optional[float] = None) -> Dict[str, Any]:
        report: Dict[str, Any] = {
            "performance": await self.validate_performance(duration_seconds),
            "capacity": await self.validate_cache_capacity(),
            "concurrency": await self.validate_concurrent_operations(
                duration_seconds=duration_seconds
            ),
        }
        report["overall_status"] = _combine(
            [section["overall_status"] for section in report.values()]
        )
        self.last_report = report
        return report

    def start_background_validation(
        self, duration_seconds: Optional[float] = None
    ) -> asyncio.Task:
        """Schedule validate_all() without blocking the caller."""
        task = asyncio.create_task(self.validate_all(duration_seconds))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        logger.info("Background cache validation scheduled")
        return task

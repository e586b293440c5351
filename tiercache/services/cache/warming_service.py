"""
Cache Warming Service

Batched, timeout-guarded proactive population of cache entries. Batches
run one after another with a short pause between them; items inside a
batch run concurrently up to a bound. One failing producer never aborts
the rest of the run.
"""

import asyncio
import inspect
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import psutil
from opentelemetry import trace

from ...core.config import CacheConfiguration
from ...domain.cache.entities import WarmingItemResult, WarmingJob, estimate_size
from ...domain.cache.exceptions import (
    CacheProducerTimeoutException,
    CacheValidationException,
)
from ...domain.cache.value_objects import (
    CacheKey,
    LevelsArg,
    WarmingErrorType,
    WarmingStatus,
)
from .operation_service import CacheOperationService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Warmers = Mapping[Union[CacheKey, str], Any]


class WarmingAccumulator:
    """Collects item results from concurrently completing jobs."""

    def __init__(self):
        self._lock = threading.Lock()
        self.results: List[WarmingItemResult] = []

    def add(self, result: WarmingItemResult) -> None:
        with self._lock:
            self.results.append(result)

    def count(self, status: WarmingStatus) -> int:
        with self._lock:
            return sum(1 for result in self.results if result.status == status)


async def invoke_producer(producer: Callable[[], Any]) -> Any:
    """Await async producers; run sync ones in a worker thread."""
    if inspect.iscoroutinefunction(producer):
        return await producer()
    result = await asyncio.to_thread(producer)
    if inspect.isawaitable(result):
        result = await result
    return result


class CacheWarmingService:
    """Proactively fills cache levels from producer callbacks."""

    def __init__(self, operations: CacheOperationService, configuration: CacheConfiguration):
        self.operations = operations
        self.configuration = configuration
        self._stats_lock = threading.Lock()
        self._stats: Dict[str, Any] = {
            "runs": 0,
            "total_warmed": 0,
            "total_failed": 0,
            "total_skipped": 0,
            "last_warming_at": None,
            "last_duration_seconds": None,
        }

    def _build_jobs(
        self, warmers: Warmers, accumulator: WarmingAccumulator
    ) -> List[WarmingJob]:
        jobs: List[WarmingJob] = []
        for raw_key, producer in warmers.items():
            try:
                cache_key = CacheKey.coerce(raw_key)
            except CacheValidationException as e:
                accumulator.add(
                    WarmingItemResult(
                        key=str(raw_key),
                        status=WarmingStatus.SKIPPED,
                        batch=0,
                        error=e.message,
                        error_type=WarmingErrorType.VALIDATION_ERROR,
                    )
                )
                continue
            label = raw_key if isinstance(raw_key, str) else ""
            jobs.append(WarmingJob(key=cache_key, producer=producer, label=label))
        return jobs

    async def _warm_item(
        self,
        job: WarmingJob,
        batch_number: int,
        levels: LevelsArg,
        ttl: Optional[int],
        semaphore: asyncio.Semaphore,
    ) -> WarmingItemResult:
        timeout = self.configuration.warming.item_timeout_seconds
        result = WarmingItemResult(
            key=job.label, status=WarmingStatus.FAILED, batch=batch_number
        )

        if not job.is_callable:
            result.status = WarmingStatus.SKIPPED
            result.error = "Producer is not callable"
            result.error_type = WarmingErrorType.VALIDATION_ERROR
            return result

        async with semaphore:
            start_time = time.perf_counter()
            try:
                value = await asyncio.wait_for(invoke_producer(job.producer), timeout)
            except asyncio.TimeoutError:
                result.error = CacheProducerTimeoutException(job.label, timeout).message
                result.error_type = WarmingErrorType.TIMEOUT
                result.duration_seconds = time.perf_counter() - start_time
                return result
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                result.error_type = WarmingErrorType.CALLBACK_EXCEPTION
                result.duration_seconds = time.perf_counter() - start_time
                return result

            if value is None:
                result.status = WarmingStatus.SKIPPED
                result.error = "Producer returned no value"
                result.error_type = WarmingErrorType.NULL_VALUE
                result.duration_seconds = time.perf_counter() - start_time
                return result

            stored = await self.operations.put_levels(job.key, value, ttl, levels)
            result.duration_seconds = time.perf_counter() - start_time
            result.value_size_bytes = estimate_size(value)
            result.levels_stored = [level.value for level in stored]
            if not stored:
                result.error = "Value could not be stored at any level"
                result.error_type = WarmingErrorType.STORAGE_ERROR
                return result

            result.status = WarmingStatus.SUCCESS
            return result

    async def warm(
        self,
        warmers: Warmers,
        levels: LevelsArg = None,
        verbose: bool = False,
        ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Run every warmer and store the values it produces.

        Args:
            warmers: Mapping of key to producer callable (sync or async)
            levels: Levels to populate; all enabled levels when None
            verbose: Return the full report instead of the compact map
            ttl: TTL for warmed entries; level defaults when None

        Returns:
            ``{key: {success, levels}}`` or, when verbose,
            ``{summary, details, errors, performance}``
        """
        if ttl is not None and ttl < 0:
            raise CacheValidationException("TTL cannot be negative", field="ttl", value=ttl)

        settings = self.configuration.warming
        batch_size = settings.batch_size
        delay = settings.inter_batch_delay_ms / 1000
        semaphore = asyncio.Semaphore(settings.max_concurrency)
        accumulator = WarmingAccumulator()
        performance: List[Dict[str, Any]] = []

        start_time = time.perf_counter()
        started_at = datetime.now(timezone.utc)

        with tracer.start_as_current_span("cache.warm") as span:
            jobs = self._build_jobs(warmers, accumulator)
            batches = [jobs[i : i + batch_size] for i in range(0, len(jobs), batch_size)]
            span.set_attribute("cache.warmers", len(warmers))
            span.set_attribute("cache.batches", len(batches))

            for number, batch in enumerate(batches, start=1):
                batch_start = time.perf_counter()
                results = await asyncio.gather(
                    *(
                        self._warm_item(job, number, levels, ttl, semaphore)
                        for job in batch
                    )
                )
                for result in results:
                    accumulator.add(result)

                batch_duration = time.perf_counter() - batch_start
                performance.append(
                    {
                        "batch_number": number,
                        "items_processed": len(batch),
                        "duration_seconds": round(batch_duration, 4),
                        "items_per_second": round(len(batch) / batch_duration, 2)
                        if batch_duration > 0
                        else 0.0,
                        "memory_usage_mb": round(
                            psutil.Process().memory_info().rss / (1024 * 1024), 2
                        ),
                    }
                )
                logger.debug(
                    f"Warmed batch {number}/{len(batches)}",
                    extra={"batch": number, "items": len(batch)},
                )
                if number < len(batches) and delay > 0:
                    await asyncio.sleep(delay)

            duration = time.perf_counter() - start_time
            successful = accumulator.count(WarmingStatus.SUCCESS)
            failed = accumulator.count(WarmingStatus.FAILED)
            skipped = accumulator.count(WarmingStatus.SKIPPED)
            span.set_attribute("cache.warm.successful", successful)
            span.set_attribute("cache.warm.failed", failed)

        self._record_run(successful, failed, skipped, duration)
        logger.info(
            f"Cache warming completed: {successful} successful, {failed} failed, "
            f"{skipped} skipped",
            extra={
                "total": len(warmers),
                "successful": successful,
                "failed": failed,
                "skipped": skipped,
                "duration_seconds": round(duration, 4),
            },
        )

        if not verbose:
            return self._compact(accumulator.results)

        total = len(warmers)
        return {
            "summary": {
                "total_warmers": total,
                "successful": successful,
                "failed": failed,
                "skipped": skipped,
                "success_rate": round(successful / total * 100, 2) if total else 0.0,
                "duration_seconds": round(duration, 4),
                "batch_size": batch_size,
                "batches_processed": len(performance),
                "start_time": started_at.isoformat(),
                "end_time": datetime.now(timezone.utc).isoformat(),
            },
            "details": {result.key: result.to_detail() for result in accumulator.results},
            "errors": [
                {
                    "key": result.key,
                    "error": result.error,
                    "error_type": result.error_type.value if result.error_type else None,
                    "batch": result.batch,
                }
                for result in accumulator.results
                if result.status == WarmingStatus.FAILED
            ],
            "performance": performance,
        }

    @staticmethod
    def _compact(results: List[WarmingItemResult]) -> Dict[str, Any]:
        compact: Dict[str, Any] = {}
        for result in results:
            item: Dict[str, Any] = {
                "success": result.success,
                "levels": list(result.levels_stored),
            }
            if result.error is not None:
                item["error"] = result.error
            compact[result.key] = item
        return compact

    async def warm_strategies(
        self,
        strategies: Mapping[str, Warmers],
        levels: LevelsArg = None,
        verbose: bool = False,
    ) -> Dict[str, Any]:
        """Warm several named warmer groups, one after another."""
        results: Dict[str, Any] = {}
        for name, warmers in strategies.items():
            results[name] = await self.warm(warmers, levels=levels, verbose=verbose)
        return results

    def _record_run(self, successful: int, failed: int, skipped: int, duration: float) -> None:
        with self._stats_lock:
            self._stats["runs"] += 1
            self._stats["total_warmed"] += successful
            self._stats["total_failed"] += failed
            self._stats["total_skipped"] += skipped
            self._stats["last_warming_at"] = datetime.now(timezone.utc).isoformat()
            self._stats["last_duration_seconds"] = round(duration, 4)

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["batch_size"] = self.configuration.warming.batch_size
        stats["item_timeout_seconds"] = self.configuration.warming.item_timeout_seconds
        return stats

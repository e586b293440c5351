"""
Cache Statistics Service

Read-side aggregation over the metrics recorder and level repositories:
hit ratio, response times, efficiency scoring and size reporting. It never
increments counters itself.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import psutil
from opentelemetry import trace

from ...core.config import CacheConfiguration
from ...domain.cache.entities import LevelSize, StatisticsSnapshot
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel, LevelsArg
from .metrics_recorder import CacheMetricsRecorder

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LEVEL_SIZE_RECOMMENDATION_BYTES = 100 * 1024 * 1024
TOTAL_SIZE_RECOMMENDATION_BYTES = 500 * 1024 * 1024


def format_bytes(size_bytes: float, precision: int = 2) -> str:
    """Human readable byte size, e.g. ``1.5 MB``."""
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(max(size_bytes, 0))
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{round(size, precision)} {units[index]}"


def hit_ratio(hits: int, misses: int) -> float:
    total = hits + misses
    if total == 0:
        return 0.0
    return round(hits / total * 100, 2)


def efficiency_score(hit_ratio_percent: float, average_response_ms: float) -> float:
    """0.7 * hit ratio + 0.3 * response-time score."""
    response_time_score = max(0.0, 100 - average_response_ms * 10)
    return round(0.7 * hit_ratio_percent + 0.3 * response_time_score, 2)


class CacheStatisticsService:
    """Statistics and size reporting for the cache levels."""

    def __init__(
        self,
        recorder: CacheMetricsRecorder,
        repositories: Mapping[CacheLevel, LevelRepository],
        configuration: CacheConfiguration,
    ):
        self.recorder = recorder
        self.repositories = dict(repositories)
        self.configuration = configuration

    def _levels(self, levels: LevelsArg) -> Optional[List[CacheLevel]]:
        if levels is None:
            return None
        return CacheLevel.by_priority(levels)

    def get_snapshot(self) -> StatisticsSnapshot:
        return self.recorder.snapshot()

    def get_hit_ratio(self, levels: LevelsArg = None) -> float:
        """hits / (hits + misses) * 100, 0.0 with no lookups recorded."""
        snapshot = self.recorder.snapshot()
        selected = self._levels(levels)
        return hit_ratio(snapshot.hits_for(selected), snapshot.misses_for(selected))

    @staticmethod
    def _mean(samples) -> float:
        return sum(samples) / len(samples) if samples else 0.0

    def get_average_response_time(self, levels: LevelsArg = None) -> float:
        """Mean response time in seconds, rounded to 3 decimals."""
        snapshot = self.recorder.snapshot()
        return round(self._mean(snapshot.samples_for(self._levels(levels))), 3)

    def calculate_cache_efficiency(
        self, level: Optional[CacheLevel] = None, snapshot: Optional[StatisticsSnapshot] = None
    ) -> float:
        snapshot = snapshot or self.recorder.snapshot()
        selected = [CacheLevel.coerce(level)] if level is not None else None
        hits = snapshot.hits_for(selected)
        misses = snapshot.misses_for(selected)
        if hits + misses == 0:
            return 0.0
        average_ms = self._mean(snapshot.samples_for(selected)) * 1000
        return efficiency_score(hit_ratio(hits, misses), average_ms)

    def get_stats(self, levels: LevelsArg = None) -> Dict[str, Any]:
        """Counters, ratios, throughput, efficiency and per-level details."""
        with tracer.start_as_current_span("cache.stats"):
            snapshot = self.recorder.snapshot()
            selected = self._levels(levels)
            level_list = selected or CacheLevel.ordered()

            hits = snapshot.hits_for(selected)
            misses = snapshot.misses_for(selected)
            ratio = hit_ratio(hits, misses)
            samples = snapshot.samples_for(selected)
            average = self._mean(samples)
            total_operations = snapshot.total_operations
            uptime = snapshot.uptime_seconds

            stats: Dict[str, Any] = {
                "hits": hits,
                "misses": misses,
                "puts": snapshot.puts,
                "deletes": snapshot.deletes,
                "gets": snapshot.gets,
                "total_operations": total_operations,
                "hit_ratio": ratio,
                "miss_ratio": round(100 - ratio, 2) if hits + misses else 0.0,
                "average_response_time": round(average, 3),
                "average_response_time_ms": round(average * 1000, 3),
                "uptime_seconds": round(uptime, 2),
                "operations_per_second": round(total_operations / uptime, 2)
                if uptime > 0
                else 0.0,
                "hit_rate_per_second": round(hits / uptime, 2) if uptime > 0 else 0.0,
                "cache_efficiency": self.calculate_cache_efficiency(snapshot=snapshot)
                if selected is None
                else self._levels_efficiency(snapshot, selected),
                "memory_usage": self._process_memory(),
                "levels": {
                    level.value: self._level_stats(snapshot, level) for level in level_list
                },
            }
            return stats

    def _levels_efficiency(
        self, snapshot: StatisticsSnapshot, levels: List[CacheLevel]
    ) -> float:
        hits = snapshot.hits_for(levels)
        misses = snapshot.misses_for(levels)
        if hits + misses == 0:
            return 0.0
        average_ms = self._mean(snapshot.samples_for(levels)) * 1000
        return efficiency_score(hit_ratio(hits, misses), average_ms)

    def _level_stats(self, snapshot: StatisticsSnapshot, level: CacheLevel) -> Dict[str, Any]:
        samples = snapshot.level_response_times.get(level, ())
        enabled = level in self.repositories and self.configuration.level(level).enabled
        return {
            **level.info.to_dict(),
            "enabled": enabled,
            "available": level in self.repositories,
            "hits": snapshot.level_hits.get(level, 0),
            "misses": snapshot.level_misses.get(level, 0),
            "puts": snapshot.level_puts.get(level, 0),
            "deletes": snapshot.level_deletes.get(level, 0),
            "hit_ratio": hit_ratio(
                snapshot.level_hits.get(level, 0), snapshot.level_misses.get(level, 0)
            ),
            "average_response_time": round(self._mean(samples), 3),
            "efficiency": self.calculate_cache_efficiency(level, snapshot),
        }

    @staticmethod
    def _process_memory() -> Dict[str, Any]:
        info = psutil.Process().memory_info()
        return {"rss_bytes": info.rss, "rss_human": format_bytes(info.rss)}

    async def get_level_sizes(self, levels: LevelsArg = None) -> Dict[CacheLevel, LevelSize]:
        selected = self._levels(levels) or CacheLevel.ordered()
        sizes: Dict[CacheLevel, LevelSize] = {}
        for level in selected:
            repository = self.repositories.get(level)
            if repository is None:
                continue
            try:
                sizes[level] = await repository.size()
            except Exception as e:
                logger.warning(
                    f"Failed to measure {level.value} cache level: {e}",
                    extra={"level": level.value},
                )
                sizes[level] = LevelSize()
        return sizes

    async def get_size(self, levels: LevelsArg = None) -> Dict[CacheLevel, int]:
        """Estimated bytes per level."""
        sizes = await self.get_level_sizes(levels)
        return {level: size.size_bytes for level, size in sizes.items()}

    async def get_cache_size(self, levels: LevelsArg = None) -> Dict[str, Any]:
        """Per-level entries and bytes with totals and recommendations."""
        sizes = await self.get_level_sizes(levels)
        snapshot = self.recorder.snapshot()

        total_bytes = sum(size.size_bytes for size in sizes.values())
        total_entries = sum(size.entries for size in sizes.values())

        level_report = {
            level.value: {
                "entries": size.entries,
                "size_bytes": size.size_bytes,
                "size_human": format_bytes(size.size_bytes),
            }
            for level, size in sizes.items()
        }

        largest = max(sizes.items(), key=lambda item: item[1].size_bytes, default=None)
        most_entries = max(sizes.items(), key=lambda item: item[1].entries, default=None)

        efficiency_by_size = {}
        for level, size in sizes.items():
            size_mb = size.size_bytes / (1024 * 1024)
            hits = snapshot.level_hits.get(level, 0)
            efficiency_by_size[level.value] = round(hits / size_mb, 2) if size_mb > 0 else 0.0

        recommendations: List[str] = []
        for level, size in sizes.items():
            if size.size_bytes > LEVEL_SIZE_RECOMMENDATION_BYTES:
                recommendations.append(
                    f"{level.value} level exceeds {format_bytes(LEVEL_SIZE_RECOMMENDATION_BYTES)}; "
                    "consider shorter TTLs or more aggressive cleanup"
                )
        if total_bytes > TOTAL_SIZE_RECOMMENDATION_BYTES:
            recommendations.append(
                f"Total cache size exceeds {format_bytes(TOTAL_SIZE_RECOMMENDATION_BYTES)}; "
                "run maintenance cleanup or review capacity budgets"
            )
        if not recommendations:
            recommendations.append("Cache sizes are within optimal ranges")

        return {
            "levels": level_report,
            "total_size_bytes": total_bytes,
            "total_size_kb": round(total_bytes / 1024, 2),
            "total_size_mb": round(total_bytes / (1024 * 1024), 2),
            "total_entries": total_entries,
            "human_readable": format_bytes(total_bytes),
            "summary": {
                "largest_level": largest[0].value if largest and largest[1].size_bytes else None,
                "most_entries": most_entries[0].value
                if most_entries and most_entries[1].entries
                else None,
                "efficiency_by_size": efficiency_by_size,
                "recommendations": recommendations,
            },
        }

    def reset_stats(self) -> None:
        self.recorder.reset()
        logger.info("Cache statistics reset")

    def export_metrics(self) -> str:
        return self.recorder.export()

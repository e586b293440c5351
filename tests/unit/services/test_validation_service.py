"""
Cache Validation Tests

Unit tests for latency, throughput, capacity and concurrency validation.
"""

from unittest.mock import AsyncMock

import pytest

from tests.conftest import build_configuration
from tiercache.core.config import CacheSettings
from tiercache.domain.cache.entities import LevelSize
from tiercache.domain.cache.value_objects import CacheLevel
from tiercache.services.cache.cache_manager import CacheManager
from tiercache.services.cache.validation_service import meets_concurrency_requirements


@pytest.fixture
def small_memory_manager(repositories, recorder):
    """Manager whose MEMORY level has a 100 byte budget."""
    return CacheManager(
        settings=CacheSettings(),
        configuration=build_configuration(levels={"memory": {"capacity_budget": 100}}),
        repositories=repositories,
        recorder=recorder,
    )


class TestConcurrencyRequirements:
    """Test cases for the concurrency pass rule."""

    @pytest.mark.parametrize(
        "actual_rpm, success_rate, expected",
        [
            (20000, 100.0, True),
            (10000, 95.0, True),
            (20000, 94.99, False),
            (9999, 100.0, False),
        ],
    )
    def test_meets_requirements(self, actual_rpm, success_rate, expected):
        """Both the rate and a success rate of at least 95% are required."""
        assert meets_concurrency_requirements(actual_rpm, 10000, success_rate) is expected


class TestPerformanceValidation:
    """Test cases for latency, throughput and hit ratio checks."""

    @pytest.mark.asyncio
    async def test_latency_passes_for_in_process_levels(self, manager):
        """In-process repositories are well within latency targets."""
        report = await manager.validation.validate_latency()

        assert report["overall_status"] == "pass"
        assert set(report["levels"]) == {"memory", "database"}

    @pytest.mark.asyncio
    async def test_latency_round_trip_mismatch_is_reported(self, manager, repositories):
        """A level that loses writes produces an error report, not an exception."""
        repositories[CacheLevel.MEMORY].get = AsyncMock(return_value=None)

        report = await manager.validation.validate_latency()

        assert report["overall_status"] == "error"
        assert "memory" in report["error"]

    @pytest.mark.asyncio
    async def test_throughput_runs_per_level_and_combined(self, manager):
        """Throughput reports a run for each level plus the combined run."""
        report = await manager.validation.validate_throughput(0.04)

        assert set(report["runs"]) == {"request", "memory", "database", "combined"}
        assert report["runs"]["combined"]["total_operations"] > 0

    @pytest.mark.asyncio
    async def test_performance_fails_on_low_hit_ratio(self, manager):
        """With no recorded hits the hit ratio check fails the report."""
        report = await manager.validate_performance(0.04)

        assert report["overall_status"] == "fail"
        assert report["validations"]["hit_ratio"]["overall_status"] == "fail"
        assert any("Hit ratio" in item for item in report["recommendations"])


class TestConcurrencyValidation:
    """Test cases for validate_concurrent_operations."""

    @pytest.mark.asyncio
    async def test_low_target_passes(self, manager):
        """An easily reached target passes with full success."""
        report = await manager.validate_concurrent_operations(
            target_rpm=1, duration_seconds=0.04
        )

        assert report["summary"]["meets_requirements"] is True
        assert report["summary"]["success_rate"] == 100.0
        assert report["overall_status"] == "pass"

    @pytest.mark.asyncio
    async def test_failing_store_never_meets_requirements(self, manager, repositories):
        """A success rate below 95% fails regardless of throughput."""
        repositories[CacheLevel.MEMORY].get = AsyncMock(return_value=None)
        repositories[CacheLevel.DATABASE].get = AsyncMock(return_value=None)

        report = await manager.validate_concurrent_operations(
            target_rpm=1, duration_seconds=0.04
        )

        assert report["summary"]["success_rate"] < 95
        assert report["summary"]["meets_requirements"] is False

    @pytest.mark.asyncio
    async def test_target_defaults_to_configuration(self, manager):
        """Without an explicit target the configured validation target applies."""
        assert await manager.update_configuration({"validation": {"target_rpm": 1}})

        report = await manager.validate_concurrent_operations(duration_seconds=0.04)

        assert report["summary"]["target_rpm"] == 1
        assert report["overall_status"] == "pass"

    @pytest.mark.asyncio
    async def test_every_run_reports_requirements(self, manager, repositories):
        """Per-level and combined runs each carry their own pass flag."""
        repositories[CacheLevel.DATABASE].get = AsyncMock(return_value=None)

        report = await manager.validate_concurrent_operations(
            target_rpm=1, duration_seconds=0.04
        )

        runs = report["runs"]
        assert set(runs) == {"request", "memory", "database", "combined"}
        assert runs["request"]["meets_requirements"] is True
        assert runs["memory"]["meets_requirements"] is True
        assert runs["database"]["meets_requirements"] is False
        assert (
            runs["combined"]["meets_requirements"]
            is report["summary"]["meets_requirements"]
        )


class TestCapacityValidation:
    """Test cases for capacity validation and management."""

    @pytest.mark.asyncio
    async def test_ok_capacity(self, manager):
        """Small caches pass capacity validation."""
        await manager.put("k", "v")
        report = await manager.validate_cache_capacity()

        assert report["overall_status"] == "pass"
        assert report["capacity_status"] == "ok"

    @pytest.mark.asyncio
    async def test_warning_capacity(self, small_memory_manager):
        """80% usage of the MEMORY budget is a warning but still passes."""
        await small_memory_manager.put("k", "x" * 78, levels=["memory"])

        report = await small_memory_manager.validate_cache_capacity()

        assert report["levels"]["memory"]["usage_percent"] == 80.0
        assert report["capacity_status"] == "warning"
        assert report["overall_status"] == "pass"
        assert report["warnings"]

    @pytest.mark.asyncio
    async def test_critical_capacity_fails(self, small_memory_manager):
        """Usage above 90% is critical and fails validation."""
        await small_memory_manager.put("k", "x" * 93, levels=["memory"])

        report = await small_memory_manager.validate_cache_capacity()

        assert report["capacity_status"] == "critical"
        assert report["overall_status"] == "fail"

    @pytest.mark.asyncio
    async def test_rounded_usage_keeps_unrounded_status(self, repositories, recorder):
        """A level just above 90% is critical even though it reports 90.0."""
        manager = CacheManager(
            settings=CacheSettings(),
            configuration=build_configuration(
                levels={"memory": {"capacity_budget": 1_000_000}}
            ),
            repositories=repositories,
            recorder=recorder,
        )
        manager.validation.statistics.get_level_sizes = AsyncMock(
            return_value={CacheLevel.MEMORY: LevelSize(entries=1, size_bytes=900_040)}
        )

        report = await manager.validate_cache_capacity()

        assert report["levels"]["memory"]["usage_percent"] == 90.0
        assert report["levels"]["memory"]["status"] == "critical"
        assert report["overall_status"] == "fail"

    @pytest.mark.asyncio
    async def test_manage_capacity_on_warning_purges(self, small_memory_manager, clock):
        """Warning level usage triggers a purge of expired entries."""
        await small_memory_manager.put("live", "x" * 78, levels=["memory"])
        await small_memory_manager.put("old", "v", ttl=1, levels=["memory"])
        clock.advance(2)

        report = await small_memory_manager.manage_capacity()

        assert report["success"] is True
        assert "Purged 1 expired entries from memory level" in report["actions_taken"]

    @pytest.mark.asyncio
    async def test_manage_capacity_on_critical_evicts(self, small_memory_manager):
        """Critical usage flushes REQUEST and evicts MEMORY entries."""
        await small_memory_manager.put("big", "x" * 93, levels=["memory"])

        report = await small_memory_manager.manage_capacity()

        assert report["capacity_before"]["capacity_status"] == "critical"
        assert "Flushed request level" in report["actions_taken"]
        assert "Evicted 1 entries from memory level" in report["actions_taken"]
        assert report["capacity_after"]["capacity_status"] == "ok"
        assert report["success"] is True

    @pytest.mark.asyncio
    async def test_capacity_errors_are_reported(self, manager):
        """Unexpected failures become an error report."""
        manager.validation.statistics.get_level_sizes = AsyncMock(
            side_effect=RuntimeError("sizes unavailable")
        )

        report = await manager.validate_cache_capacity()

        assert report == {"overall_status": "error", "error": "sizes unavailable"}


class TestBackgroundValidation:
    """Test cases for scheduled validation."""

    @pytest.mark.asyncio
    async def test_background_validation_stores_report(self, manager):
        """The background task runs validate_all and keeps the last report."""
        task = manager.validation.start_background_validation(0.04)
        report = await task

        assert set(report) == {"performance", "capacity", "concurrency", "overall_status"}
        assert manager.validation.last_report is report

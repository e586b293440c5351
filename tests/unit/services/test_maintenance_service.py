"""
Cache Maintenance Tests

Unit tests for cleanup, optimize and integrity validation runs.
"""

from unittest.mock import AsyncMock

import pytest

from tiercache.domain.cache.value_objects import CacheLevel


class TestMaintenance:
    """Test cases for maintenance over enabled levels."""

    @pytest.mark.asyncio
    async def test_default_operations(self, manager):
        """Cleanup and optimize run by default and succeed."""
        results = await manager.maintenance()

        assert results == {"cleanup": True, "optimize": True}

    @pytest.mark.asyncio
    async def test_unknown_operation_is_false(self, manager):
        """Unknown operations are reported as failed instead of raising."""
        results = await manager.maintenance(["cleanup", "defragment"])

        assert results == {"cleanup": True, "defragment": False}

    @pytest.mark.asyncio
    async def test_cleanup_purges_expired_entries(self, manager, repositories, clock):
        """Cleanup removes entries whose TTL has elapsed."""
        await manager.put("short", "v", ttl=1, levels=["memory"])
        await manager.put("long", "v", levels=["memory"])
        clock.advance(5)

        await manager.maintenance(["cleanup"])

        size = await repositories[CacheLevel.MEMORY].size()
        assert size.entries == 1

    @pytest.mark.asyncio
    async def test_validate_round_trips_every_level(self, manager):
        """Validate succeeds when every level returns what was written."""
        assert await manager.maintenance(["validate"]) == {"validate": True}

    @pytest.mark.asyncio
    async def test_validate_detects_broken_level(self, manager, repositories):
        """A level that loses writes fails validation."""
        repositories[CacheLevel.DATABASE].get = AsyncMock(return_value=None)

        assert await manager.maintenance(["validate"]) == {"validate": False}


class TestDatabaseMaintenance:
    """Test cases for maintain_database_cache."""

    @pytest.mark.asyncio
    async def test_detailed_report(self, manager):
        """Every supported operation is reported with duration and details."""
        report = await manager.maintain_database_cache()

        assert report["overall_status"] == "pass"
        assert set(report["operations"]) == {"cleanup", "optimize", "validate"}
        cleanup = report["operations"]["cleanup"]
        assert cleanup["success"] is True
        assert cleanup["details"] == {"database": 0}
        assert cleanup["duration_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_failing_operation_fails_report(self, manager, repositories):
        """A failing store error is captured in the details."""
        repositories[CacheLevel.DATABASE].optimize = AsyncMock(
            side_effect=RuntimeError("vacuum failed")
        )

        report = await manager.maintain_database_cache(["optimize"])

        assert report["overall_status"] == "fail"
        assert report["operations"]["optimize"]["details"] == {
            "database": {"error": "vacuum failed"}
        }

    @pytest.mark.asyncio
    async def test_disabled_database_level(self, manager):
        """A disabled DATABASE level yields an error report."""
        manager.toggle_level(CacheLevel.DATABASE, False)

        report = await manager.maintain_database_cache()

        assert report["overall_status"] == "error"
        assert report["operations"] == {}

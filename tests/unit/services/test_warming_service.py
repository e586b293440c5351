"""
Cache Warming Tests

Unit tests for batched, timeout-guarded cache warming.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tests.conftest import build_configuration
from tiercache.core.config import CacheSettings
from tiercache.domain.cache.exceptions import (
    CacheStorageException,
    CacheValidationException,
)
from tiercache.domain.cache.value_objects import CacheKey, CacheLevel
from tiercache.services.cache.cache_manager import CacheManager


def failing_producer():
    raise RuntimeError("source unavailable")


def manager_with(repositories, recorder, **changes):
    return CacheManager(
        settings=CacheSettings(),
        configuration=build_configuration(**changes),
        repositories=repositories,
        recorder=recorder,
    )


class TestCacheWarming:
    """Test cases for CacheWarmingService.warm."""

    @pytest.mark.asyncio
    async def test_compact_result(self, manager):
        """The compact result maps each key to success and stored levels."""
        result = await manager.warm({"hot": lambda: "value"})

        assert result == {
            "hot": {"success": True, "levels": ["request", "memory", "database"]}
        }
        assert await manager.get("hot") == "value"

    @pytest.mark.asyncio
    async def test_verbose_counts_success_failure_and_skip(self, manager):
        """One success, one failure and one skip are counted separately."""
        result = await manager.warm(
            {
                "ok": lambda: "v",
                "boom": failing_producer,
                "empty": lambda: None,
            },
            verbose=True,
        )

        summary = result["summary"]
        assert summary["total_warmers"] == 3
        assert summary["successful"] == 1
        assert summary["failed"] == 1
        assert summary["skipped"] == 1
        assert summary["success_rate"] == 33.33

        assert result["details"]["empty"]["error_type"] == "null_value"
        assert result["details"]["boom"]["error_type"] == "callback_exception"
        assert [error["key"] for error in result["errors"]] == ["boom"]

    @pytest.mark.asyncio
    async def test_failures_do_not_abort_other_items(self, manager):
        """Items after a failing producer are still warmed."""
        await manager.warm({"boom": failing_producer, "after": lambda: 1})
        assert await manager.get("after") == 1

    @pytest.mark.asyncio
    async def test_batches(self, repositories, recorder):
        """Warmers are processed in batches of the configured size."""
        manager = manager_with(repositories, recorder, warming={"batch_size": 2})
        warmers = {f"item{i}": (lambda i=i: i) for i in range(5)}

        result = await manager.warm(warmers, verbose=True)

        assert result["summary"]["batches_processed"] == 3
        assert [batch["items_processed"] for batch in result["performance"]] == [2, 2, 1]
        assert result["details"]["item4"]["batch"] == 3

    @pytest.mark.asyncio
    async def test_async_producer_timeout(self, repositories, recorder):
        """Producers exceeding the item timeout are reported as timeouts."""
        manager = manager_with(
            repositories, recorder, warming={"item_timeout_seconds": 0.05}
        )

        async def slow():
            await asyncio.sleep(1)
            return "late"

        result = await manager.warm({"slow": slow, "fast": lambda: "ok"}, verbose=True)

        assert result["details"]["slow"]["error_type"] == "timeout"
        assert result["details"]["fast"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_non_callable_and_invalid_keys_are_skipped(self, manager):
        """Invalid warmers are skipped with a validation error."""
        result = await manager.warm(
            {"not_callable": "value", "bad key": lambda: 1}, verbose=True
        )

        assert result["summary"]["skipped"] == 2
        assert result["details"]["not_callable"]["error_type"] == "validation_error"
        assert result["details"]["bad key"]["error_type"] == "validation_error"

    @pytest.mark.asyncio
    async def test_storage_failure(self, manager, repositories):
        """A value no level accepted counts as a storage failure."""
        repositories[CacheLevel.MEMORY].put = AsyncMock(
            side_effect=CacheStorageException("down", level="memory", operation="put")
        )

        result = await manager.warm({"k": lambda: 1}, levels=["memory"], verbose=True)

        assert result["details"]["k"]["error_type"] == "storage_error"
        assert result["summary"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_namespaced_keys_and_ttl(self, manager, repositories):
        """CacheKey warmers honour namespaces and the requested TTL."""
        key = CacheKey("top", namespace="stats")
        result = await manager.warm({key: lambda: [1, 2]}, ttl=120)

        assert result["tiercache:stats:top"]["success"] is True
        entry = await repositories[CacheLevel.DATABASE].get("tiercache:stats:top")
        assert entry.ttl == 120

    @pytest.mark.asyncio
    async def test_negative_ttl_raises(self, manager):
        """A negative TTL is rejected before any producer runs."""
        with pytest.raises(CacheValidationException):
            await manager.warm({"k": lambda: 1}, ttl=-1)

    @pytest.mark.asyncio
    async def test_strategies_and_stats(self, manager):
        """Named strategies run in turn and feed the warming stats."""
        results = await manager.warming.warm_strategies(
            {"users": {"u1": lambda: 1}, "orders": {"o1": lambda: 2}}
        )

        assert set(results) == {"users", "orders"}
        stats = manager.warming.get_stats()
        assert stats["runs"] == 2
        assert stats["total_warmed"] == 2

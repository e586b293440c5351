"""
Cache Manager Tests

Unit tests for lifecycle, configuration updates, request scoping and
level status reporting.
"""

from unittest.mock import AsyncMock

import pytest

from tiercache.core.config import CacheSettings
from tiercache.domain.cache.value_objects import CacheKey, CacheLevel
from tiercache.infrastructure.repositories import (
    InMemoryLevelRepository,
    RedisLevelRepository,
    RequestLevelRepository,
    SqlLevelRepository,
)
from tiercache.services.cache.cache_manager import build_repositories


class TestBuildRepositories:
    """Test cases for backend selection."""

    def test_default_backends_are_in_process(self):
        """Default settings need no external services."""
        repositories = build_repositories(CacheSettings())

        assert isinstance(repositories[CacheLevel.REQUEST], RequestLevelRepository)
        assert isinstance(repositories[CacheLevel.MEMORY], InMemoryLevelRepository)
        assert isinstance(repositories[CacheLevel.DATABASE], InMemoryLevelRepository)

    def test_redis_and_sql_backends(self):
        """Configured backends select the Redis and SQL repositories."""
        settings = CacheSettings(MEMORY_BACKEND="redis", DATABASE_BACKEND="sql")

        repositories = build_repositories(settings)

        assert isinstance(repositories[CacheLevel.MEMORY], RedisLevelRepository)
        assert isinstance(repositories[CacheLevel.DATABASE], SqlLevelRepository)


class TestLifecycle:
    """Test cases for initialize and close."""

    @pytest.mark.asyncio
    async def test_initialize_runs_once(self, manager, repositories):
        """Repeated initialize calls initialize each repository once."""
        repositories[CacheLevel.MEMORY].initialize = AsyncMock()

        await manager.initialize()
        await manager.initialize()

        repositories[CacheLevel.MEMORY].initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_survives_failing_repository(self, manager, repositories):
        """A failing close does not prevent closing the other levels."""
        repositories[CacheLevel.MEMORY].close = AsyncMock(side_effect=RuntimeError("boom"))
        repositories[CacheLevel.DATABASE].close = AsyncMock()

        await manager.initialize()
        await manager.close()

        repositories[CacheLevel.DATABASE].close.assert_awaited_once()
        assert manager._initialized is False


class TestRequestScope:
    """Test cases for REQUEST level scoping."""

    @pytest.mark.asyncio
    async def test_scope_isolates_request_values(self, manager):
        """Values in one request scope are not visible in the next."""
        with manager.request_scope():
            await manager.put("user", "alice", levels=["request"])
            assert await manager.get("user", levels=["request"]) == "alice"

        with manager.request_scope():
            assert await manager.get("user", levels=["request"]) is None


class TestConfiguration:
    """Test cases for runtime configuration updates."""

    def test_get_configuration(self, manager):
        """Configuration is returned as plain JSON-compatible data."""
        configuration = manager.get_configuration()

        assert configuration["key_prefix"] == "tiercache"
        assert set(configuration["levels"]) == {"request", "memory", "database"}
        assert configuration["levels"]["memory"]["default_ttl"] == 3600

    @pytest.mark.asyncio
    async def test_valid_update_is_applied(self, manager, repositories):
        """A valid change takes effect for subsequent writes."""
        assert await manager.update_configuration({"levels": {"memory": {"default_ttl": 120}}})

        await manager.put("k", "v", levels=["memory"])
        entry = await repositories[CacheLevel.MEMORY].get("tiercache:default:k")

        assert entry.ttl == 120
        assert manager.operations.configuration.level(CacheLevel.MEMORY).default_ttl == 120
        assert manager.validation.configuration is manager.configuration

    @pytest.mark.asyncio
    async def test_update_invalidates_configuration_entries(self, manager):
        """Entries tagged as configuration are dropped after an update."""
        key = CacheKey.for_configuration("feature_flags")
        await manager.put(key, {"beta": True}, levels=["memory"])

        await manager.update_configuration({"warming": {"batch_size": 5}})

        assert await manager.get(key, levels=["memory"]) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"levels": {"bogus": {"enabled": False}}},
            {"levels": {"memory": {"default_ttl": 50000, "max_ttl": 100}}},
            {"warming": {"batch_size": 0}},
            {"key_prefix": "bad:prefix"},
        ],
    )
    async def test_invalid_update_is_rejected(self, manager, changes):
        """Invalid changes return False and leave the configuration untouched."""
        before = manager.get_configuration()

        assert await manager.update_configuration(changes) is False
        assert manager.get_configuration() == before


class TestLevelStatus:
    """Test cases for level control and status reporting."""

    @pytest.mark.asyncio
    async def test_all_levels_healthy(self, manager):
        """Every in-process level passes its health check."""
        summary = await manager.get_level_status_summary()

        assert {item["status"] for item in summary.values()} == {"healthy"}
        assert summary["request"]["capabilities"]["supports_tagging"] is False

    @pytest.mark.asyncio
    async def test_disabled_level_is_reported(self, manager):
        """A toggled-off level is reported as disabled and skipped."""
        assert manager.toggle_level("memory", False) is True

        summary = await manager.get_level_status_summary()

        assert summary["memory"]["status"] == "disabled"
        assert CacheLevel.MEMORY in manager.get_disabled_levels()

    def test_enable_and_disable_all(self, manager):
        """Bulk toggles affect every available level."""
        manager.disable_all_levels()
        assert manager.get_enabled_levels() == []

        manager.enable_all_levels()
        assert manager.get_enabled_levels() == CacheLevel.ordered()

    def test_toggle_unknown_level(self, manager):
        """Unknown level names cannot be toggled."""
        assert manager.toggle_level("disk", True) is False

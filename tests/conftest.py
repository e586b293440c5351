"""
Shared pytest configuration for tiercache tests.

Fixtures build a cache manager over in-process repositories with an
injectable clock so TTL expiry can be tested without sleeping.
"""

import time

import pytest

from tiercache.core.config import CacheConfiguration, CacheSettings
from tiercache.domain.cache.value_objects import CacheLevel
from tiercache.infrastructure.repositories import (
    InMemoryLevelRepository,
    RequestLevelRepository,
)
from tiercache.services.cache.cache_manager import CacheManager
from tiercache.services.cache.metrics_recorder import CacheMetricsRecorder


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_configuration(**changes) -> CacheConfiguration:
    """Default configuration with test-friendly warming and validation knobs."""
    base = CacheConfiguration.from_settings(CacheSettings())
    defaults = {
        "warming": {"inter_batch_delay_ms": 0, "item_timeout_seconds": 5},
        "validation": {"duration_seconds": 0.05, "concurrency": 2},
    }
    return base.merged(defaults).merged(changes)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repositories(clock):
    return {
        CacheLevel.REQUEST: RequestLevelRepository(clock=clock),
        CacheLevel.MEMORY: InMemoryLevelRepository(CacheLevel.MEMORY, clock=clock),
        CacheLevel.DATABASE: InMemoryLevelRepository(CacheLevel.DATABASE, clock=clock),
    }


@pytest.fixture
def configuration():
    return build_configuration()


@pytest.fixture
def recorder():
    return CacheMetricsRecorder(sample_size=100)


@pytest.fixture
def manager(configuration, repositories, recorder):
    """Cache manager over in-process repositories."""
    return CacheManager(
        settings=CacheSettings(),
        configuration=configuration,
        repositories=repositories,
        recorder=recorder,
    )

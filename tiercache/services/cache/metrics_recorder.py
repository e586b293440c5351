"""
Cache Metrics Recorder

The single statistics aggregator owned by the cache manager. The
operation service is the only writer; every other service reads
immutable snapshots. Counters are mutated under a lock so concurrent
writers on any thread never lose increments, and each recorder mirrors
its counters into a private Prometheus registry.
"""

import threading
import time
from collections import deque
from typing import Deque, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from ...domain.cache.entities import StatisticsSnapshot
from ...domain.cache.value_objects import CacheLevel

RESPONSE_TIME_BUCKETS = [0.0001, 0.0005, 0.001, 0.005, 0.01, 0.02, 0.05, 0.1, 0.5, 1.0]


class CacheMetricsRecorder:
    """Thread-safe hit/miss/put/delete counters and response-time samples."""

    def __init__(self, sample_size: int = 1000):
        self.sample_size = sample_size
        self._lock = threading.Lock()
        self._setup_prometheus_metrics()
        self._reset_state()

    def _setup_prometheus_metrics(self) -> None:
        self.registry = CollectorRegistry()

        self.prom_operations_total = Counter(
            "tiercache_operations_total",
            "Cache operations by type and outcome",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.prom_level_operations_total = Counter(
            "tiercache_level_operations_total",
            "Cache operations per level",
            ["level", "operation"],
            registry=self.registry,
        )
        self.prom_response_seconds = Histogram(
            "tiercache_response_seconds",
            "Cache get response time in seconds",
            ["level"],
            buckets=RESPONSE_TIME_BUCKETS,
            registry=self.registry,
        )

    def _reset_state(self) -> None:
        self._hits = 0
        self._misses = 0
        self._puts = 0
        self._deletes = 0
        self._gets = 0
        self._level_hits: Dict[CacheLevel, int] = {level: 0 for level in CacheLevel}
        self._level_misses: Dict[CacheLevel, int] = {level: 0 for level in CacheLevel}
        self._level_puts: Dict[CacheLevel, int] = {level: 0 for level in CacheLevel}
        self._level_deletes: Dict[CacheLevel, int] = {level: 0 for level in CacheLevel}
        self._samples: Deque[float] = deque(maxlen=self.sample_size)
        self._level_samples: Dict[CacheLevel, Deque[float]] = {
            level: deque(maxlen=self.sample_size) for level in CacheLevel
        }
        self._started_at = time.time()

    def record_hit(self, level: CacheLevel, response_time: float) -> None:
        with self._lock:
            self._hits += 1
            self._gets += 1
            self._level_hits[level] += 1
            self._samples.append(response_time)
            self._level_samples[level].append(response_time)
        self.prom_operations_total.labels(operation="get", outcome="hit").inc()
        self.prom_level_operations_total.labels(level=level.value, operation="hit").inc()
        self.prom_response_seconds.labels(level=level.value).observe(response_time)

    def record_miss(self, response_time: float) -> None:
        with self._lock:
            self._misses += 1
            self._gets += 1
            self._samples.append(response_time)
        self.prom_operations_total.labels(operation="get", outcome="miss").inc()
        self.prom_response_seconds.labels(level="none").observe(response_time)

    def record_level_miss(self, level: CacheLevel) -> None:
        with self._lock:
            self._level_misses[level] += 1
        self.prom_level_operations_total.labels(level=level.value, operation="miss").inc()

    def record_put(self, levels: Optional[list] = None) -> None:
        with self._lock:
            self._puts += 1
            for level in levels or ():
                self._level_puts[level] += 1
        self.prom_operations_total.labels(operation="put", outcome="stored").inc()
        for level in levels or ():
            self.prom_level_operations_total.labels(level=level.value, operation="put").inc()

    def record_delete(self, levels: Optional[list] = None) -> None:
        with self._lock:
            self._deletes += 1
            for level in levels or ():
                self._level_deletes[level] += 1
        self.prom_operations_total.labels(operation="delete", outcome="removed").inc()

    def snapshot(self) -> StatisticsSnapshot:
        with self._lock:
            return StatisticsSnapshot(
                hits=self._hits,
                misses=self._misses,
                puts=self._puts,
                deletes=self._deletes,
                gets=self._gets,
                level_hits=dict(self._level_hits),
                level_misses=dict(self._level_misses),
                level_puts=dict(self._level_puts),
                level_deletes=dict(self._level_deletes),
                response_times=tuple(self._samples),
                level_response_times={
                    level: tuple(samples) for level, samples in self._level_samples.items()
                },
                started_at=self._started_at,
                taken_at=time.time(),
            )

    def reset(self) -> None:
        """Zero every counter and restart the uptime clock."""
        with self._lock:
            self._reset_state()

    def export(self) -> str:
        """Prometheus text exposition of this recorder's registry."""
        return generate_latest(self.registry).decode("utf-8")

"""
Cache Domain Entities

Store-internal cache entries, warming jobs with their outcomes, and the
immutable statistics snapshot read by the statistics service.
"""

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .value_objects import CacheKey, CacheLevel, WarmingErrorType, WarmingStatus


def estimate_size(value: Any) -> int:
    """Rough byte size of a value as it would be serialized."""
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(repr(value).encode("utf-8"))


@dataclass
class CacheEntry:
    """
    A value held by a level repository.

    Created on put/remember/warm, mutated only by overwrite, destroyed on
    expiry, forget or an invalidation match.
    """

    value: Any
    stored_at: float
    ttl: int
    tags: FrozenSet[str] = field(default_factory=frozenset)
    size_bytes: int = 0

    @classmethod
    def create(
        cls,
        value: Any,
        ttl: int,
        tags: Iterable[str] = (),
        now: Optional[float] = None,
    ) -> "CacheEntry":
        """Create new cache entry with an estimated size."""
        return cls(
            value=value,
            stored_at=time.time() if now is None else now,
            ttl=ttl,
            tags=frozenset(tags),
            size_bytes=estimate_size(value),
        )

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if cache entry is expired."""
        current = time.time() if now is None else now
        return current >= self.expires_at

    def remaining_seconds(self, now: Optional[float] = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, self.expires_at - current)

    def capped_copy(self, max_ttl: int) -> "CacheEntry":
        """Copy sharing stored_at, so it never expires later than this entry."""
        return replace(self, ttl=min(self.ttl, max_ttl))

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def has_any_tag(self, tags: Iterable[str]) -> bool:
        return not self.tags.isdisjoint(tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "stored_at": self.stored_at,
            "ttl": self.ttl,
            "tags": sorted(self.tags),
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            value=data["value"],
            stored_at=float(data["stored_at"]),
            ttl=int(data["ttl"]),
            tags=frozenset(data.get("tags") or ()),
            size_bytes=int(data.get("size_bytes", 0)),
        )


@dataclass(frozen=True)
class LevelSize:
    """Entry count and byte estimate of one level."""

    entries: int = 0
    size_bytes: int = 0


@dataclass
class WarmingJob:
    """A key and the producer that computes its value."""

    key: CacheKey
    producer: Any
    label: str = ""

    def __post_init__(self) -> None:
        if not self.label:
            self.label = self.key.key if self.key.namespace == "default" else str(self.key)

    @property
    def is_callable(self) -> bool:
        return callable(self.producer)


@dataclass
class WarmingItemResult:
    """Outcome of one warming job."""

    key: str
    status: WarmingStatus
    batch: int
    duration_seconds: float = 0.0
    value_size_bytes: int = 0
    levels_stored: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[WarmingErrorType] = None

    @property
    def success(self) -> bool:
        return self.status == WarmingStatus.SUCCESS

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {
            "status": self.status.value,
            "batch": self.batch,
            "duration_seconds": round(self.duration_seconds, 4),
            "value_size_bytes": self.value_size_bytes,
            "levels_stored": list(self.levels_stored),
        }
        if self.error is not None:
            detail["error"] = self.error
            detail["error_type"] = self.error_type.value if self.error_type else None
        return detail


@dataclass(frozen=True)
class StatisticsSnapshot:
    """Point-in-time copy of the cache counters."""

    hits: int
    misses: int
    puts: int
    deletes: int
    gets: int
    level_hits: Dict[CacheLevel, int]
    level_misses: Dict[CacheLevel, int]
    level_puts: Dict[CacheLevel, int]
    level_deletes: Dict[CacheLevel, int]
    response_times: Tuple[float, ...]
    level_response_times: Dict[CacheLevel, Tuple[float, ...]]
    started_at: float
    taken_at: float

    @property
    def total_operations(self) -> int:
        return self.hits + self.misses + self.puts + self.deletes

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, self.taken_at - self.started_at)

    def hits_for(self, levels: Optional[Iterable[CacheLevel]] = None) -> int:
        if levels is None:
            return self.hits
        return sum(self.level_hits.get(level, 0) for level in levels)

    def misses_for(self, levels: Optional[Iterable[CacheLevel]] = None) -> int:
        if levels is None:
            return self.misses
        return sum(self.level_misses.get(level, 0) for level in levels)

    def samples_for(
        self, levels: Optional[Iterable[CacheLevel]] = None
    ) -> Tuple[float, ...]:
        if levels is None:
            return self.response_times
        samples: List[float] = []
        for level in levels:
            samples.extend(self.level_response_times.get(level, ()))
        return tuple(samples)

"""
Cache Repository Interfaces

Abstract repository contract for a single cache level. Keys passed to a
repository are already normalized, so every level addresses the same
entry with the same string.

Implementations must be safe for concurrent readers and writers and must
report store failures as CacheStorageException.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from .entities import CacheEntry, LevelSize
from .value_objects import CacheLevel


class LevelRepository(ABC):
    """
    Abstract repository for one cache level.

    Expired entries are never returned and count as absent.
    """

    level: CacheLevel

    async def initialize(self) -> None:
        """Open connections or create schema. Optional."""

    async def close(self) -> None:
        """Release connections. Optional."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry stored under key, if any."""
        pass

    @abstractmethod
    async def put(self, key: str, entry: CacheEntry) -> None:
        """Store or overwrite entry under key."""
        pass

    @abstractmethod
    async def add(self, key: str, entry: CacheEntry) -> bool:
        """Store entry only if no live entry exists. Atomic per key."""
        pass

    @abstractmethod
    async def forget(self, key: str) -> bool:
        """Remove key. Returns True if an entry was removed."""
        pass

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Check for a live entry under key."""
        pass

    @abstractmethod
    async def scan(self, pattern: str) -> List[str]:
        """List live keys matching a glob pattern (``*`` and ``?``)."""
        pass

    @abstractmethod
    async def keys_for_tags(self, tags: Iterable[str]) -> List[str]:
        """List live keys carrying any of the given tags."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Remove every entry held by this level."""
        pass

    @abstractmethod
    async def size(self) -> LevelSize:
        """Entry count and estimated bytes of live entries."""
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        pass

    async def optimize(self) -> int:
        """Prune stale index data. Returns the number of items pruned."""
        return 0

    async def forget_many(self, keys: Iterable[str]) -> int:
        """Remove several keys. Returns the number removed."""
        removed = 0
        for key in keys:
            if await self.forget(key):
                removed += 1
        return removed

"""
In-Process Level Repository

Dictionary-backed repository used for the MEMORY level by default and for
the DATABASE level when no SQL backend is configured. A re-entrant lock
guards the entries and the tag index so concurrent callers on any thread
see consistent state.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from ...domain.cache.domain_services import compile_glob
from ...domain.cache.entities import CacheEntry, LevelSize
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel

logger = logging.getLogger(__name__)


class InMemoryLevelRepository(LevelRepository):
    """Thread-safe in-process repository with a tag index."""

    def __init__(
        self,
        level: CacheLevel = CacheLevel.MEMORY,
        clock: Callable[[], float] = time.time,
    ):
        self.level = level
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry, dropping it if expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._remove(key)
            return None
        return entry

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        for tag in entry.tags:
            members = self._tag_index.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tag_index[tag]
        return True

    def _store(self, key: str, entry: CacheEntry) -> None:
        self._remove(key)
        self._entries[key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)

    async def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._live(key)

    async def put(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._store(key, entry)

    async def add(self, key: str, entry: CacheEntry) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store(key, entry)
            return True

    async def forget(self, key: str) -> bool:
        with self._lock:
            return self._remove(key)

    async def has(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def scan(self, pattern: str) -> List[str]:
        regex = compile_glob(pattern)
        with self._lock:
            return [
                key
                for key in list(self._entries)
                if regex.match(key) and self._live(key) is not None
            ]

    async def keys_for_tags(self, tags: Iterable[str]) -> List[str]:
        with self._lock:
            keys: Set[str] = set()
            for tag in tags:
                keys.update(self._tag_index.get(tag, ()))
            return sorted(key for key in keys if self._live(key) is not None)

    async def flush(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()

    async def size(self) -> LevelSize:
        with self._lock:
            now = self._clock()
            live = [entry for entry in self._entries.values() if not entry.is_expired(now)]
            return LevelSize(
                entries=len(live), size_bytes=sum(entry.size_bytes for entry in live)
            )

    async def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items() if entry.is_expired(now)
            ]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug(
                f"Purged {len(expired)} expired entries from {self.level.value} level",
                extra={"level": self.level.value, "count": len(expired)},
            )
        return len(expired)

    async def optimize(self) -> int:
        """Drop tag-index members that point at missing entries."""
        pruned = 0
        with self._lock:
            for tag in list(self._tag_index):
                members = self._tag_index[tag]
                stale = {key for key in members if key not in self._entries}
                pruned += len(stale)
                members -= stale
                if not members:
                    del self._tag_index[tag]
        return pruned

    async def evict_to_budget(self, budget_bytes: int) -> int:
        """Evict entries closest to expiry until usage fits the budget."""
        evicted = 0
        with self._lock:
            used = sum(entry.size_bytes for entry in self._entries.values())
            if used <= budget_bytes:
                return 0
            for key, entry in sorted(
                self._entries.items(), key=lambda item: item[1].expires_at
            ):
                if used <= budget_bytes:
                    break
                used -= entry.size_bytes
                self._remove(key)
                evicted += 1
        return evicted

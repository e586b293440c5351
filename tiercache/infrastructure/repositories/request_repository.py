"""
Request Level Repository

REQUEST-level storage scoped to one logical request. Each scope gets its
own in-process store held in a context variable, so concurrent requests
(tasks or threads) never see each other's entries.

Outside a scope the first access binds a store to the current context and
it stays bound for the life of that context. Long-lived tasks (workers,
consumers) should wrap each unit of work in scope() so REQUEST entries do
not accumulate across units. Unscoped entries only leave through expiry
purges or flush().
"""

import itertools
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterable, Iterator, List, Optional

from ...domain.cache.entities import CacheEntry, LevelSize
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheLevel
from .memory_repository import InMemoryLevelRepository

_scope_ids = itertools.count(1)


class RequestLevelRepository(LevelRepository):
    """Context-scoped repository for the REQUEST level."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.level = CacheLevel.REQUEST
        self._clock = clock
        self._current: ContextVar[Optional[InMemoryLevelRepository]] = ContextVar(
            f"tiercache_request_store_{next(_scope_ids)}", default=None
        )

    @contextmanager
    def scope(self) -> Iterator[InMemoryLevelRepository]:
        """Install a fresh request store for the duration of the block."""
        store = InMemoryLevelRepository(level=CacheLevel.REQUEST, clock=self._clock)
        token = self._current.set(store)
        try:
            yield store
        finally:
            self._current.reset(token)

    @property
    def in_scope(self) -> bool:
        return self._current.get() is not None

    def _store(self) -> InMemoryLevelRepository:
        # Outside a scope the store stays bound to this context until it ends
        store = self._current.get()
        if store is None:
            store = InMemoryLevelRepository(level=CacheLevel.REQUEST, clock=self._clock)
            self._current.set(store)
        return store

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await self._store().get(key)

    async def put(self, key: str, entry: CacheEntry) -> None:
        await self._store().put(key, entry)

    async def add(self, key: str, entry: CacheEntry) -> bool:
        return await self._store().add(key, entry)

    async def forget(self, key: str) -> bool:
        return await self._store().forget(key)

    async def has(self, key: str) -> bool:
        return await self._store().has(key)

    async def scan(self, pattern: str) -> List[str]:
        return await self._store().scan(pattern)

    async def keys_for_tags(self, tags: Iterable[str]) -> List[str]:
        return await self._store().keys_for_tags(tags)

    async def flush(self) -> None:
        await self._store().flush()

    async def size(self) -> LevelSize:
        return await self._store().size()

    async def purge_expired(self) -> int:
        return await self._store().purge_expired()

    async def optimize(self) -> int:
        return await self._store().optimize()

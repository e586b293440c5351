"""
Cache Invalidation Service

Tag, pattern, namespace and dependency-driven invalidation. Each level is
handled independently: a failure on one level is logged with the level
name and does not stop the others. Removed keys cascade through the
explicit dependency graph.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from opentelemetry import trace

from ...domain.cache.domain_services import (
    DEFAULT_NAMESPACE_DEPENDENCIES,
    DependencyGraph,
    model_source,
    qualify_pattern,
)
from ...domain.cache.exceptions import CacheValidationException
from ...domain.cache.repository_interfaces import LevelRepository
from ...domain.cache.value_objects import CacheKey, CacheLevel, LevelsArg
from .operation_service import CacheOperationService, KeyArg

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CacheInvalidationService:
    """
    Invalidation across levels that support it.

    Tag invalidation only touches levels with tagging support; pattern and
    namespace invalidation only touch levels with pattern support.
    """

    def __init__(
        self,
        operations: CacheOperationService,
        repositories: Mapping[CacheLevel, LevelRepository],
        namespace_dependencies: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.operations = operations
        self.repositories = dict(repositories)
        self.dependencies = DependencyGraph()
        self.namespace_dependencies = DependencyGraph(
            DEFAULT_NAMESPACE_DEPENDENCIES
            if namespace_dependencies is None
            else namespace_dependencies
        )
        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {}
        self.reset_stats()

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] = self._stats.get(name, 0) + amount

    @property
    def prefix(self) -> str:
        return self.operations.prefix

    def _normalize(self, key: KeyArg) -> str:
        return CacheKey.coerce(key).normalize(self.prefix)

    # Dependency graph

    def add_dependency(self, source: KeyArg, dependent: KeyArg) -> None:
        """Invalidating source will also invalidate dependent."""
        self.dependencies.add(self._normalize(source), self._normalize(dependent))

    def remove_dependency(self, source: KeyArg, dependent: Optional[KeyArg] = None) -> bool:
        return self.dependencies.remove(
            self._normalize(source),
            self._normalize(dependent) if dependent is not None else None,
        )

    def get_dependents(self, source: KeyArg) -> List[str]:
        return self.dependencies.dependents(self._normalize(source))

    def add_namespace_dependency(self, source: str, dependent: str) -> None:
        self.namespace_dependencies.add(source, dependent)

    # Level selection

    def _levels_with(self, levels: LevelsArg, capability: str) -> List[CacheLevel]:
        selected: List[CacheLevel] = []
        for level in self.operations.resolve_levels(levels):
            if level.supports(capability):
                selected.append(level)
            else:
                logger.debug(
                    f"Skipping {level.value} level: no {capability}",
                    extra={"level": level.value},
                )
        return selected

    async def _forget_keys(self, level: CacheLevel, keys: List[str]) -> int:
        return await self.repositories[level].forget_many(keys)

    async def _cascade(self, removed: Iterable[str]) -> bool:
        """Forget every transitive dependent of removed keys on all enabled levels."""
        dependents = self.dependencies.cascade(removed)
        if not dependents:
            return True

        ok = True
        for level in self.operations.resolve_levels(None):
            try:
                count = await self._forget_keys(level, dependents)
                self._count("cascade_invalidations", count)
            except Exception as e:
                ok = False
                self._count("failed_levels")
                logger.error(
                    f"Dependency cascade failed at {level.value} level: {e}",
                    extra={"level": level.value, "dependents": len(dependents)},
                )
        logger.info(
            f"Cascaded invalidation to {len(dependents)} dependent keys",
            extra={"dependents": dependents[:20]},
        )
        return ok

    # Public operations

    async def invalidate(self, key: KeyArg, levels: LevelsArg = None) -> bool:
        """Forget key and every key registered as depending on it."""
        normalized = self._normalize(key)
        with tracer.start_as_current_span("cache.invalidate") as span:
            span.set_attribute("cache.key", normalized)
            ok = await self.operations.forget(key, levels)
            self._count("invalidations")
            cascaded = await self._cascade([normalized])
            return ok and cascaded

    async def invalidate_by_tags(
        self, tags: Union[str, Iterable[str]], levels: LevelsArg = None
    ) -> bool:
        """Remove entries carrying any of tags from tag-capable levels."""
        tag_list = [tags] if isinstance(tags, str) else list(tags)
        if not tag_list:
            raise CacheValidationException("At least one tag is required", field="tags")

        with tracer.start_as_current_span("cache.invalidate_by_tags") as span:
            span.set_attribute("cache.tags", tag_list)
            ok = True
            removed: Set[str] = set()

            for level in self._levels_with(levels, "tagging"):
                try:
                    keys = await self.repositories[level].keys_for_tags(tag_list)
                    count = await self._forget_keys(level, keys)
                    removed.update(keys)
                    logger.debug(
                        f"Invalidated {count} tagged entries at {level.value} level",
                        extra={"level": level.value, "tags": tag_list, "count": count},
                    )
                except Exception as e:
                    ok = False
                    self._count("failed_levels")
                    logger.error(
                        f"Tag invalidation failed at {level.value} level: {e}",
                        extra={"level": level.value, "tags": tag_list},
                    )
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))

            self._count("tag_invalidations")
            self._count("invalidations", len(removed))
            span.set_attribute("cache.removed", len(removed))
            cascaded = await self._cascade(removed)
            return ok and cascaded

    async def invalidate_by_pattern(self, pattern: str, levels: LevelsArg = None) -> bool:
        """Remove entries whose normalized key matches a glob."""
        if not pattern:
            raise CacheValidationException("Pattern cannot be empty", field="pattern")
        qualified = qualify_pattern(pattern, self.prefix)

        with tracer.start_as_current_span("cache.invalidate_by_pattern") as span:
            span.set_attribute("cache.pattern", qualified)
            ok = True
            removed: Set[str] = set()

            for level in self._levels_with(levels, "pattern_matching"):
                try:
                    keys = await self.repositories[level].scan(qualified)
                    await self._forget_keys(level, keys)
                    removed.update(keys)
                except Exception as e:
                    ok = False
                    self._count("failed_levels")
                    logger.error(
                        f"Pattern invalidation failed at {level.value} level: {e}",
                        extra={"level": level.value, "pattern": qualified},
                    )
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))

            self._count("pattern_invalidations")
            self._count("invalidations", len(removed))
            logger.info(
                f"Invalidated {len(removed)} entries matching {qualified}",
                extra={"pattern": qualified, "count": len(removed)},
            )
            cascaded = await self._cascade(removed)
            return ok and cascaded

    async def invalidate_by_namespace(
        self, namespace: str, levels: LevelsArg = None, cascade: bool = True
    ) -> bool:
        """Pattern-invalidate a namespace and, optionally, its dependent namespaces."""
        namespaces = [namespace]
        if cascade:
            namespaces += self.namespace_dependencies.cascade([namespace])

        ok = True
        for name in namespaces:
            if not await self.invalidate_by_pattern(f"{self.prefix}:{name}:*", levels):
                ok = False
        if len(namespaces) > 1:
            self._count("namespace_cascades", len(namespaces) - 1)
        return ok

    async def invalidate_for_model(self, model_name: str) -> Dict[str, bool]:
        """Invalidate the namespaces mapped to a model after it changed."""
        source = model_source(model_name)
        namespaces = self.namespace_dependencies.cascade([source])
        if not namespaces:
            logger.debug(f"No cache namespaces depend on {source}")
            return {}

        results: Dict[str, bool] = {}
        for namespace in namespaces:
            results[namespace] = await self.invalidate_by_namespace(
                namespace, cascade=False
            )
        logger.info(
            f"Invalidated caches for model {model_name}",
            extra={"model": model_name, "namespaces": namespaces},
        )
        return results

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats: Dict[str, Any] = dict(self._stats)
        stats["registered_dependencies"] = len(self.dependencies)
        stats["namespace_dependencies"] = self.namespace_dependencies.to_dict()
        return stats

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = {
                "invalidations": 0,
                "cascade_invalidations": 0,
                "tag_invalidations": 0,
                "pattern_invalidations": 0,
                "namespace_cascades": 0,
                "failed_levels": 0,
            }

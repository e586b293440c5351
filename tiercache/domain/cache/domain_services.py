"""
Cache Domain Services

Pure domain logic shared by the cache services: glob matching against
normalized keys, the explicit key dependency graph, the namespace
dependency map used for model-driven invalidation, and capacity policy.
"""

import re
import threading
from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, List, Mapping, Optional, Pattern, Set

from .value_objects import CapacityStatus


@lru_cache(maxsize=256)
def compile_glob(pattern: str) -> Pattern[str]:
    """Translate a glob with ``*`` and ``?`` into an anchored regex."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def matches_glob(pattern: str, key: str) -> bool:
    return compile_glob(pattern).match(key) is not None


def qualify_pattern(pattern: str, prefix: str) -> str:
    """Patterns not starting with the prefix (or a wildcard) are taken relative to it."""
    if pattern.startswith(f"{prefix}:") or pattern.startswith("*"):
        return pattern
    return f"{prefix}:{pattern}"


class DependencyGraph:
    """
    Explicit source -> dependents graph keyed by normalized key.

    Traversal is transitive and cycle-safe.
    """

    def __init__(self, edges: Optional[Mapping[str, Iterable[str]]] = None):
        self._edges: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        for source, dependents in (edges or {}).items():
            for dependent in dependents:
                self.add(source, dependent)

    def add(self, source: str, dependent: str) -> None:
        if source == dependent:
            return
        with self._lock:
            self._edges.setdefault(source, set()).add(dependent)

    def remove(self, source: str, dependent: Optional[str] = None) -> bool:
        """Remove one edge, or every edge of source when dependent is None."""
        with self._lock:
            if source not in self._edges:
                return False
            if dependent is None:
                del self._edges[source]
                return True
            if dependent not in self._edges[source]:
                return False
            self._edges[source].discard(dependent)
            if not self._edges[source]:
                del self._edges[source]
            return True

    def dependents(self, source: str) -> List[str]:
        with self._lock:
            return sorted(self._edges.get(source, ()))

    def cascade(self, sources: Iterable[str]) -> List[str]:
        """Every transitive dependent of sources, excluding the sources."""
        with self._lock:
            edges = {source: set(deps) for source, deps in self._edges.items()}

        roots = list(dict.fromkeys(sources))
        visited: Set[str] = set(roots)
        queue = deque(roots)
        order: List[str] = []
        while queue:
            current = queue.popleft()
            for dependent in sorted(edges.get(current, ())):
                if dependent in visited:
                    continue
                visited.add(dependent)
                order.append(dependent)
                queue.append(dependent)
        return order

    def to_dict(self) -> Dict[str, List[str]]:
        with self._lock:
            return {source: sorted(deps) for source, deps in self._edges.items()}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(deps) for deps in self._edges.values())


DEFAULT_NAMESPACE_DEPENDENCIES: Dict[str, List[str]] = {
    "configuration": ["spam_patterns", "ip_reputation", "analytics"],
    "spam_patterns": ["analytics", "statistics"],
    "ip_reputation": ["geolocation", "analytics", "statistics"],
    "models.spam_pattern": ["spam_patterns", "analytics"],
    "models.ip_reputation": ["ip_reputation", "geolocation", "analytics"],
}


def model_source(model_name: str) -> str:
    """Dependency map source name for a model, e.g. ``models.spam_pattern``."""
    return model_name if model_name.startswith("models.") else f"models.{model_name}"


@dataclass(frozen=True)
class CapacityPolicy:
    """Classifies byte usage against a budget."""

    warning_threshold: float = 75.0
    critical_threshold: float = 90.0

    @staticmethod
    def usage_percent(used_bytes: int, budget_bytes: int) -> float:
        if budget_bytes <= 0:
            return 0.0
        return used_bytes / budget_bytes * 100

    def classify(self, usage_percent: float) -> CapacityStatus:
        return CapacityStatus.from_usage(
            usage_percent, self.warning_threshold, self.critical_threshold
        )

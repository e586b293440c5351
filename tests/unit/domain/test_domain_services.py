"""
Cache Domain Service Tests

Unit tests for glob matching, the dependency graph and capacity policy.
"""

import pytest

from tiercache.domain.cache.domain_services import (
    CapacityPolicy,
    DependencyGraph,
    matches_glob,
    model_source,
    qualify_pattern,
)
from tiercache.domain.cache.value_objects import CapacityStatus


class TestGlobMatching:
    """Test cases for glob patterns over normalized keys."""

    def test_star_and_question_mark(self):
        """'*' matches any run, '?' exactly one character."""
        assert matches_glob("tiercache:users:*", "tiercache:users:42")
        assert matches_glob("tiercache:users:?", "tiercache:users:7")
        assert not matches_glob("tiercache:users:?", "tiercache:users:42")

    def test_regex_characters_are_literal(self):
        """Characters like '.' and '+' have no regex meaning."""
        assert matches_glob("a.b+c", "a.b+c")
        assert not matches_glob("a.b", "axb")

    def test_qualify_pattern(self):
        """Relative patterns get the key prefix; qualified ones are kept."""
        assert qualify_pattern("users:*", "tiercache") == "tiercache:users:*"
        assert qualify_pattern("tiercache:users:*", "tiercache") == "tiercache:users:*"
        assert qualify_pattern("*:users", "tiercache") == "*:users"


class TestDependencyGraph:
    """Test cases for transitive dependency traversal."""

    def test_cascade_is_transitive(self):
        """Dependents of dependents are included."""
        graph = DependencyGraph({"a": ["b"], "b": ["c"]})
        assert graph.cascade(["a"]) == ["b", "c"]

    def test_cascade_terminates_on_cycles(self):
        """Cycles are visited once and never include the source."""
        graph = DependencyGraph({"a": ["b"], "b": ["c"], "c": ["a"]})
        assert graph.cascade(["a"]) == ["b", "c"]

    def test_self_dependency_is_ignored(self):
        """A key cannot depend on itself."""
        graph = DependencyGraph()
        graph.add("a", "a")
        assert len(graph) == 0

    def test_remove_edges(self):
        """Single edges and whole sources can be removed."""
        graph = DependencyGraph({"a": ["b", "c"]})
        assert graph.remove("a", "b") is True
        assert graph.dependents("a") == ["c"]
        assert graph.remove("a") is True
        assert graph.remove("a") is False

    def test_model_source_name(self):
        """Model names map onto the models.* namespace."""
        assert model_source("spam_pattern") == "models.spam_pattern"
        assert model_source("models.ip_reputation") == "models.ip_reputation"


class TestCapacityPolicy:
    """Test cases for capacity usage calculation."""

    def test_usage_percent(self):
        """Usage is an unrounded percentage and zero for empty budgets."""
        assert CapacityPolicy.usage_percent(75, 100) == 75.0
        assert CapacityPolicy.usage_percent(1, 3) == pytest.approx(100 / 3)
        assert CapacityPolicy.usage_percent(10, 0) == 0.0

    def test_classify_uses_thresholds(self):
        """Custom thresholds shift classification."""
        policy = CapacityPolicy(warning_threshold=50, critical_threshold=60)
        assert policy.classify(49.9) == CapacityStatus.OK
        assert policy.classify(50) == CapacityStatus.WARNING
        assert policy.classify(60.5) == CapacityStatus.CRITICAL

    @pytest.mark.parametrize(
        "used, expected",
        [
            (900_040, CapacityStatus.CRITICAL),
            (749_960, CapacityStatus.OK),
        ],
    )
    def test_usage_near_thresholds_is_not_rounded_across_them(self, used, expected):
        """Usage just past a threshold keeps its side of the boundary."""
        policy = CapacityPolicy()
        assert policy.classify(policy.usage_percent(used, 1_000_000)) == expected

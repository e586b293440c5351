"""
Cache Value Object Tests

Unit tests for cache keys, cache levels and status classification.
"""

import pytest

from tiercache.domain.cache.exceptions import CacheValidationException
from tiercache.domain.cache.value_objects import (
    CacheKey,
    CacheLevel,
    CapacityStatus,
)


class TestCacheKey:
    """Test cases for CacheKey normalization and validation."""

    def test_plain_string_uses_default_namespace(self):
        """A bare key normalizes into the default namespace."""
        assert CacheKey.coerce("user:1").normalize() == "tiercache:default:user:1"

    def test_normalization_is_deterministic(self):
        """Equal keys produce equal normalized strings."""
        first = CacheKey("profile", namespace="users", version=2)
        second = CacheKey("profile", namespace="users", version="2")
        assert first.normalize("app") == second.normalize("app") == "app:users:profile:v2"

    def test_tags_do_not_change_identity_by_default(self):
        """Tags are invalidation metadata unless the key is tag scoped."""
        untagged = CacheKey("report")
        tagged = CacheKey("report", tags={"b", "a"})
        assert untagged.normalize() == tagged.normalize()

    def test_tag_scoped_keys_include_sorted_tags(self):
        """Tag scoped keys append the sorted tag list."""
        key = CacheKey("report", tags={"b", "a"}, tag_scoped=True)
        assert key.normalize() == "tiercache:default:report:tags:a,b"

    @pytest.mark.parametrize("bad_key", ["", "has space", "tab\tkey", "new\nline"])
    def test_invalid_keys_are_rejected(self, bad_key):
        """Empty keys and keys with whitespace raise before any store access."""
        with pytest.raises(CacheValidationException):
            CacheKey(bad_key)

    def test_namespace_cannot_contain_separator(self):
        """A ':' in the namespace would make normalization ambiguous."""
        with pytest.raises(CacheValidationException):
            CacheKey("k", namespace="a:b")

    def test_negative_ttl_is_rejected(self):
        """Key level TTL hints cannot be negative."""
        with pytest.raises(CacheValidationException):
            CacheKey("k", ttl=-1)

    def test_levels_hint_is_sorted_fastest_first(self):
        """Level hints are deduplicated and ordered by priority."""
        key = CacheKey("k", levels=("database", CacheLevel.REQUEST, "database"))
        assert key.levels == (CacheLevel.REQUEST, CacheLevel.DATABASE)

    def test_round_trip_through_dict(self):
        """to_dict/from_dict preserve every field."""
        key = CacheKey.for_configuration("limits").with_version(3)
        assert CacheKey.from_dict(key.to_dict()) == key

    def test_factory_keys_carry_tags(self):
        """Domain factories attach their namespace tags."""
        key = CacheKey.for_ip_reputation("10.0.0.1")
        assert key.namespace == "ip_reputation"
        assert key.has_all_tags(["ip_reputation", "security"])
        assert key.ttl == 3600

    @pytest.mark.parametrize(
        "key, namespace, tag",
        [
            (CacheKey.for_geolocation("10.0.0.1"), "geolocation", "geolocation"),
            (CacheKey.for_spam_pattern("casino"), "spam_patterns", "spam_patterns"),
            (CacheKey.for_analytics("submissions"), "analytics", "statistics"),
        ],
    )
    def test_domain_factories(self, key, namespace, tag):
        """Each factory targets its dependency namespace."""
        assert key.namespace == namespace
        assert key.has_tag(tag)

    def test_builders_return_new_keys(self):
        """with_* builders leave the original key untouched."""
        base = CacheKey("report")
        derived = (
            base.with_namespace("reports")
            .with_tags("daily")
            .with_ttl(60)
            .with_levels("memory", "request")
        )

        assert base.normalize() == "tiercache:default:report"
        assert derived.normalize() == "tiercache:reports:report"
        assert derived.tags == frozenset({"daily"})
        assert derived.ttl == 60
        assert derived.levels == (CacheLevel.REQUEST, CacheLevel.MEMORY)
        assert derived.with_levels().levels is None

    def test_child_keys_share_namespace(self):
        child = CacheKey("user", namespace="users").create_child("42")
        assert child.normalize() == "tiercache:users:user:42"

    def test_hash_and_size(self):
        """Hashes are stable and sizes count the key and its tags."""
        key = CacheKey("k", tags={"ab"})
        assert key.short_hash() == key.get_hash()[:12]
        assert key.short_hash(6) == CacheKey("k").short_hash(6)
        assert key.estimated_size() == len("tiercache:default:k") + 2


class TestCacheLevel:
    """Test cases for CacheLevel capabilities and TTL clamping."""

    def test_levels_are_ordered_by_priority(self):
        """ordered() lists levels fastest first."""
        assert CacheLevel.ordered() == [
            CacheLevel.REQUEST,
            CacheLevel.MEMORY,
            CacheLevel.DATABASE,
        ]

    def test_capability_table(self):
        """Only MEMORY matches patterns; REQUEST has no tagging."""
        assert CacheLevel.supporting_patterns() == [CacheLevel.MEMORY]
        assert CacheLevel.supporting_tags() == [CacheLevel.MEMORY, CacheLevel.DATABASE]
        assert CacheLevel.REQUEST.default_ttl == 300
        assert CacheLevel.REQUEST.max_ttl == 3600

    def test_capability_table_is_read_only(self):
        """The capability mapping cannot be modified at runtime."""
        with pytest.raises(TypeError):
            CacheLevel.capabilities()[CacheLevel.REQUEST] = None

    def test_ttl_clamp_defaults_and_caps(self):
        """None uses the default; large values are capped at max_ttl."""
        assert CacheLevel.MEMORY.ttl_clamp(None) == 3600
        assert CacheLevel.MEMORY.ttl_clamp(10**9) == 43200
        assert CacheLevel.DATABASE.ttl_clamp(120) == 120

    def test_ttl_clamp_floors_zero_at_one_second(self):
        """A zero TTL still produces a live entry for one second."""
        assert CacheLevel.REQUEST.ttl_clamp(0) == 1

    def test_ttl_clamp_rejects_negative(self):
        """Negative TTLs raise."""
        with pytest.raises(CacheValidationException):
            CacheLevel.MEMORY.ttl_clamp(-5)

    def test_capability_helpers(self):
        """Speed, capability and item size checks follow the level table."""
        assert CacheLevel.REQUEST.faster_than("memory")
        assert not CacheLevel.DATABASE.faster_than(CacheLevel.MEMORY)
        assert CacheLevel.MEMORY.supports("pattern_matching")
        assert not CacheLevel.REQUEST.supports("tagging")
        assert not CacheLevel.MEMORY.supports("teleportation")
        assert CacheLevel.REQUEST.is_suitable_for_size(1024)
        assert not CacheLevel.REQUEST.is_suitable_for_size(2 * 1024 * 1024)
        assert CacheLevel.DATABASE.is_suitable_for_size(2 * 1024 * 1024)

    def test_coerce_unknown_level(self):
        """Unknown level names raise a validation error."""
        with pytest.raises(CacheValidationException):
            CacheLevel.coerce("disk")


class TestCapacityStatus:
    """Test cases for capacity classification boundaries."""

    @pytest.mark.parametrize(
        "usage, expected",
        [
            (0.0, CapacityStatus.OK),
            (74.99, CapacityStatus.OK),
            (74.996, CapacityStatus.OK),
            (75.0, CapacityStatus.WARNING),
            (90.0, CapacityStatus.WARNING),
            (90.004, CapacityStatus.CRITICAL),
            (90.01, CapacityStatus.CRITICAL),
            (100.0, CapacityStatus.CRITICAL),
        ],
    )
    def test_boundaries(self, usage, expected):
        """Warning is inclusive at 75, critical strictly above 90."""
        assert CapacityStatus.from_usage(usage) == expected

    def test_worst_status(self):
        """worst() picks the most severe status."""
        statuses = [CapacityStatus.OK, CapacityStatus.CRITICAL, CapacityStatus.WARNING]
        assert CapacityStatus.worst(statuses) == CapacityStatus.CRITICAL
        assert CapacityStatus.worst([]) == CapacityStatus.OK

"""
Cache Value Objects

Immutable value objects for the cache domain: cache levels with their
fixed capability table, cache keys with deterministic normalization, and
the status enumerations shared by the services.
"""

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .exceptions import CacheValidationException

DEFAULT_KEY_PREFIX = "tiercache"
DEFAULT_NAMESPACE = "default"
MAX_KEY_LENGTH = 250
MAX_TAG_LENGTH = 100


@dataclass(frozen=True)
class LevelCapabilities:
    """Static capability and SLA metadata for one cache level."""

    priority: int
    default_ttl: int
    max_ttl: int
    min_response_ms: float
    max_response_ms: float
    supports_tagging: bool
    supports_distribution: bool
    supports_pattern_matching: bool
    max_item_bytes: Optional[int]
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "default_ttl": self.default_ttl,
            "max_ttl": self.max_ttl,
            "response_time_range_ms": [self.min_response_ms, self.max_response_ms],
            "supports_tagging": self.supports_tagging,
            "supports_distribution": self.supports_distribution,
            "supports_pattern_matching": self.supports_pattern_matching,
            "max_item_bytes": self.max_item_bytes,
            "description": self.description,
        }


class CacheLevel(str, Enum):
    """Cache levels ordered fastest to slowest."""

    REQUEST = "request"
    MEMORY = "memory"
    DATABASE = "database"

    @classmethod
    def capabilities(cls) -> Mapping["CacheLevel", LevelCapabilities]:
        """Fixed capability table, read-only."""
        return _CAPABILITIES

    @property
    def info(self) -> LevelCapabilities:
        return _CAPABILITIES[self]

    @property
    def priority(self) -> int:
        return self.info.priority

    @property
    def default_ttl(self) -> int:
        return self.info.default_ttl

    @property
    def max_ttl(self) -> int:
        return self.info.max_ttl

    @property
    def supports_tagging(self) -> bool:
        return self.info.supports_tagging

    @property
    def supports_distribution(self) -> bool:
        return self.info.supports_distribution

    @property
    def supports_pattern_matching(self) -> bool:
        return self.info.supports_pattern_matching

    @property
    def description(self) -> str:
        return self.info.description

    def ttl_clamp(
        self,
        requested: Optional[int] = None,
        default_ttl: Optional[int] = None,
        max_ttl: Optional[int] = None,
    ) -> int:
        """Clamp a requested TTL to [1, max_ttl], defaulting when None.

        ``default_ttl`` and ``max_ttl`` override the table values with the
        configured ones.
        """
        upper = max_ttl if max_ttl is not None else self.info.max_ttl
        if requested is None:
            requested = default_ttl if default_ttl is not None else self.info.default_ttl
        if requested < 0:
            raise CacheValidationException(
                "TTL cannot be negative", field="ttl", value=requested
            )
        return max(1, min(int(requested), upper))

    def is_suitable_for_size(self, size_bytes: int) -> bool:
        limit = self.info.max_item_bytes
        return limit is None or size_bytes <= limit

    def faster_than(self, other: Union["CacheLevel", str]) -> bool:
        return self.priority < CacheLevel.coerce(other).priority

    def supports(self, capability: str) -> bool:
        """Check a capability by name: tagging, distribution or pattern_matching."""
        return bool(getattr(self.info, f"supports_{capability}", False))

    @classmethod
    def ordered(cls) -> List["CacheLevel"]:
        """All levels, fastest first."""
        return sorted(cls, key=lambda level: level.priority)

    @classmethod
    def coerce(cls, level: Union["CacheLevel", str]) -> "CacheLevel":
        try:
            return cls(level)
        except ValueError:
            raise CacheValidationException(
                f"Unknown cache level: {level}", field="level", value=level
            )

    @classmethod
    def by_priority(
        cls, levels: Iterable[Union["CacheLevel", str]]
    ) -> List["CacheLevel"]:
        """Deduplicate and sort levels fastest first."""
        unique = {cls.coerce(level) for level in levels}
        return sorted(unique, key=lambda level: level.priority)

    @classmethod
    def supporting_tags(cls) -> List["CacheLevel"]:
        return [level for level in cls.ordered() if level.supports_tagging]

    @classmethod
    def supporting_patterns(cls) -> List["CacheLevel"]:
        return [level for level in cls.ordered() if level.supports_pattern_matching]


_CAPABILITIES: Mapping[CacheLevel, LevelCapabilities] = MappingProxyType(
    {
        CacheLevel.REQUEST: LevelCapabilities(
            priority=1,
            default_ttl=300,
            max_ttl=3600,
            min_response_ms=0.1,
            max_response_ms=0.9,
            supports_tagging=False,
            supports_distribution=False,
            supports_pattern_matching=False,
            max_item_bytes=1024 * 1024,
            description="Per-request in-process storage, discarded when the request ends",
        ),
        CacheLevel.MEMORY: LevelCapabilities(
            priority=2,
            default_ttl=3600,
            max_ttl=43200,
            min_response_ms=1.0,
            max_response_ms=4.9,
            supports_tagging=True,
            supports_distribution=True,
            supports_pattern_matching=True,
            max_item_bytes=10 * 1024 * 1024,
            description="Shared memory store with tagging and pattern invalidation",
        ),
        CacheLevel.DATABASE: LevelCapabilities(
            priority=3,
            default_ttl=86400,
            max_ttl=604800,
            min_response_ms=5.0,
            max_response_ms=50.0,
            supports_tagging=True,
            supports_distribution=True,
            supports_pattern_matching=False,
            max_item_bytes=None,
            description="Durable store for long-lived entries",
        ),
    }
)


LevelsArg = Optional[Iterable[Union[CacheLevel, str]]]


def _validate_token(value: str, field_name: str, max_length: int) -> None:
    if not value:
        raise CacheValidationException(f"Cache {field_name} cannot be empty", field=field_name)
    if len(value) > max_length:
        raise CacheValidationException(
            f"Cache {field_name} too long (max {max_length} characters)",
            field=field_name,
            value=value[:50],
        )
    if any(char.isspace() or not char.isprintable() for char in value):
        raise CacheValidationException(
            f"Cache {field_name} cannot contain whitespace or control characters",
            field=field_name,
            value=value,
        )


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable cache key value object.

    Normalizes to ``prefix:namespace:key`` with an optional ``:v<version>``
    and, for tag-scoped keys, a ``:tags:<sorted tags>`` suffix. Tags are
    otherwise metadata used for invalidation and do not change identity.
    """

    key: str
    namespace: str = DEFAULT_NAMESPACE
    tags: frozenset = field(default_factory=frozenset)
    version: Optional[str] = None
    ttl: Optional[int] = None
    levels: Optional[Tuple[CacheLevel, ...]] = None
    tag_scoped: bool = False

    def __post_init__(self) -> None:
        """Validate key parts and freeze collections."""
        if not isinstance(self.key, str):
            raise CacheValidationException("Cache key must be a string", field="key")
        _validate_token(self.key, "key", MAX_KEY_LENGTH)
        _validate_token(self.namespace, "namespace", MAX_TAG_LENGTH)
        if ":" in self.namespace:
            raise CacheValidationException(
                "Cache namespace cannot contain ':'",
                field="namespace",
                value=self.namespace,
            )

        tags = frozenset(self.tags)
        for tag in tags:
            if not isinstance(tag, str):
                raise CacheValidationException("Cache tags must be strings", field="tags")
            _validate_token(tag, "tag", MAX_TAG_LENGTH)
        object.__setattr__(self, "tags", tags)

        if self.version is not None:
            _validate_token(str(self.version), "version", MAX_TAG_LENGTH)
            object.__setattr__(self, "version", str(self.version))

        if self.ttl is not None and self.ttl < 0:
            raise CacheValidationException(
                "TTL cannot be negative", field="ttl", value=self.ttl
            )

        if self.levels is not None:
            object.__setattr__(self, "levels", tuple(CacheLevel.by_priority(self.levels)))

    @classmethod
    def coerce(cls, key: Union["CacheKey", str]) -> "CacheKey":
        """Accept a CacheKey or a plain string in the default namespace."""
        if isinstance(key, CacheKey):
            return key
        return cls(key=key)

    def normalize(self, prefix: str = DEFAULT_KEY_PREFIX) -> str:
        """Deterministic storage key shared by every level."""
        parts = [prefix, self.namespace, self.key]
        if self.version is not None:
            parts.append(f"v{self.version}")
        if self.tag_scoped and self.tags:
            parts.append("tags")
            parts.append(",".join(sorted(self.tags)))
        return ":".join(parts)

    def with_tags(self, *tags: str) -> "CacheKey":
        return replace(self, tags=self.tags | frozenset(tags))

    def with_namespace(self, namespace: str) -> "CacheKey":
        return replace(self, namespace=namespace)

    def with_version(self, version: Union[str, int]) -> "CacheKey":
        return replace(self, version=str(version))

    def with_ttl(self, ttl: Optional[int]) -> "CacheKey":
        return replace(self, ttl=ttl)

    def with_levels(self, *levels: Union[CacheLevel, str]) -> "CacheKey":
        return replace(self, levels=tuple(levels) if levels else None)

    def create_child(self, suffix: str) -> "CacheKey":
        return replace(self, key=f"{self.key}:{suffix}")

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def has_any_tag(self, tags: Iterable[str]) -> bool:
        return not self.tags.isdisjoint(tags)

    def has_all_tags(self, tags: Iterable[str]) -> bool:
        return self.tags.issuperset(tags)

    def get_hash(self, prefix: str = DEFAULT_KEY_PREFIX) -> str:
        return hashlib.sha256(self.normalize(prefix).encode("utf-8")).hexdigest()

    def short_hash(self, length: int = 12) -> str:
        return self.get_hash()[:length]

    def estimated_size(self) -> int:
        """Approximate bytes the key and its tags occupy in a store."""
        return len(self.normalize().encode("utf-8")) + sum(
            len(tag.encode("utf-8")) for tag in self.tags
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "namespace": self.namespace,
            "tags": sorted(self.tags),
            "version": self.version,
            "ttl": self.ttl,
            "levels": [level.value for level in self.levels] if self.levels else None,
            "tag_scoped": self.tag_scoped,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheKey":
        levels = data.get("levels")
        return cls(
            key=data["key"],
            namespace=data.get("namespace", DEFAULT_NAMESPACE),
            tags=frozenset(data.get("tags") or ()),
            version=data.get("version"),
            ttl=data.get("ttl"),
            levels=tuple(levels) if levels else None,
            tag_scoped=data.get("tag_scoped", False),
        )

    # Domain key factories
    @classmethod
    def for_ip_reputation(cls, ip_address: str) -> "CacheKey":
        return cls(
            key=ip_address,
            namespace="ip_reputation",
            tags=frozenset({"ip_reputation", "security"}),
            ttl=3600,
        )

    @classmethod
    def for_geolocation(cls, ip_address: str) -> "CacheKey":
        return cls(
            key=ip_address,
            namespace="geolocation",
            tags=frozenset({"geolocation", "location"}),
            ttl=86400,
        )

    @classmethod
    def for_spam_pattern(cls, pattern_name: str) -> "CacheKey":
        return cls(
            key=pattern_name,
            namespace="spam_patterns",
            tags=frozenset({"spam_patterns", "security"}),
            ttl=1800,
        )

    @classmethod
    def for_configuration(cls, name: str) -> "CacheKey":
        return cls(
            key=name,
            namespace="configuration",
            tags=frozenset({"configuration", "config"}),
            ttl=3600,
        )

    @classmethod
    def for_analytics(cls, metric: str, period: str = "daily") -> "CacheKey":
        return cls(
            key=f"{metric}:{period}",
            namespace="analytics",
            tags=frozenset({"analytics", "statistics"}),
            ttl=1800,
        )

    def __str__(self) -> str:
        return self.normalize()


class CapacityStatus(str, Enum):
    """Capacity usage classification."""

    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def from_usage(
        cls,
        usage_percent: float,
        warning_threshold: float = 75.0,
        critical_threshold: float = 90.0,
    ) -> "CapacityStatus":
        """Critical strictly above the critical threshold, warning from the warning one."""
        if usage_percent > critical_threshold:
            return cls.CRITICAL
        if usage_percent >= warning_threshold:
            return cls.WARNING
        return cls.OK

    @property
    def severity(self) -> int:
        return {"ok": 0, "warning": 1, "critical": 2}[self.value]

    @classmethod
    def worst(cls, statuses: Iterable["CapacityStatus"]) -> "CapacityStatus":
        return max(statuses, key=lambda status: status.severity, default=cls.OK)


class ValidationStatus(str, Enum):
    """Overall status of a validation or maintenance report."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


class WarmingStatus(str, Enum):
    """Outcome of a single warming job."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class WarmingErrorType(str, Enum):
    """Why a warming job did not succeed."""

    VALIDATION_ERROR = "validation_error"
    CALLBACK_EXCEPTION = "callback_exception"
    TIMEOUT = "timeout"
    NULL_VALUE = "null_value"
    STORAGE_ERROR = "storage_error"

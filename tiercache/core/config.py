"""
tiercache Configuration

Environment-driven settings for the multi-tier cache manager plus the
runtime configuration model that the manager exposes and updates.
"""

from functools import lru_cache
from typing import Any, Dict, List

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.cache.value_objects import CacheLevel

# Load environment variables from .env file
load_dotenv()

GB = 1024**3
MB = 1024**2


class CacheSettings(BaseSettings):
    """Cache settings with validation and safe in-process defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TIERCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    KEY_PREFIX: str = Field(
        default="tiercache", min_length=1, description="Prefix for normalized keys"
    )

    # Level switches and TTLs
    REQUEST_ENABLED: bool = Field(default=True, description="Enable REQUEST level")
    MEMORY_ENABLED: bool = Field(default=True, description="Enable MEMORY level")
    DATABASE_ENABLED: bool = Field(default=True, description="Enable DATABASE level")

    REQUEST_DEFAULT_TTL: int = Field(default=300, ge=1, description="REQUEST default TTL")
    REQUEST_MAX_TTL: int = Field(default=3600, ge=1, description="REQUEST max TTL")
    MEMORY_DEFAULT_TTL: int = Field(default=3600, ge=1, description="MEMORY default TTL")
    MEMORY_MAX_TTL: int = Field(default=43200, ge=1, description="MEMORY max TTL")
    DATABASE_DEFAULT_TTL: int = Field(
        default=86400, ge=1, description="DATABASE default TTL"
    )
    DATABASE_MAX_TTL: int = Field(default=604800, ge=1, description="DATABASE max TTL")

    # Capacity budgets in bytes
    REQUEST_CAPACITY_BYTES: int = Field(default=1 * MB, ge=1)
    MEMORY_CAPACITY_BYTES: int = Field(default=8 * GB, ge=1)
    DATABASE_CAPACITY_BYTES: int = Field(default=2 * GB, ge=1)
    TOTAL_CAPACITY_BYTES: int = Field(default=10 * GB, ge=1)

    # Backends
    MEMORY_BACKEND: str = Field(
        default="memory", description="MEMORY level backend: memory or redis"
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=10, ge=1, le=200, description="Redis connection pool size"
    )
    DATABASE_BACKEND: str = Field(
        default="memory", description="DATABASE level backend: memory or sql"
    )
    DATABASE_URL: str = Field(
        default="postgresql+asyncpg://localhost:5432/tiercache",
        description="SQLAlchemy async URL for the DATABASE level",
    )

    # Store resilience
    CIRCUIT_FAILURE_THRESHOLD: int = Field(default=5, ge=1, le=100)
    CIRCUIT_RECOVERY_TIMEOUT: float = Field(default=30.0, gt=0)
    CIRCUIT_SUCCESS_THRESHOLD: int = Field(default=2, ge=1, le=100)
    STORE_OPERATION_TIMEOUT: float = Field(
        default=2.0, gt=0, description="Per-call store timeout in seconds"
    )

    # Warming
    WARMING_BATCH_SIZE: int = Field(default=50, ge=1, le=10000)
    WARMING_INTER_BATCH_DELAY_MS: int = Field(default=10, ge=0, le=60000)
    WARMING_ITEM_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    WARMING_MAX_CONCURRENCY: int = Field(default=10, ge=1, le=1000)

    # Validation targets
    VALIDATION_MEMORY_LATENCY_MS: float = Field(default=5.0, gt=0)
    VALIDATION_DATABASE_LATENCY_MS: float = Field(default=20.0, gt=0)
    VALIDATION_TARGET_RPM: int = Field(default=10000, ge=1)
    VALIDATION_TARGET_HIT_RATIO: float = Field(default=85.0, ge=0, le=100)
    VALIDATION_DURATION_SECONDS: float = Field(default=5.0, gt=0, le=3600)
    VALIDATION_CONCURRENCY: int = Field(default=10, ge=1, le=1000)
    CAPACITY_WARNING_THRESHOLD: float = Field(default=75.0, gt=0, le=100)
    CAPACITY_CRITICAL_THRESHOLD: float = Field(default=90.0, gt=0, le=100)

    # Behaviour switches
    REMEMBER_COALESCE: bool = Field(
        default=False,
        description="Share one producer call between concurrent remember() misses",
    )
    STATS_SAMPLE_SIZE: int = Field(
        default=1000, ge=10, le=1_000_000, description="Rolling response-time window"
    )

    @field_validator("MEMORY_BACKEND")
    @classmethod
    def validate_memory_backend(cls, v: str) -> str:
        """Validate MEMORY backend name."""
        if v not in ("memory", "redis"):
            raise ValueError("MEMORY_BACKEND must be 'memory' or 'redis'")
        return v

    @field_validator("DATABASE_BACKEND")
    @classmethod
    def validate_database_backend(cls, v: str) -> str:
        """Validate DATABASE backend name."""
        if v not in ("memory", "sql"):
            raise ValueError("DATABASE_BACKEND must be 'memory' or 'sql'")
        return v

    @field_validator("KEY_PREFIX")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Validate key prefix has no separators or whitespace."""
        if ":" in v or any(char.isspace() for char in v):
            raise ValueError("KEY_PREFIX cannot contain ':' or whitespace")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "CacheSettings":
        """Warning threshold must sit below the critical threshold."""
        if self.CAPACITY_WARNING_THRESHOLD >= self.CAPACITY_CRITICAL_THRESHOLD:
            raise ValueError(
                "CAPACITY_WARNING_THRESHOLD must be lower than CAPACITY_CRITICAL_THRESHOLD"
            )
        return self

    @property
    def is_redis_memory(self) -> bool:
        return self.MEMORY_BACKEND == "redis"

    @property
    def is_sql_database(self) -> bool:
        return self.DATABASE_BACKEND == "sql"


class LevelConfiguration(BaseModel):
    """Runtime configuration for a single cache level."""

    enabled: bool = True
    default_ttl: int = Field(..., ge=1)
    max_ttl: int = Field(..., ge=1)
    capacity_budget: int = Field(..., ge=1, description="Byte budget for the level")

    @model_validator(mode="after")
    def validate_ttls(self) -> "LevelConfiguration":
        if self.default_ttl > self.max_ttl:
            raise ValueError("default_ttl cannot exceed max_ttl")
        return self


class WarmingConfiguration(BaseModel):
    """Batching and timeout knobs for cache warming."""

    batch_size: int = Field(default=50, ge=1)
    inter_batch_delay_ms: int = Field(default=10, ge=0)
    item_timeout_seconds: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=10, ge=1)


class ValidationConfiguration(BaseModel):
    """SLA targets checked by the validation service."""

    memory_latency_ms: float = Field(default=5.0, gt=0)
    database_latency_ms: float = Field(default=20.0, gt=0)
    target_rpm: int = Field(default=10000, ge=1)
    target_hit_ratio: float = Field(default=85.0, ge=0, le=100)
    duration_seconds: float = Field(default=5.0, gt=0)
    concurrency: int = Field(default=10, ge=1)
    warning_threshold: float = Field(default=75.0, gt=0, le=100)
    critical_threshold: float = Field(default=90.0, gt=0, le=100)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ValidationConfiguration":
        if self.warning_threshold >= self.critical_threshold:
            raise ValueError("warning_threshold must be lower than critical_threshold")
        return self


class CacheConfiguration(BaseModel):
    """Runtime cache configuration exposed by get/update_configuration."""

    key_prefix: str = "tiercache"
    levels: Dict[str, LevelConfiguration]
    total_capacity_budget: int = Field(default=10 * GB, ge=1)
    warming: WarmingConfiguration = Field(default_factory=WarmingConfiguration)
    validation: ValidationConfiguration = Field(default_factory=ValidationConfiguration)
    remember_coalesce: bool = False

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        if not v or ":" in v or any(char.isspace() for char in v):
            raise ValueError("key_prefix must be non-empty without ':' or whitespace")
        return v

    @field_validator("levels")
    @classmethod
    def validate_level_names(
        cls, v: Dict[str, LevelConfiguration]
    ) -> Dict[str, LevelConfiguration]:
        """Every level must be configured and no unknown names are allowed."""
        known = {level.value for level in CacheLevel}
        unknown = set(v) - known
        if unknown:
            raise ValueError(f"Unknown cache levels: {sorted(unknown)}")
        missing = known - set(v)
        if missing:
            raise ValueError(f"Missing cache levels: {sorted(missing)}")
        return v

    def level(self, level: CacheLevel) -> LevelConfiguration:
        return self.levels[CacheLevel(level).value]

    @property
    def enabled_levels(self) -> List[CacheLevel]:
        return [
            level for level in CacheLevel.ordered() if self.levels[level.value].enabled
        ]

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "CacheConfiguration":
        """Build runtime configuration from environment settings."""
        return cls(
            key_prefix=settings.KEY_PREFIX,
            levels={
                CacheLevel.REQUEST.value: LevelConfiguration(
                    enabled=settings.REQUEST_ENABLED,
                    default_ttl=settings.REQUEST_DEFAULT_TTL,
                    max_ttl=settings.REQUEST_MAX_TTL,
                    capacity_budget=settings.REQUEST_CAPACITY_BYTES,
                ),
                CacheLevel.MEMORY.value: LevelConfiguration(
                    enabled=settings.MEMORY_ENABLED,
                    default_ttl=settings.MEMORY_DEFAULT_TTL,
                    max_ttl=settings.MEMORY_MAX_TTL,
                    capacity_budget=settings.MEMORY_CAPACITY_BYTES,
                ),
                CacheLevel.DATABASE.value: LevelConfiguration(
                    enabled=settings.DATABASE_ENABLED,
                    default_ttl=settings.DATABASE_DEFAULT_TTL,
                    max_ttl=settings.DATABASE_MAX_TTL,
                    capacity_budget=settings.DATABASE_CAPACITY_BYTES,
                ),
            },
            total_capacity_budget=settings.TOTAL_CAPACITY_BYTES,
            warming=WarmingConfiguration(
                batch_size=settings.WARMING_BATCH_SIZE,
                inter_batch_delay_ms=settings.WARMING_INTER_BATCH_DELAY_MS,
                item_timeout_seconds=settings.WARMING_ITEM_TIMEOUT_SECONDS,
                max_concurrency=settings.WARMING_MAX_CONCURRENCY,
            ),
            validation=ValidationConfiguration(
                memory_latency_ms=settings.VALIDATION_MEMORY_LATENCY_MS,
                database_latency_ms=settings.VALIDATION_DATABASE_LATENCY_MS,
                target_rpm=settings.VALIDATION_TARGET_RPM,
                target_hit_ratio=settings.VALIDATION_TARGET_HIT_RATIO,
                duration_seconds=settings.VALIDATION_DURATION_SECONDS,
                concurrency=settings.VALIDATION_CONCURRENCY,
                warning_threshold=settings.CAPACITY_WARNING_THRESHOLD,
                critical_threshold=settings.CAPACITY_CRITICAL_THRESHOLD,
            ),
            remember_coalesce=settings.REMEMBER_COALESCE,
        )

    def merged(self, changes: Dict[str, Any]) -> "CacheConfiguration":
        """Return a validated copy with ``changes`` deep-merged in."""
        return CacheConfiguration.model_validate(
            _deep_merge(self.model_dump(), changes)
        )


def _deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@lru_cache()
def get_settings() -> CacheSettings:
    """Get cached settings instance."""
    return CacheSettings()

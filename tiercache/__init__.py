"""
tiercache - multi-level cache manager

Layered REQUEST / MEMORY / DATABASE caching with backfill, tag, pattern
and dependency invalidation, batched warming and SLA validation.
"""

from .domain.cache.exceptions import (
    CacheException,
    CacheProducerException,
    CacheStorageException,
    CacheValidationException,
)
from .domain.cache.value_objects import CacheKey, CacheLevel
from .services.cache.cache_manager import CacheManager, get_cache_manager

__version__ = "0.1.0"

__all__ = [
    "CacheManager",
    "get_cache_manager",
    "CacheKey",
    "CacheLevel",
    "CacheException",
    "CacheValidationException",
    "CacheStorageException",
    "CacheProducerException",
]

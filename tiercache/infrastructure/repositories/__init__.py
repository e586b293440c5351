"""
Cache Level Repositories

Concrete LevelRepository adapters for each cache level.
"""

from .request_repository import RequestLevelRepository
from .memory_repository import InMemoryLevelRepository
from .redis_repository import RedisLevelRepository
from .database_repository import SqlLevelRepository

__all__ = [
    # In-process
    "RequestLevelRepository",
    "InMemoryLevelRepository",
    # Remote stores
    "RedisLevelRepository",
    "SqlLevelRepository",
]

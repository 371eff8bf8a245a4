"""Content-addressed local package cache.

Key components:
- LocalCacheStore: Main cache interface (has / materialize / put / verify)
- CacheConfig: Configuration management
- CacheMetadata: Index operations
"""

from flashcache.cache.config import CacheConfig
from flashcache.cache.metadata import CacheMetadata
from flashcache.cache.store import (
    CacheEntry,
    CleanReport,
    LocalCacheStore,
    MaterializeResult,
)
from flashcache.errors import (
    CacheDiskFullError,
    CacheError,
    CacheLockError,
    CachePermissionError,
    IntegrityError,
)

__all__ = [
    "LocalCacheStore",
    "CacheConfig",
    "CacheMetadata",
    "CacheEntry",
    "CleanReport",
    "MaterializeResult",
    "CacheError",
    "CacheDiskFullError",
    "CachePermissionError",
    "CacheLockError",
    "IntegrityError",
]

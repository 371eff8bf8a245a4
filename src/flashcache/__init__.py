"""flashcache: cache-backed dependency installs for JavaScript projects.

Key components:
- LocalCacheStore: Content-addressed package cache
- SnapshotManager: Whole-project snapshots with validity fingerprints
- AdaptiveScheduler: Memory-aware bounded concurrency
- FallbackResolver: Offline substitutes from cache, snapshot or install tree
- CloudSync: Shared remote cache under a sync policy
- Installer: Ties the above together for one project
"""

from flashcache.cache import CacheConfig, LocalCacheStore
from flashcache.cloud import CloudConfig, CloudSync, SyncPolicy
from flashcache.config import FlashConfig
from flashcache.errors import ErrorCategory, FlashError, RecoveryStrategy
from flashcache.fallback import FallbackOptions, FallbackResolver, FallbackResult
from flashcache.hooks import HookContext, HookPoint, HookRegistry
from flashcache.installer import CommandFetcher, Installer, InstallReport
from flashcache.network import NetworkChecker, NetworkStatus
from flashcache.scheduler import AdaptiveScheduler, SchedulerConfig
from flashcache.snapshot import Fingerprint, SnapshotConfig, SnapshotManager

__version__ = "0.1.0"

__all__ = [
    "LocalCacheStore",
    "CacheConfig",
    "SnapshotManager",
    "SnapshotConfig",
    "Fingerprint",
    "AdaptiveScheduler",
    "SchedulerConfig",
    "FallbackResolver",
    "FallbackOptions",
    "FallbackResult",
    "NetworkChecker",
    "NetworkStatus",
    "CloudSync",
    "CloudConfig",
    "SyncPolicy",
    "Installer",
    "InstallReport",
    "CommandFetcher",
    "HookRegistry",
    "HookPoint",
    "HookContext",
    "FlashConfig",
    "FlashError",
    "ErrorCategory",
    "RecoveryStrategy",
]

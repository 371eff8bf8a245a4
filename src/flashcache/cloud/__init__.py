"""Shared remote cache: providers, policies and the sync engine.

Key components:
- CloudSync: Reconciles the local cache with a remote store
- CloudProvider / MultipartProvider: Object storage interface
- S3Provider, CloudFilesProvider: Backends
- SyncPolicy: Which side wins for each object
"""

from flashcache.cloud.cloudfiles_provider import CloudFilesProvider
from flashcache.cloud.config import CloudConfig, ProviderConfig
from flashcache.cloud.factory import create_provider, init_provider
from flashcache.cloud.policy import SyncDecision, SyncPolicy, decide
from flashcache.cloud.provider import (
    CloudFileMetadata,
    CloudProvider,
    MultipartProvider,
    ProviderCapabilities,
    UnavailableProvider,
)
from flashcache.cloud.s3_provider import S3Provider
from flashcache.cloud.sync import (
    CloudSync,
    SyncAction,
    SyncDirection,
    SyncOutcome,
    SyncReport,
)
from flashcache.cloud.team import AccessLevel, TeamAccess, has_permission

__all__ = [
    "CloudSync",
    "CloudConfig",
    "ProviderConfig",
    "CloudProvider",
    "MultipartProvider",
    "CloudFileMetadata",
    "ProviderCapabilities",
    "UnavailableProvider",
    "S3Provider",
    "CloudFilesProvider",
    "create_provider",
    "init_provider",
    "SyncPolicy",
    "SyncDecision",
    "decide",
    "SyncAction",
    "SyncDirection",
    "SyncOutcome",
    "SyncReport",
    "AccessLevel",
    "TeamAccess",
    "has_permission",
]

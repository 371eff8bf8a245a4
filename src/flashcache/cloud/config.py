"""Remote cache configuration."""

import copy
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from flashcache.cloud.policy import SyncPolicy
from flashcache.cloud.team import AccessLevel, TeamAccess
from flashcache.utils import env_value, parse_bool

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Object storage backend settings.

    Attributes:
        type: Backend type ('s3', 'gcs', 'file', 'mem')
        bucket: Bucket name (or base directory for 'file')
        region: Region for S3-compatible stores
        endpoint: Custom endpoint URL (S3-compatible stores such as MinIO)
        prefix: Key prefix applied to every object
        credentials: Backend credentials ('access_key_id',
            'secret_access_key', 'session_token' for S3; 'token' for GCS)
    """

    type: str = "s3"
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None
    prefix: str = ""
    credentials: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # never persist secrets
        data["credentials"] = {}
        return data


@dataclass
class CloudConfig:
    """Settings of the cloud synchronization engine.

    Attributes:
        enabled: Whether remote sync is enabled
        provider: Backend settings
        sync_policy: Policy applied to each object
        team_id: Team namespace (objects live under ``teams/<id>/``)
        team_access: Access settings for the team namespace
        invalidate_on_lockfile_change: Treat remote objects as missing
            when the project's lockfile changed since the last operation
        project_dir: Project whose lockfile is watched
    """

    enabled: bool = False
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    sync_policy: SyncPolicy = SyncPolicy.NEWEST
    team_id: Optional[str] = None
    team_access: Optional[TeamAccess] = None
    invalidate_on_lockfile_change: bool = False
    project_dir: Optional[Path] = None

    def __post_init__(self):
        self.sync_policy = SyncPolicy(self.sync_policy)
        if isinstance(self.provider, dict):
            self.provider = ProviderConfig(**self.provider)
        if isinstance(self.team_access, dict):
            self.team_access = TeamAccess(**self.team_access)
        if self.project_dir is not None:
            self.project_dir = Path(self.project_dir)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "provider": self.provider.to_dict(),
            "sync_policy": self.sync_policy.value,
            "team_id": self.team_id,
            "team_access": (
                {
                    "level": self.team_access.level.value,
                    "restrict_to_team": self.team_access.restrict_to_team,
                }
                if self.team_access
                else None
            ),
            "invalidate_on_lockfile_change": self.invalidate_on_lockfile_change,
            "project_dir": str(self.project_dir) if self.project_dir else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloudConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Dict[str, str]] = None,
        base: Optional["CloudConfig"] = None,
    ) -> "CloudConfig":
        """Create configuration from environment variables.

        Variables that are not set keep the value from ``base``, so a
        config file can hold the team settings while the environment
        supplies the backend and credentials.

        Environment variables:
            FLASHCACHE_CLOUD_PROVIDER: Backend type (enables sync when set)
            FLASHCACHE_CLOUD_BUCKET, FLASHCACHE_CLOUD_REGION,
            FLASHCACHE_CLOUD_ENDPOINT, FLASHCACHE_CLOUD_PREFIX: Backend location
            FLASHCACHE_CLOUD_ACCESS_KEY_ID, FLASHCACHE_CLOUD_SECRET_ACCESS_KEY:
                Credentials
            FLASHCACHE_SYNC_POLICY: One of the sync policy names
            FLASHCACHE_TEAM_ID, FLASHCACHE_TEAM_TOKEN,
            FLASHCACHE_TEAM_ACCESS_LEVEL, FLASHCACHE_TEAM_RESTRICT: Team access
            FLASHCACHE_INVALIDATE_ON_LOCKFILE_CHANGE: Lockfile invalidation
            FLASHCACHE_PROJECT_DIR: Project whose lockfile is watched

        Returns:
            CloudConfig instance
        """
        config = copy.deepcopy(base) if base is not None else cls()
        provider = config.provider

        provider_type = env_value("CLOUD_PROVIDER", str.lower, None, environ)
        if provider_type:
            provider.type = provider_type
            config.enabled = True
        provider.bucket = env_value("CLOUD_BUCKET", str, provider.bucket, environ)
        provider.region = env_value("CLOUD_REGION", str, provider.region, environ)
        provider.endpoint = env_value("CLOUD_ENDPOINT", str, provider.endpoint, environ)
        provider.prefix = env_value("CLOUD_PREFIX", str, provider.prefix, environ)

        for key in ("access_key_id", "secret_access_key"):
            value = env_value(f"CLOUD_{key.upper()}", str, None, environ)
            if value:
                provider.credentials[key] = value

        config.sync_policy = env_value(
            "SYNC_POLICY", SyncPolicy, config.sync_policy, environ
        )
        config.team_id = env_value("TEAM_ID", str, config.team_id, environ)

        token = env_value("TEAM_TOKEN", str, None, environ)
        level = env_value("TEAM_ACCESS_LEVEL", AccessLevel, None, environ)
        restrict = env_value("TEAM_RESTRICT", parse_bool, None, environ)
        if config.team_id and (token or level or restrict is not None):
            current = config.team_access or TeamAccess()
            config.team_access = TeamAccess(
                token=token or current.token,
                level=level or current.level,
                restrict_to_team=current.restrict_to_team if restrict is None else restrict,
            )

        config.invalidate_on_lockfile_change = env_value(
            "INVALIDATE_ON_LOCKFILE_CHANGE",
            parse_bool,
            config.invalidate_on_lockfile_change,
            environ,
        )
        config.project_dir = env_value(
            "PROJECT_DIR", lambda v: Path(v).expanduser(), config.project_dir, environ
        )
        return config

"""Top-level configuration.

``FlashConfig`` aggregates the per-component settings. Every value can be
read from a JSON file or from ``FLASHCACHE_*`` environment variables;
invalid values are reported and replaced by their defaults rather than
aborting.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from flashcache.cache.config import DEFAULT_CACHE_DIR, CacheConfig
from flashcache.cloud.config import CloudConfig
from flashcache.errors import ConfigError, log_error
from flashcache.scheduler import SchedulerConfig
from flashcache.snapshot.archive import ArchiveFormat
from flashcache.snapshot.config import SnapshotConfig
from flashcache.utils import env_value, parse_bool

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = DEFAULT_CACHE_DIR.parent / "config.json"


@dataclass
class FlashConfig:
    """All settings of a flashcache run."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    offline: bool = False

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "FlashConfig":
        """Load configuration from file.

        Args:
            config_path: Path to config file. If None, uses default location.

        Returns:
            FlashConfig instance (defaults when the file is missing or invalid)
        """
        config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "r") as f:
                data = json.load(f)
            return cls.from_dict(data)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            log_error(ConfigError(f"Invalid config file {config_path}: {e}", cause=e))
            return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlashConfig":
        return cls(
            cache=CacheConfig.from_dict(data.get("cache", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            snapshot=SnapshotConfig(**data.get("snapshot", {})),
            cloud=CloudConfig.from_dict(data.get("cloud", {})),
            offline=bool(data.get("offline", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.to_dict(),
            "scheduler": {
                "base_concurrency": self.scheduler.base_concurrency,
                "memory_limit_percent": self.scheduler.memory_limit_percent,
                "max_retries": self.scheduler.max_retries,
                "retry_base_delay": self.scheduler.retry_base_delay,
                "retry_max_delay": self.scheduler.retry_max_delay,
            },
            "snapshot": {
                "format": self.snapshot.format.value,
                "compression_level": self.snapshot.compression_level,
                "prefer_native": self.snapshot.prefer_native,
            },
            "cloud": self.cloud.to_dict(),
            "offline": self.offline,
        }

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save configuration to file.

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Dict[str, str]] = None,
        base: Optional["FlashConfig"] = None,
    ) -> "FlashConfig":
        """Create configuration from ``FLASHCACHE_*`` environment variables.

        Each variable that is set overrides the matching value of ``base``
        (typically the loaded config file); everything else is kept.

        Environment variables:
            FLASHCACHE_OFFLINE: Never use the network (true/false)
            FLASHCACHE_CONCURRENCY: Scheduler base concurrency
            FLASHCACHE_MEMORY_LIMIT: Memory limit percentage
            FLASHCACHE_SNAPSHOT_FORMAT: 'tar', 'tar.gz' or 'zip'
            FLASHCACHE_COMPRESSION_LEVEL: 0-9

        plus the variables read by :meth:`CacheConfig.from_env` and
        :meth:`CloudConfig.from_env`.

        Returns:
            FlashConfig instance
        """
        base = base if base is not None else cls()

        scheduler = copy.deepcopy(base.scheduler)
        scheduler.base_concurrency = env_value(
            "CONCURRENCY", _positive_int, scheduler.base_concurrency, environ
        )
        scheduler.memory_limit_percent = env_value(
            "MEMORY_LIMIT", _percentage, scheduler.memory_limit_percent, environ
        )

        snapshot = copy.deepcopy(base.snapshot)
        snapshot.format = env_value(
            "SNAPSHOT_FORMAT", ArchiveFormat.parse, snapshot.format, environ
        )
        snapshot.compression_level = env_value(
            "COMPRESSION_LEVEL", _compression_level, snapshot.compression_level, environ
        )

        return cls(
            cache=CacheConfig.from_env(environ, base=base.cache),
            scheduler=scheduler,
            snapshot=snapshot,
            cloud=CloudConfig.from_env(environ, base=base.cloud),
            offline=env_value("OFFLINE", parse_bool, base.offline, environ),
        )


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise ValueError("must be >= 1")
    return number


def _percentage(value: str) -> float:
    number = float(value)
    if not 0 < number <= 100:
        raise ValueError("must be in (0, 100]")
    return number


def _compression_level(value: str) -> int:
    number = int(value)
    if not 0 <= number <= 9:
        raise ValueError("must be 0-9")
    return number

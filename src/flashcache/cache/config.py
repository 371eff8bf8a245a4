"""Cache configuration management."""

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from flashcache.utils import env_value, parse_bool

DEFAULT_CACHE_DIR = Path.home() / ".flashcache" / "cache"


@dataclass
class CacheConfig:
    """Configuration for the local package cache.

    Attributes:
        cache_dir: Root directory for cache storage
        verify_integrity: Verify a hit against its recorded digest before
            trusting it. Failed entries are evicted and reported as misses.
        compress: Store entries as gzip tarballs instead of directories
        max_age_days: Age after which ``clean`` evicts an entry (30 days)
        max_size_bytes: Total size ``clean`` shrinks the cache to (None = unlimited)
        lock_timeout: Seconds to wait for the index lock
        checksum_algorithm: Algorithm used for content digests
    """

    cache_dir: Path = DEFAULT_CACHE_DIR
    verify_integrity: bool = True
    compress: bool = False
    max_age_days: int = 30
    max_size_bytes: Optional[int] = None  # bytes (total cache size)
    lock_timeout: int = 30
    checksum_algorithm: str = "sha256"

    def __post_init__(self):
        """Ensure cache_dir is an expanded Path."""
        if self.cache_dir is None:
            self.cache_dir = DEFAULT_CACHE_DIR
        self.cache_dir = Path(self.cache_dir).expanduser()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "CacheConfig":
        """Load configuration from file.

        Args:
            config_path: Path to config file. If None, uses default location.

        Returns:
            CacheConfig instance
        """
        if config_path is None:
            config_path = DEFAULT_CACHE_DIR / "config.json"

        if not config_path.exists():
            return cls()

        with open(config_path, "r") as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict) -> "CacheConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "cache_dir" in known:
            known["cache_dir"] = Path(known["cache_dir"])
        return cls(**known)

    def to_dict(self) -> Dict:
        return {
            "cache_dir": str(self.cache_dir),
            "verify_integrity": self.verify_integrity,
            "compress": self.compress,
            "max_age_days": self.max_age_days,
            "max_size_bytes": self.max_size_bytes,
            "lock_timeout": self.lock_timeout,
            "checksum_algorithm": self.checksum_algorithm,
        }

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save configuration to file.

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        if config_path is None:
            config_path = self.cache_dir / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Dict[str, str]] = None,
        base: Optional["CacheConfig"] = None,
    ) -> "CacheConfig":
        """Create configuration from environment variables.

        Variables that are not set keep the value from ``base`` (or the
        default when no base is given).

        Environment variables:
            FLASHCACHE_CACHE_DIR: Cache directory path
            FLASHCACHE_VERIFY: Verify hits before use (true/false)
            FLASHCACHE_COMPRESS: Store entries compressed (true/false)
            FLASHCACHE_MAX_AGE_DAYS: Eviction age in days
            FLASHCACHE_MAX_SIZE: Eviction size threshold in bytes

        Returns:
            CacheConfig instance
        """
        config = copy.deepcopy(base) if base is not None else cls()
        config.cache_dir = env_value(
            "CACHE_DIR", lambda v: Path(v).expanduser(), config.cache_dir, environ
        )
        config.verify_integrity = env_value(
            "VERIFY", parse_bool, config.verify_integrity, environ
        )
        config.compress = env_value("COMPRESS", parse_bool, config.compress, environ)
        config.max_age_days = env_value(
            "MAX_AGE_DAYS", int, config.max_age_days, environ
        )
        config.max_size_bytes = env_value(
            "MAX_SIZE", int, config.max_size_bytes, environ
        )
        return config

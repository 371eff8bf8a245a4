"""Utility functions and record types for flashcache."""

import logging
import os
import re
import shutil
import tempfile
import uuid
import warnings
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from typing_extensions import TypedDict

from flashcache.errors import ConfigError, log_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Cache layout constants
PACKAGES_DIR = "packages"
TREES_DIR = "trees"
LOCKS_DIR = ".locks"
INDEX_FILE = "metadata.json"
CLOUD_STATE_FILE = "cloud-state.json"

# Snapshot layout constants
SNAPSHOT_NAME = ".flashpack"
SNAPSHOT_METADATA_FILE = ".flashpack-metadata.json"
NODE_MODULES = "node_modules"

ENV_PREFIX = "FLASHCACHE_"


class CacheIndexEntry(TypedDict, total=False):
    """Index record for one cached package version."""

    name: str
    version: str
    integrity: str  # content digest (sha256)
    stored_digest: str  # digest of the stored form (equals integrity unless compressed)
    path: str  # relative to the cache root
    size_bytes: int
    compressed: bool
    created_at: str  # ISO 8601 timestamp
    last_verified: Optional[str]
    last_accessed: Optional[str]
    access_count: int


class FingerprintRecord(TypedDict):
    """Serialized snapshot fingerprint."""

    dependencies: Dict[str, str]
    lockfile_hash: Optional[str]
    runtime_version: str
    platform: str
    arch: str
    timestamp: int  # milliseconds since epoch


class SnapshotRecord(TypedDict, total=False):
    """Sidecar record stored next to a snapshot archive."""

    fingerprint: FingerprintRecord
    format: str  # 'tar', 'tar.gz', 'zip'
    compression_level: int
    size_bytes: int
    package_count: int
    created_at: str


class ChunkManifest(TypedDict):
    """Describes an object stored as separate part objects."""

    key: str
    size: int
    chunk_size: int
    parts: list[str]


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(timestamp: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(timestamp)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_PACKAGE_NAME = re.compile(r"^(@[a-z0-9][\w.~-]*/)?[a-z0-9_.~-][\w.~-]*$", re.IGNORECASE)


def validate_package_name(name: str) -> None:
    """Validate that a package name is safe to use as a cache path.

    Scoped names (``@scope/pkg``) are allowed; anything that could escape
    the cache root is not.

    Raises:
        ValueError: If name is empty or not a valid package name

    Examples:
        >>> validate_package_name('lodash')
        >>> validate_package_name('@babel/core')
        >>> validate_package_name('../etc')
        Traceback (most recent call last):
            ...
        ValueError: Invalid package name: '../etc'
    """
    if not name:
        raise ValueError("Package name cannot be empty")
    if not _PACKAGE_NAME.match(name) or name.startswith(".") or ".." in name:
        raise ValueError(f"Invalid package name: '{name}'")


def validate_version(version: str) -> None:
    """Validate that a version string is safe to use as a path segment."""
    if not version or version.strip() != version:
        raise ValueError(f"Invalid version: '{version}'")
    if "/" in version or "\\" in version or version in (".", ".."):
        raise ValueError(f"Invalid version: '{version}'")


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def replace_directory(staging: Path, target: Path) -> None:
    """Swap a fully prepared ``staging`` directory into ``target``.

    The previous ``target`` is moved aside first and only deleted once the
    swap succeeded; if the swap fails it is moved back.
    """
    backup = None
    if target.exists() or target.is_symlink():
        backup = target.with_name(f".{target.name}.old-{uuid.uuid4().hex[:8]}")
        os.rename(target, backup)
    try:
        os.rename(staging, target)
    except OSError:
        if backup is not None:
            os.rename(backup, target)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


def staging_path(target: Path, label: str = "staging") -> Path:
    """Unique sibling path of ``target`` on the same filesystem."""
    return target.with_name(f".{target.name}.{label}-{uuid.uuid4().hex[:8]}")


def directory_size(path: Path) -> int:
    """Total size in bytes of the regular files under ``path``."""
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total


def format_size(size_bytes: Optional[int]) -> str:
    """Human readable size.

    Examples:
        >>> format_size(1536)
        '1.50 KB'
    """
    if size_bytes is None:
        return "-"
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"


def env_value(
    name: str,
    convert: Callable[[str], T],
    default: T,
    environ: Optional[Dict[str, str]] = None,
) -> T:
    """Read ``FLASHCACHE_<name>`` and convert it.

    Invalid values are a configuration problem, not a fatal one: a
    warning is emitted and ``default`` is kept.
    """
    environ = os.environ if environ is None else environ
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return convert(raw)
    except (TypeError, ValueError) as e:
        config_degraded(f"Invalid value for {ENV_PREFIX}{name}={raw!r} ({e})")
        return default


def config_degraded(message: str) -> None:
    """Report an invalid setting that falls back to its default."""
    log_error(ConfigError(f"{message}; using default"))
    warnings.warn(message)


def parse_bool(value: Any) -> bool:
    """Parse a boolean flag from config or environment.

    Raises:
        ValueError: If value is not a recognizable boolean
    """
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")

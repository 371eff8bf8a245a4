"""Snapshot fingerprints: the composite key deciding snapshot validity."""

import logging
import platform
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

import orjson

from flashcache.hashing import hash_file
from flashcache.utils import FingerprintRecord

logger = logging.getLogger(__name__)

UNKNOWN_RUNTIME = "unknown"

# Python names -> JavaScript runtime names (process.platform / process.arch)
_PLATFORMS = {"linux": "linux", "darwin": "darwin", "win32": "win32", "cygwin": "win32"}
_ARCHES = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64",
    "s390x": "s390x",
}


def current_platform() -> str:
    """Current OS in JavaScript runtime naming (``linux``, ``darwin``, ``win32``)."""
    for prefix, name in _PLATFORMS.items():
        if sys.platform.startswith(prefix):
            return name
    return sys.platform


def current_arch() -> str:
    """Current CPU architecture in JavaScript runtime naming (``x64``, ``arm64``)."""
    machine = platform.machine().lower()
    return _ARCHES.get(machine, machine)


def detect_runtime_version(executable: str = "node", timeout: float = 10.0) -> str:
    """Version reported by the JavaScript runtime (``v20.11.1``).

    Returns:
        Version string, or ``"unknown"`` if the runtime is not installed
    """
    path = shutil.which(executable)
    if path is None:
        logger.debug(f"{executable} not found on PATH")
        return UNKNOWN_RUNTIME
    try:
        completed = subprocess.run(
            [path, "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.warning(f"Could not determine {executable} version: {e}")
        return UNKNOWN_RUNTIME
    return completed.stdout.strip() or UNKNOWN_RUNTIME


def major_version(version: str) -> str:
    """Major component of a runtime version.

    Examples:
        >>> major_version("v20.11.1")
        'v20'
    """
    return version.split(".")[0]


@dataclass
class Fingerprint:
    """Composite key of a snapshot.

    Attributes:
        dependencies: Resolved dependency map (name -> version)
        lockfile_hash: sha256 of the lockfile, or None without a lockfile
        runtime_version: Version of the producing JavaScript runtime
        platform: OS platform
        arch: CPU architecture
        timestamp: Creation time in milliseconds (informational)
    """

    dependencies: Dict[str, str]
    lockfile_hash: Optional[str]
    runtime_version: str
    platform: str = field(default_factory=current_platform)
    arch: str = field(default_factory=current_arch)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def runtime_major(self) -> str:
        return major_version(self.runtime_version)

    def to_record(self) -> FingerprintRecord:
        return FingerprintRecord(
            dependencies=dict(sorted(self.dependencies.items())),
            lockfile_hash=self.lockfile_hash,
            runtime_version=self.runtime_version,
            platform=self.platform,
            arch=self.arch,
            timestamp=self.timestamp,
        )

    @classmethod
    def from_record(cls, record: Mapping) -> "Fingerprint":
        return cls(
            dependencies=dict(record.get("dependencies") or {}),
            lockfile_hash=record.get("lockfile_hash") or None,
            runtime_version=record.get("runtime_version", UNKNOWN_RUNTIME),
            platform=record.get("platform", ""),
            arch=record.get("arch", ""),
            timestamp=int(record.get("timestamp", 0)),
        )

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_record(), option=orjson.OPT_INDENT_2)

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "Fingerprint":
        return cls.from_record(orjson.loads(data))

    def check(self, current: "Fingerprint") -> Tuple[bool, Optional[str]]:
        """Compare against the current project's fingerprint.

        All five identifying fields must match; the timestamp is ignored.

        Args:
            current: Freshly computed fingerprint of the project

        Returns:
            (valid, reason) where reason explains an invalid result
        """
        if self.platform != current.platform or self.arch != current.arch:
            return False, (
                f"Platform changed ({self.platform}-{self.arch} -> "
                f"{current.platform}-{current.arch})"
            )
        if self.dependencies != current.dependencies:
            return False, "Dependencies have changed"
        if (self.lockfile_hash or None) != (current.lockfile_hash or None):
            return False, "Lockfile has changed"
        if self.runtime_major != current.runtime_major:
            return False, (
                f"Runtime version changed ({self.runtime_version} -> "
                f"{current.runtime_version})"
            )
        return True, None


def create_fingerprint(
    dependencies: Mapping[str, str],
    lockfile_path: Optional[Union[str, Path]] = None,
    runtime_version: Optional[Union[str, Callable[[], str]]] = None,
) -> Fingerprint:
    """Fingerprint a dependency map and lockfile on the current machine.

    Args:
        dependencies: Resolved dependency map
        lockfile_path: Lockfile to hash (skipped when missing)
        runtime_version: Version string or a callable producing it
            (defaults to asking ``node --version``)

    Returns:
        Fingerprint
    """
    lockfile_hash = None
    if lockfile_path is not None and Path(lockfile_path).is_file():
        lockfile_hash = hash_file(lockfile_path)

    if runtime_version is None:
        runtime_version = detect_runtime_version()
    elif callable(runtime_version):
        runtime_version = runtime_version()

    return Fingerprint(
        dependencies=dict(dependencies),
        lockfile_hash=lockfile_hash,
        runtime_version=runtime_version,
    )


def is_valid(fingerprint: Fingerprint, current: Fingerprint) -> bool:
    """True when ``fingerprint`` matches ``current`` on every identifying field."""
    valid, reason = fingerprint.check(current)
    if not valid:
        logger.info(f"Snapshot invalid: {reason}")
    return valid

"""Content hashing for packages, directories and dependency trees."""

import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import requests

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "https://registry.npmjs.org"

PathLike = Union[str, Path]


def _hasher(algorithm: str):
    try:
        return hashlib.new(algorithm)
    except ValueError as e:
        raise ValueError(f"Unsupported algorithm: {algorithm}") from e


def hash_bytes(data: bytes, algorithm: str = "sha256") -> str:
    """Hash raw bytes and return the hex digest."""
    hasher = _hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def hash_string(content: str, algorithm: str = "sha256") -> str:
    """Hash a string (UTF-8) and return the hex digest."""
    return hash_bytes(content.encode("utf-8"), algorithm)


def hash_file(file_path: PathLike, algorithm: str = "sha256") -> str:
    """Compute the digest of a file.

    Args:
        file_path: Path to file
        algorithm: Any algorithm known to hashlib ('sha256', 'sha1', 'md5', ...)

    Returns:
        Hex digest of the file contents

    Raises:
        ValueError: If algorithm not supported
    """
    hasher = _hasher(algorithm)

    # Read file in chunks to handle large tarballs
    with open(file_path, "rb") as f:
        while chunk := f.read(8192):
            hasher.update(chunk)

    return hasher.hexdigest()


def hash_directory(dir_path: PathLike, algorithm: str = "sha256") -> str:
    """Compute a deterministic digest of a directory tree.

    Entries are visited in sorted order. A file contributes
    ``name:file:<digest>:<size>``, a subdirectory ``name:dir:<digest>``
    and a symlink ``name:link:<target>``. Modification times and
    permissions never contribute, so two copies of the same tree hash
    identically.

    Args:
        dir_path: Directory to hash
        algorithm: Hash algorithm

    Returns:
        Hex digest of the tree

    Examples:
        >>> hash_directory("node_modules/lodash") == hash_directory("copy/of/lodash")
        True
    """
    hasher = _hasher(algorithm)
    dir_path = Path(dir_path)

    for name in sorted(os.listdir(dir_path)):
        entry = dir_path / name
        if entry.is_symlink():
            hasher.update(f"{name}:link:{os.readlink(entry)}".encode("utf-8"))
        elif entry.is_dir():
            hasher.update(f"{name}:dir:{hash_directory(entry, algorithm)}".encode("utf-8"))
        else:
            size = entry.stat().st_size
            digest = hash_file(entry, algorithm)
            hasher.update(f"{name}:file:{digest}:{size}".encode("utf-8"))

    return hasher.hexdigest()


def integrity_digest(path: PathLike, algorithm: str = "sha256") -> str:
    """Digest of a file or a directory, whichever ``path`` is."""
    path = Path(path)
    if path.is_dir():
        return hash_directory(path, algorithm)
    return hash_file(path, algorithm)


def hash_package(name: str, version: str) -> str:
    """Identity hash of ``name@version``."""
    return hash_string(f"{name}@{version}")


def hash_dependency_tree(dependencies: Mapping[str, str]) -> str:
    """Hash a dependency map independently of its ordering.

    Args:
        dependencies: Mapping of package name to version

    Returns:
        sha256 of the sorted ``name@version`` pairs joined by ``|``

    Examples:
        >>> hash_dependency_tree({"a": "1.0.0", "b": "2.0.0"}) == \\
        ...     hash_dependency_tree({"b": "2.0.0", "a": "1.0.0"})
        True
    """
    pairs = sorted(dependencies.items(), key=lambda item: item[0])
    return hash_string("|".join(f"{name}@{version}" for name, version in pairs))


def verify_package_integrity(
    name: str,
    version: str,
    tarball: PathLike,
    registry: str = DEFAULT_REGISTRY,
    timeout: float = 10.0,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Compare a tarball's sha1 with the registry's published shasum.

    Registry failures never raise; they produce ``verified=False`` with
    the reason in ``error``.

    Args:
        name: Package name
        version: Exact version
        tarball: Local tarball to check
        registry: Registry base URL
        timeout: Request timeout in seconds
        session: Optional requests session

    Returns:
        Dict with ``verified``, ``expected``, ``actual`` and ``error`` keys
    """
    result: Dict[str, Any] = {
        "verified": False,
        "expected": None,
        "actual": None,
        "error": None,
    }

    try:
        result["actual"] = hash_file(tarball, "sha1")
    except OSError as e:
        result["error"] = f"Cannot read tarball: {e}"
        return result

    http = session or requests
    url = f"{registry.rstrip('/')}/{name.replace('/', '%2F')}/{version}"
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
        expected = response.json().get("dist", {}).get("shasum")
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Could not fetch registry metadata for {name}@{version}: {e}")
        result["error"] = str(e)
        return result

    result["expected"] = expected
    if not expected:
        result["error"] = "Registry did not publish a shasum"
        return result

    result["verified"] = expected == result["actual"]
    return result

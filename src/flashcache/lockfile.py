"""Lockfile detection, hashing and dependency extraction."""

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import orjson
import yaml

from flashcache.hashing import hash_file

logger = logging.getLogger(__name__)


class LockfileType(str, Enum):
    """Supported lockfiles, in detection order."""

    NPM = "package-lock.json"
    YARN = "yarn.lock"
    PNPM = "pnpm-lock.yaml"


def detect_lockfile(project_dir: Union[str, Path]) -> Optional[LockfileType]:
    """Return the first lockfile type present in ``project_dir``."""
    project_dir = Path(project_dir)
    for lockfile_type in LockfileType:
        if (project_dir / lockfile_type.value).is_file():
            return lockfile_type
    return None


def lockfile_path(project_dir: Union[str, Path]) -> Optional[Path]:
    """Path of the detected lockfile, or None."""
    lockfile_type = detect_lockfile(project_dir)
    if lockfile_type is None:
        return None
    return Path(project_dir) / lockfile_type.value


def lockfile_hash(
    project_dir: Union[str, Path],
    lockfile_type: Optional[LockfileType] = None,
) -> Optional[str]:
    """sha256 of the lockfile contents.

    Args:
        project_dir: Project directory
        lockfile_type: Lockfile to hash (detected when None)

    Returns:
        Hex digest, or None when there is no readable lockfile
    """
    lockfile_type = lockfile_type or detect_lockfile(project_dir)
    if lockfile_type is None:
        return None

    path = Path(project_dir) / lockfile_type.value
    try:
        return hash_file(path)
    except OSError as e:
        logger.debug(f"Lockfile not readable: {path}: {e}")
        return None


def has_lockfile_changed(
    project_dir: Union[str, Path], previous_hash: Optional[str]
) -> bool:
    """Check whether the lockfile differs from a previously recorded hash.

    A missing previous hash, or a missing lockfile, counts as changed.
    """
    if not previous_hash:
        return True

    current = lockfile_hash(project_dir)
    if current is None:
        logger.warning(f"No lockfile found in {project_dir}")
        return True
    return current != previous_hash


def parse_lockfile_dependencies(
    project_dir: Union[str, Path],
    lockfile_type: Optional[LockfileType] = None,
) -> Optional[Dict[str, str]]:
    """Extract a flat name -> version map from the project's lockfile.

    Returns:
        Dependency map (empty when the file cannot be parsed), or None
        when the project has no lockfile
    """
    lockfile_type = lockfile_type or detect_lockfile(project_dir)
    if lockfile_type is None:
        logger.warning(f"No lockfile found in {project_dir}")
        return None

    path = Path(project_dir) / lockfile_type.value
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to read {path}: {e}")
        return {}

    parsers = {
        LockfileType.NPM: parse_npm_lockfile,
        LockfileType.YARN: parse_yarn_lockfile,
        LockfileType.PNPM: parse_pnpm_lockfile,
    }
    return parsers[lockfile_type](content)


def parse_npm_lockfile(content: str) -> Dict[str, str]:
    """Parse package-lock.json (v2/v3 ``packages`` or legacy ``dependencies``)."""
    try:
        parsed = orjson.loads(content)
    except orjson.JSONDecodeError as e:
        logger.error(f"Failed to parse npm lockfile: {e}")
        return {}

    dependencies: Dict[str, str] = {}
    packages = parsed.get("packages")
    if packages:
        for pkg_path, info in packages.items():
            # "" is the root project itself
            if not pkg_path or "node_modules/" not in pkg_path:
                continue
            name = pkg_path.rsplit("node_modules/", 1)[1]
            if name and isinstance(info, dict) and info.get("version"):
                dependencies.setdefault(name, info["version"])
    elif parsed.get("dependencies"):
        for name, info in parsed["dependencies"].items():
            if isinstance(info, dict) and info.get("version"):
                dependencies[name] = info["version"]

    return dependencies


def _yarn_entry_name(key: str) -> str:
    # '"@scope/pkg@npm:^1.0.0", "@scope/pkg@npm:^1.1.0"' -> '@scope/pkg'
    first = key.split(",")[0].strip().strip('"')
    at = first.find("@", 1)
    return first[:at] if at > 0 else first


def parse_yarn_lockfile(content: str) -> Dict[str, str]:
    """Parse a yarn lockfile.

    Classic (v1) lockfiles use yarn's own format and are read line by
    line. Berry (v2+) lockfiles are YAML and carry a ``__metadata`` entry.
    """
    if "\n__metadata:" in content or content.startswith("__metadata:"):
        return _parse_yarn_berry(content)

    dependencies: Dict[str, str] = {}
    current: Optional[str] = None

    for line in content.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if not line.startswith(" ") and line.rstrip().endswith(":"):
            current = _yarn_entry_name(line.rstrip()[:-1])
            continue
        stripped = line.strip()
        if current and stripped.startswith("version"):
            version = stripped[len("version"):].strip().lstrip(":").strip().strip('"')
            if version:
                dependencies[current] = version
            current = None

    return dependencies


def _load_yaml_mapping(content: str, label: str) -> Dict:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse {label} lockfile: {e}")
        return {}
    if not isinstance(parsed, dict):
        logger.error(f"Unexpected {label} lockfile layout")
        return {}
    return parsed


def _parse_yarn_berry(content: str) -> Dict[str, str]:
    dependencies: Dict[str, str] = {}
    for key, info in _load_yaml_mapping(content, "yarn").items():
        if key == "__metadata" or not isinstance(info, dict):
            continue
        # the project and its workspaces are not installable packages
        if "@workspace:" in str(key) or info.get("version") is None:
            continue
        dependencies[_yarn_entry_name(str(key))] = str(info["version"])
    return dependencies


_PNPM_NAME_VERSION = re.compile(r"^((?:@[^/]+/)?[^/@]+)[/@](.+)$")


def _pnpm_package_key(key: str) -> Optional[Tuple[str, str]]:
    """Split a pnpm ``packages`` key into name and version.

    Handles ``/name/1.0.0_peer@1.0.0`` (v5), ``/name@1.0.0(peer@1.0.0)``
    (v6) and ``name@1.0.0`` (v9), scoped or not.
    """
    key = key.lstrip("/").split("(", 1)[0]
    match = _PNPM_NAME_VERSION.match(key)
    if match is None:
        return None
    name, version = match.groups()
    # semver never contains "_", so it only starts a v5 peer suffix
    version = version.split("_", 1)[0]
    if not version:
        return None
    return name, version


def parse_pnpm_lockfile(content: str) -> Dict[str, str]:
    """Parse the ``packages`` section of pnpm-lock.yaml (v5 through v9)."""
    packages = _load_yaml_mapping(content, "pnpm").get("packages") or {}
    if not isinstance(packages, dict):
        logger.error("Unexpected pnpm lockfile layout: packages is not a mapping")
        return {}

    dependencies: Dict[str, str] = {}
    for key in packages:
        parsed = _pnpm_package_key(str(key))
        if parsed is None:
            logger.debug(f"Skipping unrecognized pnpm package key: {key}")
            continue
        name, version = parsed
        dependencies.setdefault(name, version)

    return dependencies

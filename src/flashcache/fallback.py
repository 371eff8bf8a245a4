"""Offline fallback resolution.

When the registry cannot be reached, a requested package is looked up in
what is already on this machine: the local cache, the project's snapshot
and the project's install tree. An exact version is preferred; otherwise
the highest version that satisfies the requested npm range is offered as
a substitute.
"""

import json
import logging
import warnings
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import semantic_version

from flashcache.network import NetworkChecker
from flashcache.utils import NODE_MODULES

logger = logging.getLogger(__name__)

SOURCES = ("cache", "snapshot", "local")


@dataclass
class FallbackOptions:
    """Which sources the resolver may use.

    Attributes:
        allow_version_fallback: Offer a compatible version when the exact
            one is not available
        use_cache: Search the local cache
        use_snapshot: Search the project's snapshot dependency map
        use_local: Search ``node_modules`` of the project
        project_dir: Project root (needed for snapshot and local sources)
        check_network: Probe the registry before resolving
        offline: Treat the network as unavailable without probing
    """

    allow_version_fallback: bool = True
    use_cache: bool = True
    use_snapshot: bool = True
    use_local: bool = True
    project_dir: Optional[Path] = None
    check_network: bool = True
    offline: bool = False


@dataclass
class FallbackResult:
    """Outcome of a fallback lookup.

    ``needed`` is False when the network is reachable and no fallback was
    attempted. ``exact`` is False when ``version`` is a substitute for
    ``requested_version``.
    """

    found: bool
    name: str
    version: str
    requested_version: str
    source: Optional[str] = None
    path: Optional[Path] = None
    exact: bool = True
    needed: bool = True


@dataclass
class _Candidate:
    version: semantic_version.Version
    source: str
    path: Path


class FallbackResolver:
    """Finds locally available substitutes for packages.

    Args:
        store: Local cache (``LocalCacheStore``) or None
        snapshot_manager: ``SnapshotManager`` used to read snapshot
            dependency maps, or None
        network_checker: Registry probe; created on demand when needed
        options: Default options for every lookup
    """

    def __init__(
        self,
        store=None,
        snapshot_manager=None,
        network_checker: Optional[NetworkChecker] = None,
        options: Optional[FallbackOptions] = None,
    ):
        self.store = store
        self.snapshot_manager = snapshot_manager
        self.network_checker = network_checker
        self.options = options or FallbackOptions()

    def _network_available(self, options: FallbackOptions) -> bool:
        if options.offline:
            return False
        if not options.check_network:
            return True
        if self.network_checker is None:
            self.network_checker = NetworkChecker()
        return self.network_checker.is_available()

    def resolve(
        self,
        name: str,
        version_spec: str,
        options: Optional[FallbackOptions] = None,
    ) -> FallbackResult:
        """Find a local copy of ``name`` matching ``version_spec``.

        Args:
            name: Package name
            version_spec: Exact version or npm range
            options: Overrides the resolver's default options

        Returns:
            FallbackResult; ``found`` is False when nothing usable exists
        """
        options = options or self.options

        if self._network_available(options):
            return FallbackResult(
                found=False,
                name=name,
                version=version_spec,
                requested_version=version_spec,
                needed=False,
            )

        exact = self._find_exact(name, version_spec, options)
        if exact is not None:
            return exact

        not_found = FallbackResult(
            found=False, name=name, version=version_spec, requested_version=version_spec
        )
        if not options.allow_version_fallback:
            return not_found
        return self._find_compatible(name, version_spec, options) or replace(
            not_found, exact=False
        )

    def _snapshot_path(self, options: FallbackOptions) -> Optional[Path]:
        if self.snapshot_manager is None or options.project_dir is None:
            return None
        path = self.snapshot_manager.snapshot_path(options.project_dir)
        return path if path.exists() else None

    def _local_version(self, name: str, options: FallbackOptions) -> Optional[str]:
        if options.project_dir is None:
            return None
        package_json = Path(options.project_dir) / NODE_MODULES / name / "package.json"
        if not package_json.is_file():
            return None
        try:
            with open(package_json, "r") as f:
                return json.load(f).get("version")
        except (OSError, ValueError, AttributeError) as e:
            logger.debug(f"Failed to read {package_json}: {e}")
            return None

    def _find_exact(
        self, name: str, version: str, options: FallbackOptions
    ) -> Optional[FallbackResult]:
        def found(source: str, path: Path) -> FallbackResult:
            logger.debug(f"Fallback for {name}@{version} found in {source}")
            return FallbackResult(
                found=True,
                name=name,
                version=version,
                requested_version=version,
                source=source,
                path=path,
            )

        if options.use_cache and self.store is not None:
            try:
                entry = self.store.lookup(name, version)
            except ValueError:
                entry = None
            if entry is not None:
                return found("cache", entry.path)

        if options.use_snapshot:
            snapshot_path = self._snapshot_path(options)
            if snapshot_path is not None:
                if self.snapshot_manager.dependencies(snapshot_path).get(name) == version:
                    return found("snapshot", snapshot_path)

        if options.use_local and self._local_version(name, options) == version:
            return found("local", Path(options.project_dir) / NODE_MODULES / name)

        return None

    def _candidates(self, name: str, options: FallbackOptions) -> List[_Candidate]:
        """Available versions of ``name`` in source order."""
        raw = []
        if options.use_cache and self.store is not None:
            try:
                for version in self.store.list_versions(name):
                    raw.append((version, "cache", self.store.version_dir(name, version)))
            except ValueError as e:
                logger.debug(f"Skipping cache lookup for {name}: {e}")

        if options.use_snapshot:
            snapshot_path = self._snapshot_path(options)
            if snapshot_path is not None:
                version = self.snapshot_manager.dependencies(snapshot_path).get(name)
                if version:
                    raw.append((version, "snapshot", snapshot_path))

        if options.use_local:
            version = self._local_version(name, options)
            if version:
                raw.append((version, "local", Path(options.project_dir) / NODE_MODULES / name))

        candidates = []
        for version, source, path in raw:
            try:
                candidates.append(_Candidate(semantic_version.Version(version), source, path))
            except ValueError:
                logger.debug(f"Ignoring unparseable version {name}@{version} in {source}")
        return candidates

    def _find_compatible(
        self, name: str, version_spec: str, options: FallbackOptions
    ) -> Optional[FallbackResult]:
        try:
            spec = semantic_version.NpmSpec(version_spec)
        except ValueError:
            logger.debug(f"Not a valid version range: {name}@{version_spec}")
            return None

        matching = [c for c in self._candidates(name, options) if spec.match(c.version)]
        # highest version first; equal versions keep source order
        matching.sort(key=lambda c: c.version, reverse=True)

        for best in matching:
            version = str(best.version)
            if best.source == "cache":
                entry = self.store.lookup(name, version)
                if entry is None:
                    logger.debug(f"Cached {name}@{version} is unusable, trying the next candidate")
                    continue
                best.path = entry.path

            message = (
                f"Using {name}@{version} from {best.source} in place of "
                f"{name}@{version_spec} (offline)"
            )
            logger.warning(message)
            warnings.warn(message)
            return FallbackResult(
                found=True,
                name=name,
                version=version,
                requested_version=version_spec,
                source=best.source,
                path=best.path,
                exact=False,
            )

        return None

    def resolve_all(
        self,
        dependencies: Mapping[str, str],
        options: Optional[FallbackOptions] = None,
    ) -> Dict[str, FallbackResult]:
        """Resolve every dependency in a name → version map."""
        return {
            name: self.resolve(name, version, options)
            for name, version in dependencies.items()
        }

    def has_all(
        self,
        dependencies: Mapping[str, str],
        options: Optional[FallbackOptions] = None,
    ) -> bool:
        return all(r.found for r in self.resolve_all(dependencies, options).values())

    def missing(
        self,
        dependencies: Mapping[str, str],
        options: Optional[FallbackOptions] = None,
    ) -> Dict[str, str]:
        """Dependencies for which no local copy was found."""
        results = self.resolve_all(dependencies, options)
        return {
            name: version
            for name, version in dependencies.items()
            if not results[name].found
        }

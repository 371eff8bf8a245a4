"""Project installs backed by the cache, snapshots and offline fallback.

An install tries, in order:

1. a valid project snapshot (restored as a whole),
2. an archived dependency tree for the exact dependency map,
3. package by package: the local cache; when offline, the fallback
   resolver; when online, an external fetcher whose result is written
   back to the cache.

Offline installs never touch the network.
"""

import json
import logging
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Union

from flashcache.cache.store import TEMP_PREFIX, LocalCacheStore
from flashcache.config import FlashConfig
from flashcache.errors import (
    FlashError,
    PackageError,
    RecoveryStrategy,
    SnapshotError,
    log_error,
    wrap_exception,
)
from flashcache.fallback import FallbackOptions, FallbackResolver
from flashcache.hashing import hash_dependency_tree
from flashcache.hooks import HookContext, HookPoint, HookRegistry
from flashcache.lockfile import LockfileType, detect_lockfile, parse_lockfile_dependencies
from flashcache.network import NetworkChecker
from flashcache.scheduler import AdaptiveScheduler
from flashcache.snapshot.archive import extract_prefix
from flashcache.snapshot.manager import SnapshotManager
from flashcache.utils import NODE_MODULES

logger = logging.getLogger(__name__)

PACKAGE_MANAGERS = {
    LockfileType.NPM: "npm",
    LockfileType.YARN: "yarn",
    LockfileType.PNPM: "pnpm",
}


class PackageFetcher(Protocol):
    """Obtains a package from outside this machine."""

    def fetch(self, name: str, version: str, dest: Path) -> Path:
        """Place the contents of name@version in ``dest`` and return it."""
        ...


class CommandFetcher:
    """Fetches packages with ``npm pack``.

    Args:
        executable: npm-compatible executable
        registry: Registry URL passed through ``--registry``
        timeout: Seconds before a fetch is abandoned
    """

    def __init__(
        self,
        executable: str = "npm",
        registry: Optional[str] = None,
        timeout: float = 300.0,
    ):
        self.executable = executable
        self.registry = registry
        self.timeout = timeout

    def command(self, spec: str, destination: Path) -> List[str]:
        cmd = [self.executable, "pack", spec, "--pack-destination", str(destination), "--silent"]
        if self.registry:
            cmd += ["--registry", self.registry]
        return cmd

    def fetch(self, name: str, version: str, dest: Path) -> Path:
        dest = Path(dest)
        with tempfile.TemporaryDirectory(prefix="flashcache-fetch-") as tmp:
            try:
                completed = subprocess.run(
                    self.command(f"{name}@{version}", Path(tmp)),
                    check=True,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise wrap_exception(
                    e, f"Fetching {name}@{version} failed", PackageError,
                    context={"name": name, "version": version},
                ) from e

            lines = [line for line in completed.stdout.splitlines() if line.strip()]
            tarball = Path(tmp) / lines[-1].strip() if lines else None
            if tarball is None or not tarball.is_file():
                raise PackageError(f"{self.executable} pack produced no tarball for {name}@{version}")

            if extract_prefix(tarball, "package", dest) == 0:
                raise PackageError(f"Tarball of {name}@{version} is empty")
        return dest


@dataclass
class PackageResult:
    """How one dependency was installed.

    ``source`` is 'cache', 'registry', or 'fallback:<cache|snapshot|local>'.
    """

    name: str
    version: str
    source: Optional[str] = None
    resolved_version: Optional[str] = None
    error: Optional[FlashError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class InstallReport:
    """Outcome of an install.

    ``mode`` is 'snapshot', 'tree' or 'packages'.
    """

    project_dir: Path
    mode: str
    packages: List[PackageResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return all(p.ok for p in self.packages)

    def count(self, source_prefix: str) -> int:
        return sum(1 for p in self.packages if p.ok and (p.source or "").startswith(source_prefix))

    @property
    def failed(self) -> List[PackageResult]:
        return [p for p in self.packages if not p.ok]

    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.packages),
            "cache": self.count("cache"),
            "registry": self.count("registry"),
            "fallback": self.count("fallback"),
            "failed": len(self.failed),
        }


class Installer:
    """Installs a project's dependencies into ``node_modules``.

    Collaborators default to instances built from ``config``; tests inject
    their own.
    """

    def __init__(
        self,
        config: Optional[FlashConfig] = None,
        store: Optional[LocalCacheStore] = None,
        snapshot_manager: Optional[SnapshotManager] = None,
        scheduler: Optional[AdaptiveScheduler] = None,
        fetcher: Optional[PackageFetcher] = None,
        resolver: Optional[FallbackResolver] = None,
        network_checker: Optional[NetworkChecker] = None,
        hooks: Optional[HookRegistry] = None,
    ):
        self.config = config or FlashConfig()
        self.hooks = hooks or HookRegistry()
        self.store = store or LocalCacheStore(self.config.cache, hooks=self.hooks)
        self.snapshot_manager = snapshot_manager or SnapshotManager(
            self.config.snapshot, store=self.store
        )
        self.scheduler = scheduler or AdaptiveScheduler(self.config.scheduler)
        self.fetcher = fetcher or CommandFetcher()
        self.network_checker = network_checker
        self.resolver = resolver or FallbackResolver(
            self.store, self.snapshot_manager, network_checker
        )

    @staticmethod
    def project_dependencies(project_dir: Path) -> Dict[str, str]:
        """Dependencies from the lockfile, else the ranges in package.json.

        Raises:
            PackageError: If neither is available
        """
        dependencies = parse_lockfile_dependencies(project_dir)
        if dependencies:
            return dependencies

        package_json = project_dir / "package.json"
        if not package_json.is_file():
            raise PackageError(f"No lockfile or package.json in {project_dir}")
        try:
            with open(package_json, "r") as f:
                manifest = json.load(f)
        except (OSError, ValueError) as e:
            raise PackageError(f"Cannot read {package_json}: {e}", cause=e) from e
        merged = dict(manifest.get("dependencies") or {})
        merged.update(manifest.get("devDependencies") or {})
        return merged

    def install(
        self,
        project_dir: Union[str, Path],
        dependencies: Optional[Mapping[str, str]] = None,
        offline: Optional[bool] = None,
        use_snapshot: bool = True,
        create_snapshot: bool = False,
    ) -> InstallReport:
        """Install ``dependencies`` (the project's when None) into node_modules.

        Args:
            project_dir: Project root
            dependencies: name -> version map
            offline: Never use the network (configured default when None)
            use_snapshot: Restore a valid snapshot when one exists
            create_snapshot: Write a snapshot after a successful install

        Returns:
            InstallReport
        """
        start = time.monotonic()
        project_dir = Path(project_dir)
        offline = self.config.offline if offline is None else offline
        dependencies = dict(dependencies or self.project_dependencies(project_dir))
        lockfile_type = detect_lockfile(project_dir)
        context = HookContext(
            project_dir=project_dir,
            package_manager=PACKAGE_MANAGERS.get(lockfile_type) if lockfile_type else None,
            dependencies=dependencies,
            options={"offline": offline},
        )
        self.hooks.run(HookPoint.PRE_INSTALL, context)

        report = self._restore_whole(project_dir, dependencies, use_snapshot)
        if report is None:
            report = self._install_packages(project_dir, dependencies, offline)
            if report.ok and dependencies:
                self._archive_tree(project_dir, dependencies)
                if create_snapshot:
                    self._snapshot(project_dir, dependencies, context)

        report.duration = time.monotonic() - start
        context.options["report"] = report
        self.hooks.run(HookPoint.POST_INSTALL, context)

        summary = report.summary()
        logger.info(
            f"Installed {summary['total']} packages ({report.mode}) in {report.duration:.2f}s: "
            f"{summary['cache']} cached, {summary['registry']} fetched, "
            f"{summary['fallback']} fallback, {summary['failed']} failed"
        )
        return report

    def _restore_whole(
        self, project_dir: Path, dependencies: Dict[str, str], use_snapshot: bool
    ) -> Optional[InstallReport]:
        """Restore a snapshot or cached tree; None when neither applies."""
        whole = [
            PackageResult(name, version, resolved_version=version)
            for name, version in dependencies.items()
        ]

        if use_snapshot and self.snapshot_manager.is_valid(project_dir, dependencies):
            context = HookContext(project_dir=project_dir, dependencies=dependencies)
            self.hooks.run(HookPoint.PRE_RESTORE, context)
            try:
                self.snapshot_manager.restore(project_dir)
                for result in whole:
                    result.source = "snapshot"
                self.hooks.run(HookPoint.POST_RESTORE, context)
                return InstallReport(project_dir, "snapshot", whole)
            except SnapshotError as e:
                logger.warning(f"Snapshot restore failed, installing packages instead: {e}")

        tree_hash = hash_dependency_tree(dependencies)
        if dependencies and self.store.has_tree(tree_hash):
            try:
                self.store.restore_tree(tree_hash, project_dir / NODE_MODULES)
                for result in whole:
                    result.source = "tree"
                return InstallReport(project_dir, "tree", whole)
            except FlashError as e:
                logger.warning(f"Cached dependency tree unusable, installing packages instead: {e}")

        return None

    def _install_packages(
        self, project_dir: Path, dependencies: Dict[str, str], offline: bool
    ) -> InstallReport:
        node_modules = project_dir / NODE_MODULES
        node_modules.mkdir(parents=True, exist_ok=True)

        def install_one(item):
            name, version = item
            return self.install_package(project_dir, name, version, offline)

        tasks = self.scheduler.run(list(dependencies.items()), install_one)
        results = []
        for task in tasks:
            if task.ok:
                results.append(task.result)
            else:
                name, version = task.input
                log_error(task.error)
                results.append(PackageResult(name, version, error=task.error))
        return InstallReport(project_dir, "packages", results)

    def install_package(
        self, project_dir: Path, name: str, version: str, offline: bool
    ) -> PackageResult:
        """Install one package into ``project_dir/node_modules``.

        Raises:
            PackageError: If the package is neither cached, fetchable nor
                available through fallback
        """
        dest = project_dir / NODE_MODULES / name

        try:
            self.store.materialize(name, version, dest)
            return PackageResult(name, version, "cache", version)
        except PackageError:
            pass
        except ValueError as e:
            # not an exact version (a range from package.json)
            logger.debug(f"{name}@{version} is not a cache key: {e}")

        if offline:
            return self._install_fallback(project_dir, name, version)

        with tempfile.TemporaryDirectory(dir=self.store.root, prefix=TEMP_PREFIX) as tmp:
            try:
                fetched = self.fetcher.fetch(name, version, Path(tmp) / "package")
            except FlashError as e:
                if e.recovery is not RecoveryStrategy.RETRY and self._registry_available():
                    raise
                logger.warning(f"Registry unreachable for {name}@{version}, using local fallback")
                return self._install_fallback(project_dir, name, version)
            resolved = self._fetched_version(fetched) or version
            self.store.put(name, resolved, fetched)

        self.store.materialize(name, resolved, dest)
        return PackageResult(name, version, "registry", resolved)

    def _registry_available(self) -> bool:
        if self.network_checker is None:
            self.network_checker = NetworkChecker()
        return self.network_checker.is_available(use_cached=False)

    @staticmethod
    def _fetched_version(package_dir: Path) -> Optional[str]:
        try:
            with open(package_dir / "package.json", "r") as f:
                return json.load(f).get("version")
        except (OSError, ValueError, AttributeError):
            return None

    def _install_fallback(self, project_dir: Path, name: str, version: str) -> PackageResult:
        options = FallbackOptions(project_dir=project_dir, offline=True)
        found = self.resolver.resolve(name, version, options)
        if not found.found:
            raise PackageError(
                f"{name}@{version} is not available offline",
                context={"name": name, "version": version},
            )

        dest = project_dir / NODE_MODULES / name
        if found.source == "cache":
            self.store.materialize(name, found.version, dest)
        elif found.source == "snapshot":
            if not self.snapshot_manager.extract_package(found.path, name, dest):
                raise PackageError(f"{name} could not be extracted from snapshot {found.path}")
        # 'local' is already in place

        return PackageResult(name, version, f"fallback:{found.source}", found.version)

    def _archive_tree(self, project_dir: Path, dependencies: Dict[str, str]) -> None:
        try:
            self.store.put_tree(hash_dependency_tree(dependencies), project_dir / NODE_MODULES)
        except FlashError as e:
            log_error(e)

    def _snapshot(
        self, project_dir: Path, dependencies: Dict[str, str], context: HookContext
    ) -> None:
        self.hooks.run(HookPoint.PRE_SNAPSHOT, context)
        try:
            snapshot = self.snapshot_manager.create(project_dir, dependencies)
            context.options["snapshot"] = snapshot
        except FlashError as e:
            log_error(e)
            return
        self.hooks.run(HookPoint.POST_SNAPSHOT, context)

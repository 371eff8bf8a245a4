"""Reconciliation of the local cache with a shared remote store.

``CloudSync`` moves package archives and dependency-tree archives between
a :class:`~flashcache.cache.LocalCacheStore` and a
:class:`~flashcache.cloud.provider.CloudProvider`. What moves for each
object is decided by a :class:`~flashcache.cloud.policy.SyncPolicy`.

Remote layout (relative to the provider prefix)::

    [teams/<team>/]packages/<name>/<version>.tgz
    [teams/<team>/]trees/<hash[:2]>/<hash>.tgz

Objects above 50MB are transferred in 5MB chunks. Providers with native
multipart support assemble them into one object; on other providers each
chunk becomes its own ``<key>.partNNNN`` object next to a
``<key>.manifest.json`` that lists them.
"""

import logging
import os
import shutil
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import orjson

from flashcache.cache.store import TEMP_PREFIX, LocalCacheStore
from flashcache.cloud.config import CloudConfig
from flashcache.cloud.factory import init_provider
from flashcache.cloud.policy import SyncDecision, SyncPolicy, decide
from flashcache.cloud.provider import CloudProvider
from flashcache.cloud.team import AccessLevel, has_permission, team_prefix
from flashcache.errors import (
    AccessDeniedError,
    CloudError,
    FlashError,
    PackageError,
    log_error,
    wrap_exception,
)
from flashcache.hashing import hash_dependency_tree
from flashcache.hooks import HookContext, HookPoint, HookRegistry
from flashcache.lockfile import has_lockfile_changed, lockfile_hash
from flashcache.retry import retry_call
from flashcache.scheduler import AdaptiveScheduler
from flashcache.utils import (
    CLOUD_STATE_FILE,
    PACKAGES_DIR,
    TREES_DIR,
    ChunkManifest,
    atomic_write_bytes,
    now_iso,
    validate_package_name,
    validate_version,
)

logger = logging.getLogger(__name__)

CHUNK_THRESHOLD = 50 * 1024 * 1024
CHUNK_SIZE = 5 * 1024 * 1024
CHUNK_CONCURRENCY = 3
MANIFEST_SUFFIX = ".manifest.json"
ARCHIVE_SUFFIX = ".tgz"


class SyncDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    BOTH = "both"

    @property
    def uploads(self) -> bool:
        return self in (SyncDirection.UPLOAD, SyncDirection.BOTH)

    @property
    def downloads(self) -> bool:
        return self in (SyncDirection.DOWNLOAD, SyncDirection.BOTH)


class SyncAction(str, Enum):
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"  # already in sync
    NOT_PERFORMED = "not-performed"  # nothing to transfer from
    DENIED = "denied"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    """Result of reconciling one object."""

    action: SyncAction
    key: str
    error: Optional[FlashError] = None

    @property
    def ok(self) -> bool:
        return self.action not in (SyncAction.FAILED, SyncAction.DENIED)


@dataclass
class SyncReport:
    """Aggregate result of :meth:`CloudSync.sync_cache`."""

    direction: SyncDirection
    outcomes: List[SyncOutcome] = field(default_factory=list)
    duration: float = 0.0

    def count(self, action: SyncAction) -> int:
        return sum(1 for o in self.outcomes if o.action is action)

    @property
    def uploaded(self) -> int:
        return self.count(SyncAction.UPLOADED)

    @property
    def downloaded(self) -> int:
        return self.count(SyncAction.DOWNLOADED)

    @property
    def skipped(self) -> int:
        return self.count(SyncAction.SKIPPED) + self.count(SyncAction.NOT_PERFORMED)

    @property
    def failed(self) -> int:
        return self.count(SyncAction.FAILED)

    @property
    def denied(self) -> int:
        return self.count(SyncAction.DENIED)

    def summary(self) -> Dict[str, int]:
        return {
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "skipped": self.skipped,
            "failed": self.failed,
            "denied": self.denied,
        }


class CloudSync:
    """Synchronizes the local cache with a remote object store.

    Build instances with :meth:`create`; tests pass a fake provider.

    Args:
        config: Cloud settings (policy, team, lockfile invalidation)
        store: Local cache
        provider: Initialized provider
        scheduler: Runs per-object work of bulk syncs and supplies the
            retry settings
        sleep: Sleep function used between retries
        hooks: Callbacks run around ``sync_cache``
    """

    def __init__(
        self,
        config: CloudConfig,
        store: LocalCacheStore,
        provider: CloudProvider,
        scheduler: Optional[AdaptiveScheduler] = None,
        sleep: Callable[[float], Any] = time.sleep,
        hooks: Optional[HookRegistry] = None,
    ):
        self.config = config
        self.store = store
        self.provider = provider
        self.scheduler = scheduler or AdaptiveScheduler()
        self.sleep = sleep
        self.hooks = hooks or HookRegistry()
        self.state_path = store.root / CLOUD_STATE_FILE
        self._invalidated = False

    @classmethod
    def create(
        cls,
        config: CloudConfig,
        store: LocalCacheStore,
        provider: Optional[CloudProvider] = None,
        scheduler: Optional[AdaptiveScheduler] = None,
        hooks: Optional[HookRegistry] = None,
    ) -> "CloudSync":
        """Build a sync engine, initializing the configured provider.

        A provider that cannot be initialized is replaced by a stub whose
        operations fail with ``ProviderUnavailableError``.
        """
        if provider is None:
            provider = init_provider(config.provider)
        return cls(config, store, provider, scheduler, hooks=hooks)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @property
    def namespace(self) -> str:
        return team_prefix(self.config.team_id)

    def package_key(self, name: str, version: str) -> str:
        return f"{self.namespace}{PACKAGES_DIR}/{name}/{version}{ARCHIVE_SUFFIX}"

    def tree_key(self, tree_hash: str) -> str:
        return f"{self.namespace}{TREES_DIR}/{tree_hash[:2]}/{tree_hash}{ARCHIVE_SUFFIX}"

    def parse_package_key(self, key: str) -> Optional[Tuple[str, str]]:
        """(name, version) of a remote package key, None for other keys."""
        base = f"{self.namespace}{PACKAGES_DIR}/"
        if not key.startswith(base):
            return None
        rest = key[len(base):].removesuffix(MANIFEST_SUFFIX)
        if not rest.endswith(ARCHIVE_SUFFIX) or "/" not in rest:
            return None
        name, filename = rest.rsplit("/", 1)
        version = filename.removesuffix(ARCHIVE_SUFFIX)
        try:
            validate_package_name(name)
            validate_version(version)
        except ValueError:
            return None
        return name, version

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def can(self, level: AccessLevel) -> bool:
        return has_permission(self.config.team_id, self.config.team_access, level)

    def _require(self, level: AccessLevel, what: str) -> None:
        if not self.can(level):
            raise AccessDeniedError(
                f"Insufficient team permissions to {what}",
                context={"team": self.config.team_id, "required": level.value},
            )

    # ------------------------------------------------------------------
    # Lockfile invalidation
    # ------------------------------------------------------------------

    def _load_state(self) -> Dict[str, Any]:
        if not self.state_path.is_file():
            return {}
        try:
            return orjson.loads(self.state_path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable sync state {self.state_path}: {e}")
            return {}

    def _save_state(self, state: Dict[str, Any]) -> None:
        atomic_write_bytes(self.state_path, orjson.dumps(state, option=orjson.OPT_INDENT_2))

    def refresh_lockfile_state(self) -> bool:
        """Compare the project's lockfile with the recorded hash.

        Called once at the start of every top-level operation. A change
        makes remote objects count as missing for that operation and
        records the new hash.

        Returns:
            True if the lockfile changed
        """
        self._invalidated = False
        project_dir = self.config.project_dir
        if not self.config.invalidate_on_lockfile_change or project_dir is None:
            return False

        state = self._load_state()
        previous = state.get("lockfile_hash")
        if not has_lockfile_changed(project_dir, previous):
            logger.debug("Lockfile has not changed, using existing remote cache")
            return False

        logger.info("Lockfile has changed, remote cache entries will be replaced")
        state["lockfile_hash"] = lockfile_hash(project_dir)
        state["updated_at"] = now_iso()
        self._save_state(state)
        self._invalidated = True
        return True

    # ------------------------------------------------------------------
    # Remote probes
    # ------------------------------------------------------------------

    def _remote_exists(self, key: str) -> bool:
        if self._invalidated:
            return False
        if self.provider.file_exists(key):
            return True
        return not self.provider.capabilities.multipart and self.provider.file_exists(
            key + MANIFEST_SUFFIX
        )

    def _remote_mtime(self, key: str) -> Optional[float]:
        metadata = self.provider.get_metadata(key)
        if metadata is None and not self.provider.capabilities.multipart:
            metadata = self.provider.get_metadata(key + MANIFEST_SUFFIX)
        return metadata.last_modified if metadata else None

    def _retry(self, operation: Callable[[], Any], description: str):
        settings = self.scheduler.config
        return retry_call(
            operation,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            sleep=self.sleep,
            description=description,
        )

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _upload(self, local_path: Path, key: str) -> None:
        size = local_path.stat().st_size

        def attempt():
            if size <= CHUNK_THRESHOLD:
                self.provider.upload_file(local_path, key)
            elif self.provider.capabilities.multipart:
                self.provider.upload_large_file(
                    local_path, key, chunk_size=CHUNK_SIZE, concurrency=CHUNK_CONCURRENCY
                )
            else:
                self._upload_chunks(local_path, key, size)

        self._retry(attempt, f"upload {key}")

    def _upload_chunks(self, local_path: Path, key: str, size: int) -> None:
        """Store a large file as part objects plus a manifest."""
        offsets = list(range(0, size, CHUNK_SIZE))
        part_keys = [f"{key}.part{n:04d}" for n in range(1, len(offsets) + 1)]

        with tempfile.TemporaryDirectory(dir=self.store.root, prefix=TEMP_PREFIX) as tmp:

            def send(index: int) -> None:
                chunk_path = Path(tmp) / f"part{index:04d}"
                with open(local_path, "rb") as src, open(chunk_path, "wb") as dst:
                    src.seek(offsets[index])
                    dst.write(src.read(CHUNK_SIZE))
                self.provider.upload_file(chunk_path, part_keys[index])
                chunk_path.unlink()

            with ThreadPoolExecutor(max_workers=CHUNK_CONCURRENCY) as pool:
                list(pool.map(send, range(len(offsets))))

            manifest: ChunkManifest = {
                "key": key,
                "size": size,
                "chunk_size": CHUNK_SIZE,
                "parts": part_keys,
            }
            manifest_path = Path(tmp) / "manifest.json"
            manifest_path.write_bytes(orjson.dumps(manifest))
            self.provider.upload_file(manifest_path, key + MANIFEST_SUFFIX)

        if self.provider.file_exists(key):
            self.provider.delete_file(key)
        logger.debug(f"Uploaded {local_path} to {key} as {len(part_keys)} chunks")

    def _download(self, key: str, local_path: Path) -> None:
        def attempt():
            if self.provider.file_exists(key):
                metadata = self.provider.get_metadata(key)
                large = metadata is not None and (metadata.size or 0) > CHUNK_THRESHOLD
                if large and self.provider.capabilities.multipart:
                    self.provider.download_large_file(
                        key, local_path, chunk_size=CHUNK_SIZE, concurrency=CHUNK_CONCURRENCY
                    )
                else:
                    self.provider.download_file(key, local_path)
            elif not self.provider.capabilities.multipart and self.provider.file_exists(
                key + MANIFEST_SUFFIX
            ):
                self._download_chunks(key, local_path)
            else:
                raise CloudError(f"Remote object not found: {key}")

        self._retry(attempt, f"download {key}")

    def _download_chunks(self, key: str, local_path: Path) -> None:
        """Reassemble a file stored as part objects."""
        with tempfile.TemporaryDirectory(dir=self.store.root, prefix=TEMP_PREFIX) as tmp:
            manifest_path = Path(tmp) / "manifest.json"
            self.provider.download_file(key + MANIFEST_SUFFIX, manifest_path)
            try:
                manifest: ChunkManifest = orjson.loads(manifest_path.read_bytes())
                parts = manifest["parts"]
                expected_size = int(manifest["size"])
            except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise CloudError(f"Corrupt chunk manifest for {key}: {e}", cause=e) from e

            def fetch(index: int) -> Path:
                part_path = Path(tmp) / f"part{index:04d}"
                self.provider.download_file(parts[index], part_path)
                return part_path

            local_path.parent.mkdir(parents=True, exist_ok=True)
            with ThreadPoolExecutor(max_workers=CHUNK_CONCURRENCY) as pool:
                part_paths = list(pool.map(fetch, range(len(parts))))
            with open(local_path, "wb") as out:
                for part_path in part_paths:
                    with open(part_path, "rb") as f:
                        shutil.copyfileobj(f, out)

        if local_path.stat().st_size != expected_size:
            raise CloudError(
                f"Reassembled {key} has {local_path.stat().st_size} bytes, "
                f"expected {expected_size}"
            )

    def _remote_mtime_or_none(self, key: str) -> Optional[float]:
        try:
            return self._remote_mtime(key)
        except FlashError as e:
            logger.debug(f"Could not read last-modified of {key}: {e}")
            return None

    def _align_mtime(self, key: str, path: Path) -> None:
        """Give the local copy the remote copy's last-modified time."""
        remote_mtime = self._remote_mtime_or_none(key)
        if remote_mtime is not None and path.exists():
            os.utime(path, (remote_mtime, remote_mtime))

    def _align_package_mtime(self, key: str, name: str, version: str) -> None:
        remote_mtime = self._remote_mtime_or_none(key)
        if remote_mtime is not None:
            self.store.touch(name, version, remote_mtime)

    def _temp_dir(self):
        return tempfile.TemporaryDirectory(dir=self.store.root, prefix=TEMP_PREFIX)

    def upload_package(self, name: str, version: str) -> str:
        """Upload a cached package.

        Returns:
            The remote key

        Raises:
            AccessDeniedError: Without write permission
            PackageError: If the package is not cached
            FlashError: When the transfer fails after all retries
        """
        self._require(AccessLevel.WRITE, f"upload {name}@{version}")
        if self.store.get_entry(name, version) is None:
            raise PackageError(f"{name}@{version} is not in the local cache")

        key = self.package_key(name, version)
        with self._temp_dir() as tmp:
            archive = self.store.export_archive(name, version, Path(tmp) / "package.tgz")
            self._upload(archive, key)

        self._align_package_mtime(key, name, version)
        logger.debug(f"Uploaded {name}@{version} to {key}")
        return key

    def download_package(self, name: str, version: str) -> str:
        """Download a package from the remote store into the local cache.

        Returns:
            The remote key
        """
        self._require(AccessLevel.READ, f"download {name}@{version}")
        key = self.package_key(name, version)
        with self._temp_dir() as tmp:
            archive = Path(tmp) / "package.tgz"
            self._download(key, archive)
            self.store.import_archive(name, version, archive)

        self._align_package_mtime(key, name, version)
        logger.debug(f"Downloaded {name}@{version} from {key}")
        return key

    def upload_tree(self, dependencies: Mapping[str, str]) -> str:
        self._require(AccessLevel.WRITE, "upload a dependency tree")
        tree_hash = hash_dependency_tree(dependencies)
        tree_path = self.store.tree_path(tree_hash)
        if not tree_path.is_file():
            raise PackageError(f"Dependency tree {tree_hash[:12]} is not in the local cache")

        key = self.tree_key(tree_hash)
        self._upload(tree_path, key)
        self._align_mtime(key, tree_path)
        return key

    def download_tree(self, dependencies: Mapping[str, str]) -> str:
        self._require(AccessLevel.READ, "download a dependency tree")
        tree_hash = hash_dependency_tree(dependencies)
        key = self.tree_key(tree_hash)
        target = self.store.tree_path(tree_hash)
        target.parent.mkdir(parents=True, exist_ok=True)

        with self._temp_dir() as tmp:
            downloaded = Path(tmp) / "tree.tgz"
            self._download(key, downloaded)
            os.replace(downloaded, target)

        self._align_mtime(key, target)
        return key

    # ------------------------------------------------------------------
    # Policy-driven sync
    # ------------------------------------------------------------------

    def _reconcile(
        self,
        key: str,
        policy: SyncPolicy,
        local_exists: bool,
        local_mtime: Optional[float],
        upload: Callable[[], Any],
        download: Callable[[], Any],
    ) -> SyncOutcome:
        """Apply ``policy`` to one object, recording failures."""
        policy = SyncPolicy(policy)
        try:
            if policy in (SyncPolicy.ALWAYS_UPLOAD, SyncPolicy.UPLOAD_IF_MISSING):
                self._require(AccessLevel.WRITE, f"upload {key}")
            if policy is not SyncPolicy.ALWAYS_UPLOAD:
                self._require(AccessLevel.READ, f"read {key}")

            remote_exists = policy is not SyncPolicy.ALWAYS_UPLOAD and self._remote_exists(key)
            remote_mtime = None
            metadata_available = True
            if policy is SyncPolicy.NEWEST and remote_exists and local_exists:
                try:
                    remote_mtime = self._remote_mtime(key)
                    metadata_available = remote_mtime is not None
                except FlashError as e:
                    logger.warning(f"Failed to get remote metadata for {key}, uploading local copy: {e}")
                    metadata_available = False

            decision = decide(
                policy,
                remote_exists=remote_exists,
                local_exists=local_exists,
                local_mtime=local_mtime,
                remote_mtime=remote_mtime,
                metadata_available=metadata_available,
            )

            if decision is SyncDecision.UPLOAD:
                upload()
                return SyncOutcome(SyncAction.UPLOADED, key)
            if decision is SyncDecision.DOWNLOAD:
                download()
                return SyncOutcome(SyncAction.DOWNLOADED, key)
            if decision is SyncDecision.NOT_PERFORMED:
                return SyncOutcome(SyncAction.NOT_PERFORMED, key)
            return SyncOutcome(SyncAction.SKIPPED, key)

        except AccessDeniedError as e:
            logger.warning(str(e))
            return SyncOutcome(SyncAction.DENIED, key, e)
        except (FlashError, OSError) as e:
            error = wrap_exception(e, f"Sync of {key} failed", CloudError)
            log_error(error)
            return SyncOutcome(SyncAction.FAILED, key, error)

    def _sync_package(
        self, name: str, version: str, policy: SyncPolicy
    ) -> SyncOutcome:
        return self._reconcile(
            self.package_key(name, version),
            policy,
            local_exists=self.store.get_entry(name, version) is not None,
            local_mtime=self.store.entry_mtime(name, version),
            upload=lambda: self.upload_package(name, version),
            download=lambda: self.download_package(name, version),
        )

    def sync_package(
        self, name: str, version: str, policy: Optional[SyncPolicy] = None
    ) -> SyncOutcome:
        """Reconcile one package under ``policy`` (configured default)."""
        self.refresh_lockfile_state()
        return self._sync_package(name, version, policy or self.config.sync_policy)

    def sync_tree(
        self, dependencies: Mapping[str, str], policy: Optional[SyncPolicy] = None
    ) -> SyncOutcome:
        """Reconcile the archived dependency tree of ``dependencies``."""
        self.refresh_lockfile_state()
        tree_hash = hash_dependency_tree(dependencies)
        tree_path = self.store.tree_path(tree_hash)
        local_exists = tree_path.is_file()
        return self._reconcile(
            self.tree_key(tree_hash),
            policy or self.config.sync_policy,
            local_exists=local_exists,
            local_mtime=tree_path.stat().st_mtime if local_exists else None,
            upload=lambda: self.upload_tree(dependencies),
            download=lambda: self.download_tree(dependencies),
        )

    def remote_packages(self) -> List[Tuple[str, str]]:
        """(name, version) of every package in the remote store."""
        self._require(AccessLevel.READ, "list the remote cache")
        found = set()
        for key in self.provider.list_files(f"{self.namespace}{PACKAGES_DIR}/"):
            parsed = self.parse_package_key(key)
            if parsed is not None:
                found.add(parsed)
        return sorted(found)

    def _effective_direction(self, direction: SyncDirection) -> Optional[SyncDirection]:
        """Drop the half of ``direction`` the team permissions forbid."""
        if direction.uploads and not self.can(AccessLevel.WRITE):
            logger.warning("Insufficient permissions to upload to team cache")
            if direction is SyncDirection.UPLOAD:
                return None
            direction = SyncDirection.DOWNLOAD

        if direction.downloads and not self.can(AccessLevel.READ):
            logger.warning("Insufficient permissions to download from team cache")
            if direction is SyncDirection.DOWNLOAD:
                return None
            direction = SyncDirection.UPLOAD

        return direction

    def sync_cache(
        self,
        direction: SyncDirection = SyncDirection.BOTH,
        force: bool = False,
    ) -> SyncReport:
        """Reconcile every cached package with the remote store.

        Local packages are uploaded when missing remotely (always with
        ``force``); in download mode they are only replaced with
        ``force``. Remote packages missing locally are downloaded. The walk
        is not transactional: an interrupted run can simply be repeated.

        Args:
            direction: 'upload', 'download' or 'both'
            force: Transfer even when the other side already has the object

        Returns:
            SyncReport with per-object outcomes
        """
        start = time.monotonic()
        requested = SyncDirection(direction)
        effective = self._effective_direction(requested)
        report = SyncReport(direction=effective or requested)

        if effective is None:
            report.outcomes.append(
                SyncOutcome(
                    SyncAction.DENIED,
                    self.namespace or "/",
                    AccessDeniedError(f"Insufficient team permissions to {requested.value}"),
                )
            )
            return report

        self.refresh_lockfile_state()
        context = HookContext(
            project_dir=self.config.project_dir,
            options={"direction": effective.value, "force": force},
        )
        self.hooks.run(HookPoint.PRE_SYNC, context)

        if effective.uploads:
            local_policy = SyncPolicy.ALWAYS_UPLOAD if force else SyncPolicy.UPLOAD_IF_MISSING
        else:
            local_policy = SyncPolicy.ALWAYS_DOWNLOAD if force else SyncPolicy.DOWNLOAD_IF_MISSING

        items = [(name, version, local_policy) for name, version, _ in self.store.iter_package_dirs()]

        if effective.downloads:
            local = {(name, version) for name, version, _ in items}
            try:
                for name, version in self.remote_packages():
                    if (name, version) not in local:
                        items.append((name, version, SyncPolicy.DOWNLOAD_IF_MISSING))
            except FlashError as e:
                log_error(wrap_exception(e, "Listing the remote cache failed", CloudError))
                report.outcomes.append(
                    SyncOutcome(SyncAction.FAILED, f"{self.namespace}{PACKAGES_DIR}/", e)
                )

        tasks = self.scheduler.run(items, lambda item: self._sync_package(*item))
        for task in tasks:
            if task.ok:
                report.outcomes.append(task.result)
            else:
                name, version, _ = task.input
                report.outcomes.append(
                    SyncOutcome(SyncAction.FAILED, self.package_key(name, version), task.error)
                )

        report.duration = time.monotonic() - start
        counts = report.summary()
        logger.info(
            f"Cache synchronization ({effective.value}) finished in {report.duration:.2f}s: "
            f"uploaded {counts['uploaded']}, downloaded {counts['downloaded']}, "
            f"skipped {counts['skipped']}, failed {counts['failed']}"
        )
        context.options["report"] = report
        self.hooks.run(HookPoint.POST_SYNC, context)
        return report

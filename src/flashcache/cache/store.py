"""Content-addressed local package store."""

import errno
import logging
import os
import shutil
import tarfile
import tempfile
import uuid
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from flashcache.cache.config import CacheConfig
from flashcache.cache.metadata import CacheMetadata
from flashcache.cache.validation import is_expired, verify_digest
from flashcache.errors import (
    CacheDiskFullError,
    CacheError,
    CachePermissionError,
    PackageError,
)
from flashcache.hashing import hash_directory, hash_file
from flashcache.hooks import HookContext, HookPoint, HookRegistry
from flashcache.utils import (
    CacheIndexEntry,
    LOCKS_DIR,
    PACKAGES_DIR,
    TREES_DIR,
    directory_size,
    now_iso,
    replace_directory,
    staging_path,
    validate_package_name,
    validate_version,
)

logger = logging.getLogger(__name__)

DIGEST_PREFIX_LENGTH = 16
TEMP_PREFIX = ".tmp-"


@dataclass
class CacheEntry:
    """One stored package version.

    Attributes:
        name: Package name (may be scoped, ``@scope/pkg``)
        version: Exact version
        integrity: Content digest of the package tree
        path: Absolute location of the stored entry
        size: Stored size in bytes
        compressed: Whether the entry is a gzip tarball
        created_at: ISO timestamp of insertion
        last_verified: ISO timestamp of the last successful verification
        stored_digest: Digest of the stored form
    """

    name: str
    version: str
    integrity: str
    path: Path
    size: int
    compressed: bool = False
    created_at: str = field(default_factory=now_iso)
    last_verified: Optional[str] = None
    stored_digest: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass
class MaterializeResult:
    """Outcome of placing a cached entry into a project."""

    path: Path
    linked: int = 0
    copied: int = 0


@dataclass
class CleanReport:
    """Outcome of a cache clean."""

    removed: List[str] = field(default_factory=list)
    freed_bytes: int = 0
    trees_removed: int = 0


class LocalCacheStore:
    """Content-addressed store of package versions on local disk.

    Layout under the cache root::

        packages/<name>/<version>/<digest16>/   (or <digest16>.tgz)
        trees/<hash[:2]>/<hash>.tgz
        metadata.json
        .locks/

    Entries are written to a temp path and renamed into place, so
    concurrent writers of identical content race harmlessly. The store
    never touches the network.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        hooks: Optional[HookRegistry] = None,
    ):
        """Initialize the store.

        Args:
            config: Cache configuration (defaults if None)
            hooks: Callbacks run around ``clean``

        Raises:
            CachePermissionError: If the cache root cannot be created
            CacheError: If the cache root is otherwise inaccessible
        """
        self.config = config or CacheConfig()
        self.hooks = hooks or HookRegistry()
        self.root = Path(self.config.cache_dir)
        self.packages_dir = self.root / PACKAGES_DIR
        self.trees_dir = self.root / TREES_DIR

        try:
            for directory in (self.packages_dir, self.trees_dir, self.root / LOCKS_DIR):
                directory.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise CachePermissionError(
                f"Cannot create cache directory at {self.root}: {e}", cause=e
            ) from e
        except OSError as e:
            logger.warning(f"Error creating cache directory: {e}")
            raise CacheError(
                f"Cannot access cache directory at {self.root}: {e}", cause=e
            ) from e

        self.metadata = CacheMetadata(self.root, self.config.lock_timeout)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def version_dir(self, name: str, version: str) -> Path:
        validate_package_name(name)
        validate_version(version)
        return self.packages_dir / name / version

    def tree_path(self, tree_hash: str) -> Path:
        """Location of a dependency-tree archive."""
        return self.trees_dir / tree_hash[:2] / f"{tree_hash}.tgz"

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    # ------------------------------------------------------------------
    # Entry records
    # ------------------------------------------------------------------

    def _to_entry(self, record: CacheIndexEntry) -> CacheEntry:
        return CacheEntry(
            name=record["name"],
            version=record["version"],
            integrity=record["integrity"],
            path=self.root / record["path"],
            size=record.get("size_bytes", 0),
            compressed=record.get("compressed", False),
            created_at=record.get("created_at") or now_iso(),
            last_verified=record.get("last_verified"),
            stored_digest=record.get("stored_digest") or record["integrity"],
        )

    def _record(self, entry: CacheEntry) -> CacheIndexEntry:
        return CacheIndexEntry(
            name=entry.name,
            version=entry.version,
            integrity=entry.integrity,
            stored_digest=entry.stored_digest or entry.integrity,
            path=self._relative(entry.path),
            size_bytes=entry.size,
            compressed=entry.compressed,
            created_at=entry.created_at,
            last_verified=entry.last_verified,
        )

    def _stored_candidates(self, name: str, version: str) -> List[Path]:
        version_dir = self.version_dir(name, version)
        if not version_dir.is_dir():
            return []
        return sorted(
            p for p in version_dir.iterdir() if not p.name.startswith(TEMP_PREFIX)
        )

    def _adopt_from_disk(self, name: str, version: str) -> Optional[CacheEntry]:
        """Re-index an entry found on disk but missing from the index."""
        candidates = self._stored_candidates(name, version)
        if not candidates:
            return None

        path = candidates[-1]
        compressed = path.is_file()
        try:
            stored_digest = hash_file(path) if compressed else hash_directory(path)
        except OSError as e:
            logger.warning(f"Cannot read unindexed cache entry {path}: {e}")
            return None

        created = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        entry = CacheEntry(
            name=name,
            version=version,
            integrity=stored_digest,
            path=path,
            size=directory_size(path),
            compressed=compressed,
            created_at=created.isoformat(),
            stored_digest=stored_digest,
        )
        logger.debug(f"Adopted unindexed cache entry {entry.key}")
        self.metadata.set_entry(self._record(entry))
        return entry

    def get_entry(self, name: str, version: str) -> Optional[CacheEntry]:
        """Entry for name@version without verifying it.

        Args:
            name: Package name
            version: Exact version

        Returns:
            CacheEntry, or None if the version is not stored
        """
        record = self.metadata.get_entry(name, version)
        if record is None:
            return self._adopt_from_disk(name, version)

        entry = self._to_entry(record)
        if not entry.path.exists():
            self.metadata.remove_entry(name, version)
            return self._adopt_from_disk(name, version)
        return entry

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def has(self, name: str, version: str) -> bool:
        """Check for a usable (and, if configured, verified) entry."""
        return self.lookup(name, version) is not None

    def lookup(self, name: str, version: str) -> Optional[CacheEntry]:
        """Return the entry for name@version if it can be trusted.

        With ``verify_integrity`` on, the entry is verified first; an entry
        that fails verification is evicted and reported as a miss.

        Args:
            name: Package name
            version: Exact version

        Returns:
            CacheEntry on a hit, None on a miss
        """
        entry = self.get_entry(name, version)
        if entry is None:
            self.metadata.record_cache_miss()
            return None

        if self.config.verify_integrity and not self.verify(entry):
            message = f"Cached {entry.key} failed integrity verification, evicting"
            logger.warning(message)
            warnings.warn(message)
            self.metadata.record_integrity_failure()
            self._remove_entry(entry, eviction=True)
            self.metadata.record_cache_miss()
            return None

        self.metadata.update_access(name, version)
        return entry

    def verify(self, entry: CacheEntry) -> bool:
        """Check stored content against its recorded digest.

        Args:
            entry: Entry to verify

        Returns:
            True if the stored content is intact
        """
        ok = verify_digest(
            entry.path,
            entry.stored_digest or entry.integrity,
            self.config.checksum_algorithm,
        )
        if ok:
            self.metadata.update_verification(entry.name, entry.version)
        return ok

    def put(self, name: str, version: str, source: Path) -> CacheEntry:
        """Store a package directory under name@version.

        Identical content already stored for name@version is returned as
        is. Different content replaces the previous entry.

        Args:
            name: Package name
            version: Exact version
            source: Directory holding the package contents

        Returns:
            The stored CacheEntry

        Raises:
            CacheDiskFullError: If there is no room for the entry
            CachePermissionError: If the cache is not writable
            CacheError: For other filesystem failures
        """
        source = Path(source)
        version_dir = self.version_dir(name, version)
        if not source.is_dir():
            raise PackageError(f"Package source is not a directory: {source}")

        digest = hash_directory(source, self.config.checksum_algorithm)

        existing = self.metadata.get_entry(name, version)
        if existing and existing["integrity"] == digest:
            entry = self._to_entry(existing)
            if entry.path.exists():
                logger.debug(f"{entry.key} already cached with identical content")
                return entry

        self._check_disk_space(directory_size(source))

        suffix = ".tgz" if self.config.compress else ""
        target = version_dir / f"{digest[:DIGEST_PREFIX_LENGTH]}{suffix}"
        temp_path = version_dir / f"{TEMP_PREFIX}{uuid.uuid4().hex[:12]}{suffix}"

        try:
            version_dir.mkdir(parents=True, exist_ok=True)
            if not target.exists():
                if self.config.compress:
                    self._write_tarball(source, temp_path)
                else:
                    shutil.copytree(source, temp_path, symlinks=True)
                self._finalize(temp_path, target)
        except OSError as e:
            self._discard(temp_path)
            raise self._map_write_error(e, f"{name}@{version}") from e

        self._remove_siblings(version_dir, keep=target)

        entry = CacheEntry(
            name=name,
            version=version,
            integrity=digest,
            path=target,
            size=directory_size(target),
            compressed=self.config.compress,
            stored_digest=hash_file(target) if self.config.compress else digest,
        )
        self.metadata.set_entry(self._record(entry))
        logger.debug(f"Cached {entry.key} at {target}")
        return entry

    def materialize(self, name: str, version: str, dest: Path) -> MaterializeResult:
        """Place a cached package at ``dest``.

        Files are hardlinked when possible; any file that cannot be linked
        (cross-device, permissions, link limit) is copied instead.
        Compressed entries are extracted.

        Args:
            name: Package name
            version: Exact version
            dest: Target directory (replaced if present)

        Returns:
            MaterializeResult with linked/copied file counts

        Raises:
            PackageError: If name@version is not cached
        """
        entry = self.lookup(name, version)
        if entry is None:
            raise PackageError(
                f"{name}@{version} is not in the cache",
                context={"name": name, "version": version},
            )

        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = staging_path(dest)
        result = MaterializeResult(path=dest)

        try:
            if entry.compressed:
                with tarfile.open(entry.path, "r:gz") as tar:
                    members = tar.getmembers()
                    tar.extractall(staging, filter="data")
                result.copied = sum(1 for m in members if m.isfile())
            else:
                self._link_tree(entry.path, staging, result)
            replace_directory(staging, dest)
        except OSError as e:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise self._map_write_error(e, entry.key) from e

        return result

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_entries(self) -> List[CacheEntry]:
        """All indexed entries, oldest first."""
        entries = [self._to_entry(r) for r in self.metadata.get_all_entries().values()]
        return sorted(entries, key=lambda e: e.created_at)

    def list_versions(self, name: str) -> List[str]:
        """Versions of ``name`` present in the cache."""
        versions = set()
        package_dir = self.packages_dir / name
        if package_dir.is_dir():
            versions.update(
                p.name for p in package_dir.iterdir()
                if p.is_dir() and self._has_stored_content(p)
            )
        return sorted(versions)

    @staticmethod
    def _has_stored_content(version_dir: Path) -> bool:
        return any(not p.name.startswith(TEMP_PREFIX) for p in version_dir.iterdir())

    def iter_package_dirs(self) -> Iterator[Tuple[str, str, Path]]:
        """Walk ``packages/<name>/<version>`` on disk.

        Yields:
            (name, version, version_dir) tuples; scoped names are joined
            as ``@scope/pkg``
        """
        if not self.packages_dir.is_dir():
            return
        for child in sorted(self.packages_dir.iterdir()):
            if not child.is_dir():
                continue
            if child.name.startswith("@"):
                package_dirs = [(f"{child.name}/{p.name}", p) for p in sorted(child.iterdir())]
            else:
                package_dirs = [(child.name, child)]
            for name, package_dir in package_dirs:
                if not package_dir.is_dir():
                    continue
                for version_dir in sorted(package_dir.iterdir()):
                    if version_dir.is_dir() and self._has_stored_content(version_dir):
                        yield name, version_dir.name, version_dir

    def entry_mtime(self, name: str, version: str) -> Optional[float]:
        """Modification time (epoch seconds) of the stored entry."""
        entry = self.get_entry(name, version)
        if entry is None:
            return None
        return entry.path.stat().st_mtime

    def touch(self, name: str, version: str, timestamp: float) -> None:
        """Set the stored entry's modification time."""
        entry = self.get_entry(name, version)
        if entry is not None:
            os.utime(entry.path, (timestamp, timestamp))

    # ------------------------------------------------------------------
    # Archives (cloud transfer form)
    # ------------------------------------------------------------------

    def export_archive(self, name: str, version: str, out_path: Path) -> Path:
        """Write name@version as a gzip tarball to ``out_path``.

        Raises:
            PackageError: If name@version is not cached
        """
        entry = self.get_entry(name, version)
        if entry is None:
            raise PackageError(f"{name}@{version} is not in the cache")

        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        if entry.compressed:
            shutil.copy2(entry.path, out_path)
        else:
            self._write_tarball(entry.path, out_path)
        return out_path

    def import_archive(self, name: str, version: str, archive: Path) -> CacheEntry:
        """Store the contents of a gzip tarball under name@version."""
        with tempfile.TemporaryDirectory(dir=self.root, prefix=TEMP_PREFIX) as tmp:
            extracted = Path(tmp) / "package"
            try:
                with tarfile.open(archive, "r:*") as tar:
                    tar.extractall(extracted, filter="data")
            except (tarfile.TarError, OSError) as e:
                raise CacheError(
                    f"Cannot unpack archive for {name}@{version}: {e}", cause=e
                ) from e
            extracted.mkdir(exist_ok=True)
            return self.put(name, version, extracted)

    # ------------------------------------------------------------------
    # Dependency trees
    # ------------------------------------------------------------------

    def has_tree(self, tree_hash: str) -> bool:
        return self.tree_path(tree_hash).is_file()

    def put_tree(self, tree_hash: str, node_modules: Path) -> Path:
        """Archive a whole dependency tree under its hash.

        Args:
            tree_hash: Hash of the dependency map
            node_modules: Installed tree to archive

        Returns:
            Path of the tree archive
        """
        target = self.tree_path(tree_hash)
        if target.is_file():
            return target

        self._check_disk_space(directory_size(Path(node_modules)))
        temp_path = target.with_name(f"{TEMP_PREFIX}{uuid.uuid4().hex[:12]}.tgz")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            self._write_tarball(Path(node_modules), temp_path)
            self._finalize(temp_path, target)
        except OSError as e:
            self._discard(temp_path)
            raise self._map_write_error(e, f"tree {tree_hash[:12]}") from e
        return target

    def restore_tree(self, tree_hash: str, dest: Path) -> bool:
        """Extract a cached tree into ``dest`` atomically.

        Returns:
            True if the tree was restored, False if it is not cached
        """
        archive = self.tree_path(tree_hash)
        if not archive.is_file():
            return False

        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = staging_path(dest)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(staging, filter="data")
            staging.mkdir(exist_ok=True)
            replace_directory(staging, dest)
        except (tarfile.TarError, OSError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise CacheError(
                f"Cannot restore dependency tree {tree_hash[:12]}: {e}", cause=e
            ) from e
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clean(
        self,
        max_age_days: Optional[float] = None,
        max_size_bytes: Optional[int] = None,
    ) -> CleanReport:
        """Evict old entries, then shrink the cache below a size threshold.

        Eviction is by creation time (oldest first), not by access.

        Args:
            max_age_days: Remove entries older than this (config default)
            max_size_bytes: Then remove oldest entries until total size
                is below this (config default, None = no size limit)

        Returns:
            CleanReport listing removed entries
        """
        max_age_days = self.config.max_age_days if max_age_days is None else max_age_days
        max_size_bytes = (
            self.config.max_size_bytes if max_size_bytes is None else max_size_bytes
        )
        max_age_seconds = max_age_days * 86400 if max_age_days is not None else None
        report = CleanReport()
        context = HookContext(
            options={"max_age_days": max_age_days, "max_size_bytes": max_size_bytes}
        )
        self.hooks.run(HookPoint.PRE_CLEAN, context)

        remaining = []
        for entry in self.list_entries():
            if is_expired(entry.created_at, max_age_seconds):
                self._evict(entry, report)
            else:
                remaining.append(entry)

        if max_size_bytes is not None:
            total = sum(e.size for e in remaining)
            for entry in remaining:
                if total <= max_size_bytes:
                    break
                self._evict(entry, report)
                total -= entry.size

        if max_age_seconds is not None and self.trees_dir.is_dir():
            cutoff = datetime.now(timezone.utc).timestamp() - max_age_seconds
            for archive in self.trees_dir.glob("*/*.tgz"):
                if archive.stat().st_mtime < cutoff:
                    report.freed_bytes += archive.stat().st_size
                    archive.unlink()
                    report.trees_removed += 1

        self._remove_stale_temp()
        logger.info(
            f"Cache clean removed {len(report.removed)} entries, "
            f"{report.trees_removed} trees"
        )
        context.options["report"] = report
        self.hooks.run(HookPoint.POST_CLEAN, context)
        return report

    def verify_all(self) -> Dict[str, List[str]]:
        """Verify every entry, removing those that fail.

        Returns:
            Dict with ``valid`` and ``invalid`` lists of name@version keys
        """
        results: Dict[str, List[str]] = {"valid": [], "invalid": []}
        for entry in self.list_entries():
            if entry.path.exists() and self.verify(entry):
                results["valid"].append(entry.key)
            else:
                logger.warning(f"Removing invalid cache entry {entry.key}")
                self._remove_entry(entry, eviction=True)
                results["invalid"].append(entry.key)
        return results

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Statistics dict
        """
        stats = self.metadata.get_stats()
        stats["cache_dir"] = str(self.root)
        stats["trees"] = (
            sum(1 for _ in self.trees_dir.glob("*/*.tgz")) if self.trees_dir.is_dir() else 0
        )

        total_requests = stats["cache_hits"] + stats["cache_misses"]
        stats["cache_hit_rate"] = (
            stats["cache_hits"] / total_requests if total_requests > 0 else 0.0
        )
        return stats

    def clear_all(self) -> None:
        """Remove every entry and tree."""
        for directory in (self.packages_dir, self.trees_dir):
            if directory.exists():
                shutil.rmtree(directory)
            directory.mkdir(parents=True, exist_ok=True)
        self.metadata.reset()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_disk_space(self, required_bytes: int) -> None:
        """Check if sufficient disk space is available.

        Args:
            required_bytes: Number of bytes needed

        Raises:
            CacheDiskFullError: If insufficient disk space
        """
        try:
            stat = shutil.disk_usage(self.root)
        except OSError as e:
            # Don't fail if we can't check disk space
            logger.warning(f"Could not check disk space: {e}")
            return

        # Require 10% buffer beyond required bytes
        required_with_buffer = int(required_bytes * 1.1)
        if stat.free < required_with_buffer:
            raise CacheDiskFullError(
                f"Insufficient disk space: {stat.free / (1024**3):.2f} GB available, "
                f"{required_with_buffer / (1024**3):.2f} GB required"
            )

    @staticmethod
    def _map_write_error(e: OSError, what: str) -> CacheError:
        if isinstance(e, PermissionError):
            return CachePermissionError(f"Cannot write {what} to cache: {e}", cause=e)
        if e.errno == errno.ENOSPC:
            return CacheDiskFullError(f"Disk full while writing {what} to cache", cause=e)
        logger.error(f"OS error writing {what} to cache: {e}")
        return CacheError(f"Cannot write {what} to cache: {e}", cause=e)

    @staticmethod
    def _write_tarball(source: Path, out_path: Path) -> None:
        with tarfile.open(out_path, "w:gz") as tar:
            for child in sorted(source.iterdir()):
                tar.add(child, arcname=child.name)

    def _finalize(self, temp_path: Path, target: Path) -> None:
        """Rename a finished temp entry into place.

        Losing the race to an identical concurrent writer is fine: the
        target already holds the same content and the temp copy is dropped.
        """
        try:
            os.rename(temp_path, target)
        except OSError as e:
            if target.exists():
                logger.debug(f"Concurrent writer won for {target}, discarding copy")
                self._discard(temp_path)
                return
            raise e

    @staticmethod
    def _discard(path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path, ignore_errors=True)
        elif path.exists() or path.is_symlink():
            path.unlink()

    def _remove_siblings(self, version_dir: Path, keep: Path) -> None:
        for sibling in version_dir.iterdir():
            if sibling != keep and not sibling.name.startswith(TEMP_PREFIX):
                logger.debug(f"Removing superseded cache content {sibling}")
                self._discard(sibling)

    def _remove_entry(self, entry: CacheEntry, eviction: bool = False) -> None:
        version_dir = self.version_dir(entry.name, entry.version)
        if version_dir.exists():
            shutil.rmtree(version_dir, ignore_errors=True)
        self.metadata.remove_entry(entry.name, entry.version, eviction=eviction)
        package_dir = version_dir.parent
        try:
            if package_dir.is_dir() and not any(package_dir.iterdir()):
                package_dir.rmdir()
        except OSError as e:
            logger.debug(f"Could not prune {package_dir}: {e}")

    def _evict(self, entry: CacheEntry, report: CleanReport) -> None:
        self._remove_entry(entry, eviction=True)
        report.removed.append(entry.key)
        report.freed_bytes += entry.size

    def _remove_stale_temp(self, max_age_seconds: float = 3600) -> None:
        cutoff = datetime.now(timezone.utc).timestamp() - max_age_seconds
        for temp in self.root.glob(f"**/{TEMP_PREFIX}*"):
            try:
                if temp.stat().st_mtime < cutoff:
                    self._discard(temp)
            except OSError as e:
                logger.debug(f"Could not remove stale temp {temp}: {e}")

    @staticmethod
    def _link_tree(source: Path, dest: Path, result: MaterializeResult) -> None:
        """Recreate ``source`` at ``dest`` with hardlinks, copying on failure."""
        for root, dirs, files in os.walk(source):
            rel = Path(root).relative_to(source)
            target_dir = dest / rel
            target_dir.mkdir(parents=True, exist_ok=True)

            for name in list(dirs):
                src_dir = Path(root) / name
                if src_dir.is_symlink():
                    os.symlink(os.readlink(src_dir), target_dir / name)
                    dirs.remove(name)

            for name in files:
                src = Path(root) / name
                dst = target_dir / name
                if src.is_symlink():
                    os.symlink(os.readlink(src), dst)
                    continue
                try:
                    os.link(src, dst)
                    result.linked += 1
                except OSError:
                    shutil.copy2(src, dst)
                    result.copied += 1

"""Snapshot manager: whole dependency trees as single archives."""

import logging
import os
import shutil
import tarfile
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

import orjson

from flashcache.errors import FlashError, SnapshotError, wrap_exception
from flashcache.hashing import hash_dependency_tree
from flashcache.lockfile import lockfile_path, parse_lockfile_dependencies
from flashcache.snapshot.archive import (
    ArchiveFormat,
    create_archive,
    extract_archive,
    extract_prefix,
    read_member,
)
from flashcache.snapshot.config import SnapshotConfig
from flashcache.snapshot.fingerprint import Fingerprint, create_fingerprint
from flashcache.utils import (
    NODE_MODULES,
    SNAPSHOT_METADATA_FILE,
    SNAPSHOT_NAME,
    SnapshotRecord,
    atomic_write_bytes,
    now_iso,
    replace_directory,
    staging_path,
)

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """A snapshot archive and its fingerprint."""

    path: Path
    fingerprint: Fingerprint
    format: ArchiveFormat
    size_bytes: int
    package_count: int
    native: bool = False


@dataclass
class RestoreResult:
    """Outcome of restoring a snapshot."""

    path: Path
    snapshot: Path
    duration: float


def sidecar_path(snapshot_path: Path) -> Path:
    """Location of the fingerprint record written next to an archive."""
    return snapshot_path.with_name(snapshot_path.name + ".json")


class SnapshotManager:
    """Creates, validates and restores project snapshots.

    A snapshot archive holds ``.flashpack-metadata.json`` (the fingerprint
    record) and the project's ``node_modules``. A copy of the record is
    written next to the archive so validity checks do not need to open it.

    Args:
        config: Snapshot settings (format, compression level, archiver)
        store: Local cache that receives the dependency tree after creation
        runtime_version: Runtime version string or callable, injected in
            tests; defaults to asking ``node --version``
    """

    def __init__(
        self,
        config: Optional[SnapshotConfig] = None,
        store=None,
        runtime_version: Optional[Union[str, Callable[[], str]]] = None,
    ):
        self.config = config or SnapshotConfig()
        self.store = store
        self.runtime_version = runtime_version

    def snapshot_path(self, project_dir: Union[str, Path]) -> Path:
        """Default snapshot path of a project."""
        return Path(project_dir) / SNAPSHOT_NAME

    def fingerprint(
        self,
        dependencies: Mapping[str, str],
        lockfile: Optional[Union[str, Path]] = None,
    ) -> Fingerprint:
        """Fingerprint a dependency map on this machine."""
        return create_fingerprint(dependencies, lockfile, self.runtime_version)

    def current_fingerprint(
        self,
        project_dir: Union[str, Path],
        dependencies: Optional[Mapping[str, str]] = None,
    ) -> Fingerprint:
        """Fingerprint of the project as it is now.

        Dependencies default to those listed in the project's lockfile.
        """
        if dependencies is None:
            dependencies = parse_lockfile_dependencies(project_dir) or {}
        return self.fingerprint(dependencies, lockfile_path(project_dir))

    def create(
        self,
        project_dir: Union[str, Path],
        dependencies: Optional[Mapping[str, str]] = None,
        output: Optional[Union[str, Path]] = None,
        format: Optional[Union[str, ArchiveFormat]] = None,
        compression_level: Optional[int] = None,
    ) -> Snapshot:
        """Archive the project's node_modules.

        Args:
            project_dir: Project containing node_modules
            dependencies: Resolved dependency map (lockfile when None)
            output: Snapshot path (``<project>/.flashpack`` when None)
            format: Archive format (configured default when None)
            compression_level: 0-9 (configured default when None)

        Returns:
            Snapshot

        Raises:
            SnapshotError: If node_modules is missing or archiving fails
        """
        project_dir = Path(project_dir)
        node_modules = project_dir / NODE_MODULES
        if not node_modules.is_dir():
            raise SnapshotError(
                f"node_modules directory not found in {project_dir}",
                context={"project_dir": str(project_dir)},
            )

        fmt = ArchiveFormat.parse(getattr(format, "value", format)) if format else self.config.format
        level = self.config.compression_level if compression_level is None else compression_level
        snapshot_path = Path(output) if output else self.snapshot_path(project_dir)
        fingerprint = self.current_fingerprint(project_dir, dependencies)

        record = SnapshotRecord(
            fingerprint=fingerprint.to_record(),
            format=fmt.value,
            compression_level=level,
            package_count=len(fingerprint.dependencies),
            created_at=now_iso(),
        )

        start = time.monotonic()
        snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        metadata_file = project_dir / SNAPSHOT_METADATA_FILE
        temp_archive = staging_path(snapshot_path, "tmp")

        try:
            metadata_file.write_bytes(orjson.dumps(record, option=orjson.OPT_INDENT_2))
            native = create_archive(
                project_dir,
                [SNAPSHOT_METADATA_FILE, NODE_MODULES],
                temp_archive,
                fmt,
                level,
                self.config.prefer_native,
            )
            os.replace(temp_archive, snapshot_path)
        except (OSError, ValueError) as e:
            if temp_archive.exists():
                temp_archive.unlink()
            raise wrap_exception(e, "Failed to create snapshot", SnapshotError) from e
        finally:
            metadata_file.unlink(missing_ok=True)

        size = snapshot_path.stat().st_size
        record["size_bytes"] = size
        atomic_write_bytes(
            sidecar_path(snapshot_path), orjson.dumps(record, option=orjson.OPT_INDENT_2)
        )
        logger.info(
            f"Created snapshot at {snapshot_path} ({size} bytes) "
            f"in {time.monotonic() - start:.2f}s"
        )

        if self.store is not None and fingerprint.dependencies:
            tree_hash = hash_dependency_tree(fingerprint.dependencies)
            try:
                self.store.put_tree(tree_hash, node_modules)
            except (FlashError, OSError) as e:
                # the snapshot itself is complete
                logger.warning(f"Could not add dependency tree to cache: {e}")

        return Snapshot(
            path=snapshot_path,
            fingerprint=fingerprint,
            format=fmt,
            size_bytes=size,
            package_count=len(fingerprint.dependencies),
            native=native,
        )

    def read_metadata(self, snapshot_path: Union[str, Path]) -> Optional[SnapshotRecord]:
        """Read a snapshot's record, preferring the sidecar file.

        Returns:
            SnapshotRecord, or None if the snapshot or its record is missing
        """
        snapshot_path = Path(snapshot_path)
        if not snapshot_path.is_file():
            return None

        sidecar = sidecar_path(snapshot_path)
        if sidecar.is_file():
            try:
                return orjson.loads(sidecar.read_bytes())
            except (orjson.JSONDecodeError, OSError) as e:
                logger.debug(f"Ignoring unreadable sidecar {sidecar}: {e}")

        try:
            raw = read_member(snapshot_path, SNAPSHOT_METADATA_FILE)
            return orjson.loads(raw) if raw else None
        except (ValueError, OSError) as e:
            logger.debug(f"Failed to read snapshot metadata from {snapshot_path}: {e}")
            return None

    def read_fingerprint(self, snapshot_path: Union[str, Path]) -> Optional[Fingerprint]:
        record = self.read_metadata(snapshot_path)
        if not record or "fingerprint" not in record:
            return None
        return Fingerprint.from_record(record["fingerprint"])

    def check(
        self,
        project_dir: Union[str, Path],
        dependencies: Optional[Mapping[str, str]] = None,
        snapshot_path: Optional[Union[str, Path]] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Check a project's snapshot against the project's current state.

        Returns:
            (valid, reason) where reason explains an invalid result
        """
        snapshot_path = Path(snapshot_path) if snapshot_path else self.snapshot_path(project_dir)
        if not snapshot_path.is_file():
            return False, f"Snapshot not found at {snapshot_path}"

        stored = self.read_fingerprint(snapshot_path)
        if stored is None:
            return False, "Snapshot has no fingerprint"

        return stored.check(self.current_fingerprint(project_dir, dependencies))

    def is_valid(
        self,
        project_dir: Union[str, Path],
        dependencies: Optional[Mapping[str, str]] = None,
        snapshot_path: Optional[Union[str, Path]] = None,
    ) -> bool:
        """True when the snapshot matches the project on every fingerprint field."""
        valid, reason = self.check(project_dir, dependencies, snapshot_path)
        if not valid:
            logger.debug(f"Snapshot invalid: {reason}")
        return valid

    def restore(
        self,
        project_dir: Union[str, Path],
        snapshot_path: Optional[Union[str, Path]] = None,
    ) -> RestoreResult:
        """Restore node_modules from a snapshot.

        The archive is extracted into a staging directory next to the
        project and swapped into place only after extraction succeeded. A
        failure leaves the existing node_modules untouched.

        Raises:
            SnapshotError: If the snapshot is missing or cannot be extracted
        """
        project_dir = Path(project_dir)
        snapshot_path = Path(snapshot_path) if snapshot_path else self.snapshot_path(project_dir)
        if not snapshot_path.is_file():
            raise SnapshotError(f"Snapshot not found at {snapshot_path}")

        start = time.monotonic()
        target = project_dir / NODE_MODULES
        staging = staging_path(target, "restore")

        try:
            extract_archive(snapshot_path, staging)
            extracted = staging / NODE_MODULES
            if not extracted.is_dir():
                raise SnapshotError(f"Snapshot {snapshot_path} contains no node_modules")
            replace_directory(extracted, target)
        except (OSError, ValueError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise wrap_exception(e, "Failed to restore snapshot", SnapshotError) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        duration = time.monotonic() - start
        logger.info(f"Restored node_modules from snapshot in {duration:.2f}s")
        return RestoreResult(path=target, snapshot=snapshot_path, duration=duration)

    def extract_package(
        self,
        snapshot_path: Union[str, Path],
        name: str,
        dest: Union[str, Path],
    ) -> bool:
        """Restore a single package from a snapshot into ``dest``.

        Returns:
            True if the package was found in the snapshot
        """
        dest = Path(dest)
        staging = staging_path(dest)
        try:
            count = extract_prefix(Path(snapshot_path), f"{NODE_MODULES}/{name}", staging)
            if count == 0:
                return False
            replace_directory(staging, dest)
            return True
        except (OSError, ValueError) as e:
            logger.warning(f"Could not extract {name} from snapshot {snapshot_path}: {e}")
            return False
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def delete(self, snapshot_path: Union[str, Path]) -> bool:
        """Remove a snapshot and its sidecar record."""
        snapshot_path = Path(snapshot_path)
        removed = False
        for path in (snapshot_path, sidecar_path(snapshot_path)):
            if path.is_file():
                path.unlink()
                removed = True
        return removed

    def dependencies(self, snapshot_path: Union[str, Path]) -> Dict[str, str]:
        """Dependency map recorded in a snapshot (empty if unreadable)."""
        fingerprint = self.read_fingerprint(snapshot_path)
        return dict(fingerprint.dependencies) if fingerprint else {}

"""Archive creation and extraction for snapshots.

Creation shells out to the native ``tar``/``zip`` executables when they
are available and falls back to :mod:`tarfile`/:mod:`zipfile`. Both paths
produce standard archives, so either side can read what the other wrote.
Extraction always goes through the Python modules so member paths can be
filtered and zip symlink entries recreated as links.
"""

import logging
import os
import shutil
import stat
import subprocess
import tarfile
import zipfile
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

EXCLUDED_NAMES = (".git",)


class ArchiveFormat(str, Enum):
    TAR = "tar"
    TAR_GZ = "tar.gz"
    ZIP = "zip"

    @classmethod
    def parse(cls, value: str) -> "ArchiveFormat":
        """Parse a format name (``tgz`` is accepted for ``tar.gz``).

        Raises:
            ValueError: For unknown formats
        """
        normalized = value.strip().lower()
        if normalized == "tgz":
            normalized = "tar.gz"
        return cls(normalized)


def detect_format(archive: Path) -> ArchiveFormat:
    """Sniff an archive's format from its contents.

    Raises:
        ValueError: If the file is neither a zip nor a tar archive
    """
    if zipfile.is_zipfile(archive):
        return ArchiveFormat.ZIP
    with open(archive, "rb") as f:
        magic = f.read(2)
    if magic == b"\x1f\x8b":
        return ArchiveFormat.TAR_GZ
    if tarfile.is_tarfile(archive):
        return ArchiveFormat.TAR
    raise ValueError(f"Unrecognized archive format: {archive}")


def _native_command(
    fmt: ArchiveFormat, out_path: Path, members: Sequence[str], level: int
) -> Optional[List[str]]:
    if fmt is ArchiveFormat.ZIP:
        zip_bin = shutil.which("zip")
        if zip_bin is None:
            return None
        excludes = []
        for name in EXCLUDED_NAMES:
            excludes += ["-x", f"*/{name}/*", "-x", f"{name}/*"]
        return [zip_bin, "-r", "-q", "-y", f"-{level}", str(out_path), *members, *excludes]

    tar_bin = shutil.which("tar")
    if tar_bin is None:
        return None
    command = [tar_bin]
    command += [f"--exclude={name}" for name in EXCLUDED_NAMES]
    if fmt is ArchiveFormat.TAR_GZ:
        if shutil.which("gzip") is None:
            return None
        # gzip accepts levels 1-9
        command += ["--use-compress-program", f"gzip -{max(1, level)}"]
    command += ["-cf", str(out_path), *members]
    return command


def _excluded(path: str) -> bool:
    return any(part in EXCLUDED_NAMES for part in Path(path).parts)


def _zip_symlink(zf: zipfile.ZipFile, source: Path, arcname: str) -> None:
    info = zipfile.ZipInfo(arcname)
    # unix host, so the mode in external_attr is honoured on extract
    info.create_system = 3
    info.external_attr = (stat.S_IFLNK | 0o777) << 16
    zf.writestr(info, os.readlink(source))


def _create_python(
    base_dir: Path,
    members: Sequence[str],
    out_path: Path,
    fmt: ArchiveFormat,
    level: int,
) -> None:
    if fmt is ArchiveFormat.ZIP:
        with zipfile.ZipFile(
            out_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=level
        ) as zf:
            for member in members:
                source = base_dir / member
                if source.is_symlink():
                    _zip_symlink(zf, source, member)
                    continue
                if source.is_file():
                    zf.write(source, member)
                    continue
                for root, dirs, files in os.walk(source):
                    # os.walk lists directory links but never descends into them
                    linked = [d for d in dirs if (Path(root) / d).is_symlink()]
                    dirs[:] = sorted(
                        d for d in dirs if d not in EXCLUDED_NAMES and d not in linked
                    )
                    rel_root = Path(root).relative_to(base_dir)
                    zf.write(root, rel_root.as_posix())
                    for name in sorted(files + linked):
                        path = Path(root) / name
                        arcname = (rel_root / name).as_posix()
                        if path.is_symlink():
                            _zip_symlink(zf, path, arcname)
                        else:
                            zf.write(path, arcname)
        return

    mode = "w:gz" if fmt is ArchiveFormat.TAR_GZ else "w"
    kwargs = {"compresslevel": level} if fmt is ArchiveFormat.TAR_GZ else {}
    with tarfile.open(out_path, mode, **kwargs) as tar:
        for member in members:
            tar.add(
                base_dir / member,
                arcname=member,
                filter=lambda info: None if _excluded(info.name) else info,
            )


def create_archive(
    base_dir: Path,
    members: Sequence[str],
    out_path: Path,
    fmt: ArchiveFormat = ArchiveFormat.TAR_GZ,
    compression_level: int = 6,
    prefer_native: bool = True,
) -> bool:
    """Archive ``members`` (paths relative to ``base_dir``) into ``out_path``.

    Args:
        base_dir: Directory the member paths are relative to
        members: Files or directories to include
        out_path: Archive to write (replaced if it exists)
        fmt: Archive format
        compression_level: 0-9, ignored for plain tar
        prefer_native: Try the native archiver first

    Returns:
        True if the native archiver produced the archive, False if the
        Python fallback did
    """
    base_dir = Path(base_dir)
    out_path = Path(out_path).absolute()
    compression_level = min(9, max(0, int(compression_level)))
    if out_path.exists():
        out_path.unlink()

    if prefer_native:
        command = _native_command(fmt, out_path, members, compression_level)
        if command is not None:
            try:
                subprocess.run(command, cwd=base_dir, check=True, capture_output=True)
                return True
            except (subprocess.CalledProcessError, OSError) as e:
                stderr = getattr(e, "stderr", b"") or b""
                logger.warning(
                    f"Native archiver failed, using Python fallback: {e} "
                    f"{stderr.decode(errors='replace').strip()}"
                )
                if out_path.exists():
                    out_path.unlink()

    _create_python(base_dir, members, out_path, fmt, compression_level)
    return False


def _contained(root: Path, path: Path) -> bool:
    resolved = Path(os.path.normpath(path.parent.resolve() / path.name))
    return resolved.is_relative_to(root)


def _extract_zip_member(zf: zipfile.ZipFile, info: zipfile.ZipInfo, target: Path, root: Path) -> None:
    """Write one zip member to ``target``, recreating symlink entries as links.

    Raises:
        ValueError: If the member or a link target escapes ``root``
    """
    if not _contained(root, target):
        raise ValueError(f"Archive member escapes destination: {info.filename}")

    if stat.S_ISLNK(info.external_attr >> 16):
        link = zf.read(info).decode("utf-8")
        if os.path.isabs(link) or not _contained(root, target.parent / link):
            raise ValueError(f"Archive link escapes destination: {info.filename} -> {link}")
        target.parent.mkdir(parents=True, exist_ok=True)
        if os.path.lexists(target):
            target.unlink()
        os.symlink(link, target)
        return

    if info.is_dir():
        target.mkdir(parents=True, exist_ok=True)
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    with zf.open(info) as src, open(target, "wb") as out:
        shutil.copyfileobj(src, out)


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract an archive of any supported format into ``dest``."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    if detect_format(archive) is ArchiveFormat.ZIP:
        root = dest.resolve()
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                _extract_zip_member(zf, info, dest / info.filename, root)
        return

    with tarfile.open(archive, "r:*") as tar:
        tar.extractall(dest, filter="data")


def read_member(archive: Path, member: str) -> Optional[bytes]:
    """Read a single member's bytes, or None if it is absent."""
    if detect_format(archive) is ArchiveFormat.ZIP:
        with zipfile.ZipFile(archive) as zf:
            try:
                return zf.read(member)
            except KeyError:
                return None

    with tarfile.open(archive, "r:*") as tar:
        for candidate in (member, f"./{member}"):
            try:
                extracted = tar.extractfile(candidate)
            except KeyError:
                continue
            if extracted is not None:
                return extracted.read()
    return None


def extract_prefix(archive: Path, prefix: str, dest: Path) -> int:
    """Extract the members under ``prefix`` into ``dest`` with the prefix stripped.

    Returns:
        Number of files extracted
    """
    prefix = prefix.strip("/") + "/"
    dest = Path(dest)
    count = 0

    if detect_format(archive) is ArchiveFormat.ZIP:
        root = dest.resolve()
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                name = info.filename.removeprefix("./")
                if not name.startswith(prefix) or info.is_dir():
                    continue
                _extract_zip_member(zf, info, dest / name[len(prefix):], root)
                if not stat.S_ISLNK(info.external_attr >> 16):
                    count += 1
        return count

    with tarfile.open(archive, "r:*") as tar:
        selected = []
        for info in tar.getmembers():
            name = info.name.removeprefix("./")
            if name.startswith(prefix) and len(name) > len(prefix):
                info.name = name[len(prefix):]
                selected.append(info)
        tar.extractall(dest, members=selected, filter="data")
        count = sum(1 for info in selected if info.isfile())
    return count

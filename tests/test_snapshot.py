"""Tests for snapshot fingerprints, creation and restore."""

import json
import os
import shutil
import stat
import zipfile

import pytest

from flashcache.errors import SnapshotError
from flashcache.hashing import hash_dependency_tree
from flashcache.snapshot import (
    ArchiveFormat,
    Fingerprint,
    SnapshotConfig,
    SnapshotManager,
    create_fingerprint,
    is_valid,
)
from flashcache.snapshot.archive import (
    create_archive,
    detect_format,
    extract_archive,
    extract_prefix,
    read_member,
)
from flashcache.snapshot.fingerprint import current_arch, current_platform, major_version

from conftest import write_npm_lockfile

DEPS = {"lodash": "4.17.21", "chalk": "4.1.2"}


@pytest.fixture
def installed_project(project_dir, make_package):
    """Project with a lockfile and an installed node_modules."""
    write_npm_lockfile(project_dir, DEPS)
    for name, version in DEPS.items():
        shutil.copytree(make_package(name, version), project_dir / "node_modules" / name)
    (project_dir / ".git").mkdir()
    (project_dir / ".git" / "HEAD").write_text("ref: refs/heads/main")
    return project_dir


@pytest.fixture
def manager():
    return SnapshotManager(SnapshotConfig(prefer_native=False), runtime_version="v20.11.1")


class TestFingerprint:
    """Test fingerprint comparison."""

    def _fingerprint(self, **overrides):
        values = dict(
            dependencies=dict(DEPS),
            lockfile_hash="abc",
            runtime_version="v20.11.1",
            platform="linux",
            arch="x64",
        )
        values.update(overrides)
        return Fingerprint(**values)

    def test_identical_is_valid(self):
        assert self._fingerprint().check(self._fingerprint()) == (True, None)

    def test_timestamp_ignored(self):
        assert is_valid(self._fingerprint(timestamp=1), self._fingerprint(timestamp=2))

    def test_runtime_minor_change_is_valid(self):
        assert is_valid(self._fingerprint(), self._fingerprint(runtime_version="v20.12.0"))

    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"dependencies": {"lodash": "4.17.20", "chalk": "4.1.2"}}, "Dependencies"),
            ({"lockfile_hash": "def"}, "Lockfile"),
            ({"runtime_version": "v18.19.0"}, "Runtime"),
            ({"platform": "darwin"}, "Platform"),
            ({"arch": "arm64"}, "Platform"),
        ],
    )
    def test_any_identifying_change_invalidates(self, overrides, reason):
        valid, message = self._fingerprint().check(self._fingerprint(**overrides))
        assert valid is False
        assert message.startswith(reason)

    def test_json_round_trip(self):
        fingerprint = self._fingerprint()
        assert Fingerprint.from_json(fingerprint.to_json()) == fingerprint

    def test_create_fingerprint(self, installed_project):
        fingerprint = create_fingerprint(
            DEPS, installed_project / "package-lock.json", runtime_version=lambda: "v22.1.0"
        )
        assert fingerprint.runtime_version == "v22.1.0"
        assert fingerprint.lockfile_hash is not None
        assert fingerprint.platform == current_platform()
        assert fingerprint.arch == current_arch()

    def test_major_version(self):
        assert major_version("v20.11.1") == "v20"


class TestCreate:
    """Test snapshot creation."""

    @pytest.mark.parametrize("fmt", ["tar", "tar.gz", "zip"])
    def test_create_each_format(self, manager, installed_project, fmt):
        snapshot = manager.create(installed_project, format=fmt)

        assert snapshot.path == installed_project / ".flashpack"
        assert snapshot.format is ArchiveFormat(fmt)
        assert detect_format(snapshot.path) is ArchiveFormat(fmt)
        assert snapshot.package_count == 2
        assert snapshot.fingerprint.dependencies == DEPS
        assert not (installed_project / ".flashpack-metadata.json").exists()

    def test_archive_holds_metadata_and_excludes_git(self, manager, installed_project, tmp_path):
        snapshot = manager.create(installed_project)

        record = json.loads(read_member(snapshot.path, ".flashpack-metadata.json"))
        assert record["fingerprint"]["dependencies"] == DEPS
        assert read_member(snapshot.path, ".git/HEAD") is None
        assert extract_prefix(snapshot.path, "node_modules/lodash", tmp_path / "lodash") == 3

    def test_native_archiver_output_is_readable(self, installed_project):
        manager = SnapshotManager(SnapshotConfig(prefer_native=True), runtime_version="v20.11.1")
        snapshot = manager.create(installed_project)
        assert manager.read_fingerprint(snapshot.path).dependencies == DEPS

    def test_missing_node_modules(self, manager, project_dir):
        with pytest.raises(SnapshotError, match="node_modules"):
            manager.create(project_dir, dependencies=DEPS)

    def test_create_archives_tree_in_cache(self, installed_project, store):
        manager = SnapshotManager(
            SnapshotConfig(prefer_native=False), store=store, runtime_version="v20.11.1"
        )
        manager.create(installed_project)
        assert store.has_tree(hash_dependency_tree(DEPS))


class TestValidity:
    """Test snapshot validity against the project state."""

    def test_valid_after_create(self, manager, installed_project):
        manager.create(installed_project)
        assert manager.check(installed_project) == (True, None)

    def test_lockfile_change_invalidates(self, manager, installed_project):
        manager.create(installed_project)
        write_npm_lockfile(installed_project, {"lodash": "4.17.21", "chalk": "4.1.2", "ms": "2.1.3"})

        valid, reason = manager.check(installed_project)

        assert not valid
        assert reason == "Dependencies have changed"

    def test_runtime_major_change_invalidates(self, manager, installed_project):
        manager.create(installed_project)
        upgraded = SnapshotManager(SnapshotConfig(prefer_native=False), runtime_version="v22.0.0")
        assert not upgraded.is_valid(installed_project)

    def test_missing_snapshot(self, manager, project_dir):
        valid, reason = manager.check(project_dir)
        assert not valid
        assert "not found" in reason

    def test_sidecar_not_required(self, manager, installed_project):
        snapshot = manager.create(installed_project)
        snapshot.path.with_name(".flashpack.json").unlink()
        assert manager.is_valid(installed_project)


class TestRestore:
    """Test restoring node_modules."""

    def test_restore_replaces_node_modules(self, manager, installed_project):
        manager.create(installed_project)
        shutil.rmtree(installed_project / "node_modules" / "chalk")
        (installed_project / "node_modules" / "junk.js").write_text("junk")

        result = manager.restore(installed_project)

        node_modules = installed_project / "node_modules"
        assert result.path == node_modules
        assert (node_modules / "chalk" / "package.json").exists()
        assert not (node_modules / "junk.js").exists()
        leftovers = [p.name for p in installed_project.iterdir() if p.name.startswith(".node_modules")]
        assert leftovers == []

    def test_failed_restore_leaves_node_modules(self, manager, installed_project):
        """A corrupt archive never touches the existing install."""
        snapshot = manager.create(installed_project)
        snapshot.path.write_bytes(b"\x1f\x8b" + b"garbage" * 10)

        with pytest.raises(SnapshotError):
            manager.restore(installed_project)

        assert (installed_project / "node_modules" / "lodash" / "index.js").exists()

    def test_restore_missing(self, manager, project_dir):
        with pytest.raises(SnapshotError, match="not found"):
            manager.restore(project_dir)

    def test_extract_single_package(self, manager, installed_project, tmp_path):
        snapshot = manager.create(installed_project)
        dest = tmp_path / "out" / "lodash"

        assert manager.extract_package(snapshot.path, "lodash", dest)
        assert json.loads((dest / "package.json").read_text())["name"] == "lodash"
        assert not manager.extract_package(snapshot.path, "left-pad", tmp_path / "out" / "left-pad")

    def test_delete(self, manager, installed_project):
        snapshot = manager.create(installed_project)
        assert manager.delete(snapshot.path)
        assert not snapshot.path.exists()
        assert manager.dependencies(snapshot.path) == {}


@pytest.fixture
def linked_tree(tmp_path):
    """node_modules holding a .bin file link and an aliased package directory."""
    base = tmp_path / "linked"
    modules = base / "node_modules"
    (modules / "lodash").mkdir(parents=True)
    (modules / "lodash" / "index.js").write_text("module.exports = 'lodash';\n")
    (modules / ".bin").mkdir()
    (modules / ".bin" / "lodash").symlink_to("../lodash/index.js")
    (modules / "lodash-alias").symlink_to("lodash")
    return base


class TestArchiveLinks:
    """Test that symlinks survive an archive round trip."""

    @pytest.mark.parametrize("native", [False, True])
    @pytest.mark.parametrize("fmt", list(ArchiveFormat))
    def test_links_round_trip(self, linked_tree, tmp_path, fmt, native):
        archive = tmp_path / "snapshot"
        used_native = create_archive(
            linked_tree, ["node_modules"], archive, fmt, prefer_native=native
        )
        if native and not used_native:
            pytest.skip(f"no native archiver for {fmt.value}")

        dest = tmp_path / "out"
        extract_archive(archive, dest)

        modules = dest / "node_modules"
        assert (modules / ".bin" / "lodash").is_symlink()
        assert os.readlink(modules / ".bin" / "lodash") == "../lodash/index.js"
        assert (modules / ".bin" / "lodash").read_text() == "module.exports = 'lodash';\n"
        assert (modules / "lodash-alias").is_symlink()
        assert (modules / "lodash-alias" / "index.js").is_file()

    def test_zip_restore_keeps_links(self, manager, installed_project):
        modules = installed_project / "node_modules"
        (modules / ".bin").mkdir()
        (modules / ".bin" / "lodash").symlink_to("../lodash/index.js")
        (modules / "lodash-alias").symlink_to("lodash")
        manager.create(installed_project, format="zip")
        shutil.rmtree(modules)

        manager.restore(installed_project)

        assert os.readlink(modules / ".bin" / "lodash") == "../lodash/index.js"
        assert (modules / "lodash-alias" / "package.json").is_file()

    @pytest.mark.parametrize("link", ["../../outside", "/etc/passwd"])
    def test_zip_link_outside_destination_rejected(self, tmp_path, link):
        archive = tmp_path / "bad.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            info = zipfile.ZipInfo("node_modules/bad")
            info.create_system = 3
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(info, link)

        with pytest.raises(ValueError, match="escapes"):
            extract_archive(archive, tmp_path / "out")
        assert not os.path.lexists(tmp_path / "out" / "node_modules" / "bad")

    def test_extract_prefix_keeps_links(self, linked_tree, tmp_path):
        archive = tmp_path / "snapshot.zip"
        create_archive(linked_tree, ["node_modules"], archive, ArchiveFormat.ZIP, prefer_native=False)

        dest = tmp_path / "modules"
        count = extract_prefix(archive, "node_modules", dest)

        assert count == 1
        assert os.readlink(dest / ".bin" / "lodash") == "../lodash/index.js"
        assert (dest / "lodash-alias" / "index.js").is_file()


class TestConfig:
    """Test snapshot configuration validation."""

    def test_invalid_values_fall_back(self):
        with pytest.warns(UserWarning):
            config = SnapshotConfig(format="rar", compression_level=12)
        assert config.format is ArchiveFormat.TAR_GZ

    def test_tgz_alias(self):
        assert SnapshotConfig(format="tgz").format is ArchiveFormat.TAR_GZ

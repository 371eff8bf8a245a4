"""Tests for the cloud sync engine against an in-memory provider."""

import os
import time
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from flashcache.cache import CacheConfig, LocalCacheStore
from flashcache.cloud import (
    CloudConfig,
    CloudSync,
    MultipartProvider,
    SyncAction,
    SyncDirection,
    SyncPolicy,
    TeamAccess,
    UnavailableProvider,
)
from flashcache.cloud.provider import CloudFileMetadata, CloudProvider
from flashcache.errors import CloudError, ErrorCategory, ProviderUnavailableError
from flashcache.hashing import hash_dependency_tree
from flashcache.hooks import HookPoint, HookRegistry
from flashcache.scheduler import AdaptiveScheduler, SchedulerConfig

from conftest import write_npm_lockfile


class MemoryProvider(CloudProvider):
    """Provider keeping objects in a dict of full key -> (bytes, mtime)."""

    def __init__(self, prefix: str = ""):
        super().__init__(prefix)
        self.objects = {}
        self.uploads: List[str] = []
        self.fail_uploads = 0

    def init(self) -> None:
        pass

    def upload_file(self, local_path, key: str) -> None:
        if self.fail_uploads:
            self.fail_uploads -= 1
            raise TimeoutError("upload timed out")
        self.uploads.append(key)
        self.objects[self.full_key(key)] = (Path(local_path).read_bytes(), time.time())

    def download_file(self, key: str, local_path) -> None:
        full_key = self.full_key(key)
        if full_key not in self.objects:
            raise CloudError(f"Remote object not found: {key}", ErrorCategory.CLOUD_RESOURCE)
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_bytes(self.objects[full_key][0])

    def file_exists(self, key: str) -> bool:
        return self.full_key(key) in self.objects

    def list_files(self, prefix: str = "") -> List[str]:
        full_prefix = self.full_key(prefix)
        return sorted(self.logical_key(k) for k in self.objects if k.startswith(full_prefix))

    def delete_file(self, key: str) -> None:
        self.objects.pop(self.full_key(key), None)

    def get_metadata(self, key: str) -> Optional[CloudFileMetadata]:
        item = self.objects.get(self.full_key(key))
        if item is None:
            return None
        return CloudFileMetadata(last_modified=item[1], size=len(item[0]))

    def set_mtime(self, key: str, mtime: float) -> None:
        data, _ = self.objects[self.full_key(key)]
        self.objects[self.full_key(key)] = (data, mtime)


class MemoryMultipartProvider(MemoryProvider, MultipartProvider):
    """In-memory provider with native multipart uploads."""

    def __init__(self, prefix: str = ""):
        super().__init__(prefix)
        self.pending = {}
        self.completed: List[Tuple[str, int]] = []

    def init_multipart_upload(self, key: str) -> str:
        self.pending[key] = {}
        return key

    def upload_part(self, key, upload_id, part_number, data) -> str:
        self.pending[upload_id][part_number] = data
        return f"etag-{part_number}"

    def complete_multipart_upload(self, key, upload_id, parts) -> None:
        data = b"".join(self.pending.pop(upload_id)[n] for n, _ in sorted(parts))
        self.objects[self.full_key(key)] = (data, time.time())
        self.completed.append((key, len(parts)))

    def abort_multipart_upload(self, key, upload_id) -> None:
        self.pending.pop(upload_id, None)

    def download_range(self, key, start, end) -> bytes:
        return self.objects[self.full_key(key)][0][start : end + 1]


def make_sync(store, provider, **config_values):
    scheduler = AdaptiveScheduler(
        SchedulerConfig(base_concurrency=2), memory_probe=lambda: (1, 100), sleep=lambda _: None
    )
    config = CloudConfig(enabled=True, **config_values)
    return CloudSync(config, store, provider, scheduler=scheduler, sleep=lambda _: None)


@pytest.fixture
def provider():
    return MemoryProvider(prefix="shared")


@pytest.fixture
def other_store(tmp_path):
    """A second machine's cache."""
    return LocalCacheStore(CacheConfig(cache_dir=tmp_path / "other-cache"))


class TestKeys:
    """Test remote key layout."""

    def test_package_and_tree_keys(self, store, provider):
        sync = make_sync(store, provider)
        assert sync.package_key("@babel/core", "7.23.2") == "packages/@babel/core/7.23.2.tgz"
        assert sync.tree_key("abcdef") == "trees/ab/abcdef.tgz"

    def test_team_namespace(self, store, provider):
        sync = make_sync(store, provider, team_id="frontend")
        assert sync.package_key("lodash", "4.17.21") == "teams/frontend/packages/lodash/4.17.21.tgz"

    def test_parse_package_key(self, store, provider):
        sync = make_sync(store, provider)
        assert sync.parse_package_key("packages/@babel/core/7.23.2.tgz") == ("@babel/core", "7.23.2")
        assert sync.parse_package_key("packages/lodash/4.17.21.tgz.manifest.json") == ("lodash", "4.17.21")
        assert sync.parse_package_key("packages/lodash/4.17.21.tgz.part0001") is None
        assert sync.parse_package_key("trees/ab/abcdef.tgz") is None


class TestPackageSync:
    """Test reconciling single packages."""

    def test_upload_if_missing_round_trip(self, store, other_store, provider, make_package):
        original = store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)

        outcome = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)

        assert outcome.action is SyncAction.UPLOADED
        assert "shared/packages/lodash/4.17.21.tgz" in provider.objects

        downloaded = make_sync(other_store, provider).sync_package(
            "lodash", "4.17.21", SyncPolicy.DOWNLOAD_IF_MISSING
        )
        assert downloaded.action is SyncAction.DOWNLOADED
        assert other_store.get_entry("lodash", "4.17.21").integrity == original.integrity

    def test_sync_is_idempotent(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)

        sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)
        again = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)

        assert again.action is SyncAction.SKIPPED
        assert len(provider.uploads) == 1

    def test_nothing_to_transfer(self, store, provider):
        outcome = make_sync(store, provider).sync_package("lodash", "4.17.21", SyncPolicy.NEWEST)
        assert outcome.action is SyncAction.NOT_PERFORMED
        assert outcome.ok

    def test_newest_aligned_copies_are_in_sync(self, store, provider, make_package):
        """After a transfer both copies carry the same modification time."""
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)

        assert sync.sync_package("lodash", "4.17.21", SyncPolicy.NEWEST).action is SyncAction.UPLOADED
        assert sync.sync_package("lodash", "4.17.21", SyncPolicy.NEWEST).action is SyncAction.SKIPPED

    def test_newest_remote_newer_downloads(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)
        sync.upload_package("lodash", "4.17.21")
        key = sync.package_key("lodash", "4.17.21")
        provider.set_mtime(key, time.time() + 3600)

        assert sync.sync_package("lodash", "4.17.21", SyncPolicy.NEWEST).action is SyncAction.DOWNLOADED
        local_mtime = store.entry_mtime("lodash", "4.17.21")
        assert abs(local_mtime - provider.objects[f"shared/{key}"][1]) < 0.001

    def test_newest_local_newer_uploads(self, store, provider, make_package):
        entry = store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)
        sync.upload_package("lodash", "4.17.21")
        future = time.time() + 3600
        os.utime(entry.path, (future, future))

        assert sync.sync_package("lodash", "4.17.21", SyncPolicy.NEWEST).action is SyncAction.UPLOADED
        assert len(provider.uploads) == 2

    def test_default_policy_from_config(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider, sync_policy="always-upload")
        sync.sync_package("lodash", "4.17.21")
        sync.sync_package("lodash", "4.17.21")
        assert len(provider.uploads) == 2

    def test_transient_failures_are_retried(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        provider.fail_uploads = 2

        outcome = make_sync(store, provider).sync_package(
            "lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING
        )

        assert outcome.action is SyncAction.UPLOADED

    def test_exhausted_retries_fail_the_object(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        provider.fail_uploads = 10

        outcome = make_sync(store, provider).sync_package(
            "lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING
        )

        assert outcome.action is SyncAction.FAILED
        assert outcome.error.category is ErrorCategory.NETWORK_TIMEOUT


class TestChunking:
    """Test transfers above the chunk threshold."""

    @pytest.fixture(autouse=True)
    def small_chunks(self, monkeypatch):
        monkeypatch.setattr("flashcache.cloud.sync.CHUNK_THRESHOLD", 100)
        monkeypatch.setattr("flashcache.cloud.sync.CHUNK_SIZE", 64)

    def test_part_objects_without_multipart(self, store, other_store, provider, make_package):
        original = store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)

        assert sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING).ok

        keys = provider.list_files("packages/lodash/")
        assert "packages/lodash/4.17.21.tgz.manifest.json" in keys
        assert "packages/lodash/4.17.21.tgz.part0001" in keys
        assert "packages/lodash/4.17.21.tgz" not in keys
        assert sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING).action is SyncAction.SKIPPED

        other = make_sync(other_store, provider)
        assert other.remote_packages() == [("lodash", "4.17.21")]
        assert other.sync_package("lodash", "4.17.21", SyncPolicy.DOWNLOAD_IF_MISSING).ok
        assert other_store.get_entry("lodash", "4.17.21").integrity == original.integrity

    def test_native_multipart(self, store, other_store, make_package):
        provider = MemoryMultipartProvider()
        original = store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))

        make_sync(store, provider).upload_package("lodash", "4.17.21")

        key, parts = provider.completed[0]
        assert key == "packages/lodash/4.17.21.tgz"
        assert parts > 1
        make_sync(other_store, provider).download_package("lodash", "4.17.21")
        assert other_store.get_entry("lodash", "4.17.21").integrity == original.integrity


class TestTrees:
    """Test dependency-tree sync."""

    def test_tree_round_trip(self, store, other_store, provider, make_package, project_dir):
        deps = {"lodash": "4.17.21"}
        node_modules = project_dir / "node_modules"
        node_modules.mkdir()
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        store.materialize("lodash", "4.17.21", node_modules / "lodash")
        store.put_tree(hash_dependency_tree(deps), node_modules)

        assert make_sync(store, provider).sync_tree(deps, SyncPolicy.UPLOAD_IF_MISSING).action is SyncAction.UPLOADED
        outcome = make_sync(other_store, provider).sync_tree(deps, SyncPolicy.DOWNLOAD_IF_MISSING)

        assert outcome.action is SyncAction.DOWNLOADED
        assert other_store.has_tree(hash_dependency_tree(deps))


class TestSyncCache:
    """Test whole-cache reconciliation."""

    def test_both_directions(self, store, other_store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        other_store.put("chalk", "4.1.2", make_package("chalk", "4.1.2"))
        make_sync(other_store, provider).sync_cache(SyncDirection.UPLOAD)

        report = make_sync(store, provider).sync_cache(SyncDirection.BOTH)

        assert report.uploaded == 1
        assert report.downloaded == 1
        assert report.failed == 0
        assert store.get_entry("chalk", "4.1.2") is not None

        again = make_sync(store, provider).sync_cache(SyncDirection.BOTH)
        assert again.uploaded == again.downloaded == 0
        assert again.skipped == 2

    def test_force_upload(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider)
        sync.sync_cache(SyncDirection.UPLOAD)

        report = sync.sync_cache(SyncDirection.UPLOAD, force=True)

        assert report.uploaded == 1
        assert len(provider.uploads) == 2

    def test_download_only_leaves_remote_untouched(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        report = make_sync(store, provider).sync_cache(SyncDirection.DOWNLOAD)
        assert report.uploaded == 0
        assert provider.objects == {}

    def test_runs_sync_hooks(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        hooks = HookRegistry()
        seen = []
        hooks.register(HookPoint.PRE_SYNC, lambda ctx: seen.append(ctx.options["direction"]))
        hooks.register(HookPoint.POST_SYNC, lambda ctx: seen.append(ctx.options["report"].uploaded))
        sync = CloudSync(CloudConfig(enabled=True), store, provider, sleep=lambda _: None, hooks=hooks)

        sync.sync_cache(SyncDirection.UPLOAD)

        assert seen == ["upload", 1]

    def test_summary(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        report = make_sync(store, provider).sync_cache()
        assert report.summary() == {
            "uploaded": 1,
            "downloaded": 0,
            "skipped": 0,
            "failed": 0,
            "denied": 0,
        }


class TestLockfileInvalidation:
    """Test remote invalidation on lockfile changes."""

    def test_changed_lockfile_forces_upload(self, store, provider, make_package, project_dir):
        write_npm_lockfile(project_dir, {"lodash": "4.17.21"})
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(
            store, provider, invalidate_on_lockfile_change=True, project_dir=project_dir
        )

        first = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)
        second = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)
        write_npm_lockfile(project_dir, {"lodash": "4.17.21", "chalk": "4.1.2"})
        third = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)

        assert [first.action, second.action, third.action] == [
            SyncAction.UPLOADED,
            SyncAction.SKIPPED,
            SyncAction.UPLOADED,
        ]
        assert (store.root / "cloud-state.json").is_file()

    def test_disabled_by_default(self, store, provider, make_package, project_dir):
        write_npm_lockfile(project_dir, {"lodash": "4.17.21"})
        sync = make_sync(store, provider, project_dir=project_dir)
        assert sync.refresh_lockfile_state() is False


class TestAccessControl:
    """Test team permission enforcement."""

    def test_read_only_cannot_upload(self, store, provider, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        sync = make_sync(store, provider, team_id="t1", team_access=TeamAccess(level="read"))

        outcome = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)

        assert outcome.action is SyncAction.DENIED
        assert not outcome.ok
        assert provider.objects == {}

    def test_upload_only_sync_denied(self, store, provider):
        sync = make_sync(store, provider, team_id="t1", team_access=TeamAccess(level="read"))
        report = sync.sync_cache(SyncDirection.UPLOAD)
        assert report.denied == 1
        assert len(report.outcomes) == 1

    def test_both_degrades_to_download(self, store, provider, make_package):
        writer = LocalCacheStore(CacheConfig(cache_dir=store.root.parent / "writer"))
        writer.put("chalk", "4.1.2", make_package("chalk", "4.1.2"))
        make_sync(writer, provider, team_id="t1").sync_cache(SyncDirection.UPLOAD)
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        reader = make_sync(store, provider, team_id="t1", team_access=TeamAccess(level="read"))

        report = reader.sync_cache(SyncDirection.BOTH)

        assert report.direction is SyncDirection.DOWNLOAD
        assert report.downloaded == 1
        assert report.uploaded == 0
        assert "shared/teams/t1/packages/lodash/4.17.21.tgz" not in provider.objects

    def test_restricted_team_without_token(self, store, provider):
        access = TeamAccess(level="admin", restrict_to_team=True)
        sync = make_sync(store, provider, team_id="t1", team_access=access)
        assert sync.sync_cache(SyncDirection.BOTH).denied == 1


class TestUnavailableProvider:
    """Test behavior when the backend could not be initialized."""

    def test_operations_fail_per_object(self, store, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        provider = UnavailableProvider("no credentials", cause=CloudError("boom"))
        sync = make_sync(store, provider)

        outcome = sync.sync_package("lodash", "4.17.21", SyncPolicy.UPLOAD_IF_MISSING)
        assert outcome.action is SyncAction.FAILED
        assert isinstance(outcome.error, ProviderUnavailableError)

        report = sync.sync_cache()
        assert report.failed == 2  # the listing and the package

    def test_create_with_bad_config_degrades(self, store):
        config = CloudConfig(enabled=True, provider={"type": "nowhere", "bucket": "b"})
        sync = CloudSync.create(config, store)
        assert isinstance(sync.provider, UnavailableProvider)

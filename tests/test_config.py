"""Tests for configuration loading."""

import json
from pathlib import Path

import pytest

from flashcache.cache import CacheConfig
from flashcache.cloud import CloudConfig, SyncPolicy
from flashcache.cloud.team import AccessLevel
from flashcache.config import FlashConfig
from flashcache.scheduler import SchedulerConfig
from flashcache.snapshot import SnapshotConfig
from flashcache.snapshot.archive import ArchiveFormat


class TestFlashConfig:
    """Test file round trips and defaults."""

    def test_defaults(self):
        config = FlashConfig()
        assert config.offline is False
        assert config.cloud.enabled is False
        assert config.snapshot.format is ArchiveFormat.TAR_GZ
        assert config.cache.max_age_days == 30

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "config.json"
        config = FlashConfig(
            cache=CacheConfig(cache_dir=tmp_path / "cache", compress=True),
            scheduler=SchedulerConfig(base_concurrency=6),
            snapshot=SnapshotConfig(format="zip", compression_level=3),
            cloud=CloudConfig(
                enabled=True,
                provider={"type": "s3", "bucket": "b", "credentials": {"access_key_id": "AK"}},
                sync_policy="download-if-missing",
                team_id="frontend",
                team_access={"level": "write"},
            ),
            offline=True,
        )

        config.save(path)
        loaded = FlashConfig.load(path)

        assert loaded.cache.cache_dir == tmp_path / "cache"
        assert loaded.cache.compress is True
        assert loaded.scheduler.base_concurrency == 6
        assert loaded.snapshot.format is ArchiveFormat.ZIP
        assert loaded.snapshot.compression_level == 3
        assert loaded.cloud.provider.bucket == "b"
        assert loaded.cloud.sync_policy is SyncPolicy.DOWNLOAD_IF_MISSING
        assert loaded.cloud.team_access.level is AccessLevel.WRITE
        assert loaded.offline is True

    def test_credentials_are_not_saved(self, tmp_path):
        path = tmp_path / "config.json"
        FlashConfig(cloud=CloudConfig(provider={"type": "s3", "credentials": {"secret_access_key": "SK"}})).save(path)
        assert "SK" not in path.read_text()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert FlashConfig.load(tmp_path / "nope.json") == FlashConfig()

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert FlashConfig.load(path) == FlashConfig()

    def test_invalid_values_degrade(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"snapshot": {"format": "rar", "compression_level": 42}}))

        with pytest.warns(UserWarning):
            config = FlashConfig.load(path)

        assert config.snapshot.format is ArchiveFormat.TAR_GZ
        assert config.snapshot.compression_level == 6


class TestFromEnv:
    """Test FLASHCACHE_* environment variables."""

    def test_reads_all_sections(self):
        environ = {
            "FLASHCACHE_OFFLINE": "true",
            "FLASHCACHE_CONCURRENCY": "4",
            "FLASHCACHE_MEMORY_LIMIT": "50",
            "FLASHCACHE_SNAPSHOT_FORMAT": "tgz",
            "FLASHCACHE_COMPRESSION_LEVEL": "9",
            "FLASHCACHE_CACHE_DIR": "/tmp/flash",
            "FLASHCACHE_COMPRESS": "yes",
            "FLASHCACHE_CLOUD_PROVIDER": "GCS",
            "FLASHCACHE_CLOUD_BUCKET": "team-cache",
            "FLASHCACHE_SYNC_POLICY": "newest",
            "FLASHCACHE_TEAM_ID": "frontend",
            "FLASHCACHE_TEAM_ACCESS_LEVEL": "admin",
            "FLASHCACHE_INVALIDATE_ON_LOCKFILE_CHANGE": "1",
        }

        config = FlashConfig.from_env(environ)

        assert config.offline is True
        assert config.scheduler.base_concurrency == 4
        assert config.scheduler.memory_limit_percent == 50.0
        assert config.snapshot.format is ArchiveFormat.TAR_GZ
        assert config.snapshot.compression_level == 9
        assert config.cache.cache_dir == Path("/tmp/flash")
        assert config.cache.compress is True
        assert config.cloud.enabled is True
        assert config.cloud.provider.type == "gcs"
        assert config.cloud.provider.bucket == "team-cache"
        assert config.cloud.team_access.level is AccessLevel.ADMIN
        assert config.cloud.invalidate_on_lockfile_change is True

    def test_empty_environment(self):
        config = FlashConfig.from_env({})
        assert config.offline is False
        assert config.cloud.enabled is False
        assert config.cloud.team_access is None

    @pytest.mark.parametrize(
        "name, value",
        [
            ("FLASHCACHE_CONCURRENCY", "0"),
            ("FLASHCACHE_MEMORY_LIMIT", "150"),
            ("FLASHCACHE_COMPRESSION_LEVEL", "11"),
            ("FLASHCACHE_SNAPSHOT_FORMAT", "rar"),
            ("FLASHCACHE_OFFLINE", "maybe"),
            ("FLASHCACHE_SYNC_POLICY", "sometimes"),
        ],
    )
    def test_invalid_value_warns_and_keeps_default(self, name, value):
        with pytest.warns(UserWarning, match=name):
            config = FlashConfig.from_env({name: value})
        assert config == FlashConfig.from_env({})

    def test_team_without_id_is_ignored(self):
        config = CloudConfig.from_env({"FLASHCACHE_TEAM_TOKEN": "secret"})
        assert config.team_access is None


class TestEnvOverFile:
    """Test environment variables layered over a loaded config file."""

    @pytest.fixture
    def file_config(self):
        return FlashConfig(
            cache=CacheConfig(cache_dir=Path("/srv/cache"), verify_integrity=False),
            scheduler=SchedulerConfig(base_concurrency=2, max_retries=5),
            snapshot=SnapshotConfig(format="zip", compression_level=3),
            cloud=CloudConfig(
                enabled=True,
                provider={"type": "gcs", "bucket": "file-bucket", "prefix": "ci"},
                sync_policy="upload-if-missing",
                team_id="frontend",
                team_access={"level": "write", "restrict_to_team": True},
                project_dir="/srv/app",
            ),
        )

    def test_unset_variables_keep_file_values(self, file_config):
        assert FlashConfig.from_env({}, base=file_config) == file_config

    def test_set_variables_override(self, file_config):
        environ = {
            "FLASHCACHE_CONCURRENCY": "16",
            "FLASHCACHE_MEMORY_LIMIT": "40",
            "FLASHCACHE_SNAPSHOT_FORMAT": "tar",
            "FLASHCACHE_COMPRESSION_LEVEL": "9",
            "FLASHCACHE_VERIFY": "true",
            "FLASHCACHE_CLOUD_PROVIDER": "s3",
            "FLASHCACHE_TEAM_TOKEN": "secret",
        }

        config = FlashConfig.from_env(environ, base=file_config)

        assert config.scheduler.base_concurrency == 16
        assert config.scheduler.memory_limit_percent == 40.0
        assert config.scheduler.max_retries == 5
        assert config.snapshot.format is ArchiveFormat.TAR
        assert config.snapshot.compression_level == 9
        assert config.cache.verify_integrity is True
        assert config.cache.cache_dir == Path("/srv/cache")
        assert config.cloud.provider.type == "s3"
        assert config.cloud.provider.bucket == "file-bucket"
        assert config.cloud.provider.prefix == "ci"
        assert config.cloud.team_id == "frontend"
        assert config.cloud.sync_policy is SyncPolicy.UPLOAD_IF_MISSING
        assert config.cloud.team_access.token == "secret"
        assert config.cloud.team_access.level is AccessLevel.WRITE
        assert config.cloud.team_access.restrict_to_team is True
        assert config.cloud.project_dir == Path("/srv/app")

    def test_base_is_not_modified(self, file_config):
        FlashConfig.from_env(
            {"FLASHCACHE_CONCURRENCY": "16", "FLASHCACHE_CLOUD_BUCKET": "other"}, base=file_config
        )
        assert file_config.scheduler.base_concurrency == 2
        assert file_config.cloud.provider.bucket == "file-bucket"

    def test_project_dir_from_environment(self):
        config = CloudConfig.from_env({"FLASHCACHE_PROJECT_DIR": "/srv/other"})
        assert config.project_dir == Path("/srv/other")

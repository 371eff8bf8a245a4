"""Tests for offline fallback resolution."""

import shutil
from unittest.mock import MagicMock

import pytest

from flashcache.fallback import FallbackOptions, FallbackResolver
from flashcache.snapshot import SnapshotConfig, SnapshotManager

from conftest import write_npm_lockfile

OFFLINE = dict(offline=True)


@pytest.fixture
def snapshots():
    return SnapshotManager(SnapshotConfig(prefer_native=False), runtime_version="v20.11.1")


@pytest.fixture
def resolver(store, snapshots):
    return FallbackResolver(store, snapshots)


def install_local(project_dir, make_package, name, version):
    shutil.copytree(make_package(name, version), project_dir / "node_modules" / name)


class TestNetworkGate:
    """Test that fallback only applies without a network."""

    def test_online_means_not_needed(self, store):
        checker = MagicMock()
        checker.is_available.return_value = True
        resolver = FallbackResolver(store, network_checker=checker)

        result = resolver.resolve("lodash", "4.17.21")

        assert result.needed is False
        assert result.found is False

    def test_offline_skips_probe(self, store, make_package):
        checker = MagicMock()
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        resolver = FallbackResolver(store, network_checker=checker)

        result = resolver.resolve("lodash", "4.17.21", FallbackOptions(**OFFLINE))

        assert result.found and result.needed
        checker.is_available.assert_not_called()

    def test_unreachable_registry_triggers_fallback(self, store, make_package):
        checker = MagicMock()
        checker.is_available.return_value = False
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        resolver = FallbackResolver(store, network_checker=checker)

        assert resolver.resolve("lodash", "4.17.21").found


class TestExactMatches:
    """Test exact version lookup and source precedence."""

    def test_cache_wins_over_local(self, resolver, store, make_package, project_dir):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        install_local(project_dir, make_package, "lodash", "4.17.21")

        result = resolver.resolve(
            "lodash", "4.17.21", FallbackOptions(project_dir=project_dir, **OFFLINE)
        )

        assert result.source == "cache"
        assert result.exact

    def test_snapshot_source(self, resolver, snapshots, make_package, project_dir):
        write_npm_lockfile(project_dir, {"chalk": "4.1.2"})
        install_local(project_dir, make_package, "chalk", "4.1.2")
        snapshots.create(project_dir)

        result = resolver.resolve("chalk", "4.1.2", FallbackOptions(project_dir=project_dir, **OFFLINE))

        assert result.found
        assert result.source == "snapshot"
        assert result.path == project_dir / ".flashpack"

    def test_local_source(self, resolver, make_package, project_dir):
        install_local(project_dir, make_package, "ms", "2.1.3")

        result = resolver.resolve("ms", "2.1.3", FallbackOptions(project_dir=project_dir, **OFFLINE))

        assert result.source == "local"
        assert result.path == project_dir / "node_modules" / "ms"

    def test_sources_can_be_disabled(self, resolver, store, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        result = resolver.resolve("lodash", "4.17.21", FallbackOptions(use_cache=False, **OFFLINE))
        assert not result.found


class TestCompatibleVersions:
    """Test range fallback."""

    def test_highest_satisfying_version(self, resolver, store, make_package):
        for version in ("4.17.15", "4.17.21", "5.0.0"):
            store.put("lodash", version, make_package("lodash", version))

        with pytest.warns(UserWarning, match="in place of"):
            result = resolver.resolve("lodash", "^4.17.0", FallbackOptions(**OFFLINE))

        assert result.found
        assert result.version == "4.17.21"
        assert result.requested_version == "^4.17.0"
        assert result.exact is False
        assert result.source == "cache"

    def test_exact_request_with_other_version(self, resolver, store, make_package):
        """A different patch is not compatible with an exact request."""
        store.put("lodash", "4.17.20", make_package("lodash", "4.17.20"))
        result = resolver.resolve("lodash", "4.17.21", FallbackOptions(**OFFLINE))
        assert not result.found

    def test_version_fallback_disabled(self, resolver, store, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        result = resolver.resolve(
            "lodash", "^4.0.0", FallbackOptions(allow_version_fallback=False, **OFFLINE)
        )
        assert not result.found
        assert result.exact

    def test_malformed_range_is_not_found(self, resolver, store, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        result = resolver.resolve("lodash", "not a range!", FallbackOptions(**OFFLINE))
        assert not result.found

    def test_local_candidate(self, resolver, make_package, project_dir):
        install_local(project_dir, make_package, "chalk", "4.1.2")

        with pytest.warns(UserWarning):
            result = resolver.resolve(
                "chalk", ">=4.0.0 <5.0.0", FallbackOptions(project_dir=project_dir, **OFFLINE)
            )

        assert result.version == "4.1.2"
        assert result.source == "local"

    def test_evicted_candidate_is_skipped(self, resolver, store, make_package):
        """A corrupted cache candidate is evicted and the next best used."""
        store.put("lodash", "4.17.20", make_package("lodash", "4.17.20"))
        newest = store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        (newest.path / "index.js").write_text("tampered")

        with pytest.warns(UserWarning):
            result = resolver.resolve("lodash", "^4.17.0", FallbackOptions(**OFFLINE))

        assert result.version == "4.17.20"

    def test_unreadable_candidates_end_the_search(self, resolver, store, make_package, monkeypatch):
        """Listed versions whose entries never load give not-found, not endless retries."""
        store.put("lodash", "4.17.20", make_package("lodash", "4.17.20"))
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        lookups = []

        def unreadable(name, version):
            lookups.append(version)
            return None

        monkeypatch.setattr(store, "lookup", unreadable)

        result = resolver.resolve("lodash", "^4.17.0", FallbackOptions(**OFFLINE))

        assert not result.found
        assert lookups.count("4.17.20") == 1
        assert lookups.count("4.17.21") == 1


class TestBulk:
    """Test resolving dependency maps."""

    def test_missing_and_has_all(self, resolver, store, make_package):
        store.put("lodash", "4.17.21", make_package("lodash", "4.17.21"))
        deps = {"lodash": "4.17.21", "left-pad": "1.3.0"}
        options = FallbackOptions(**OFFLINE)

        assert resolver.missing(deps, options) == {"left-pad": "1.3.0"}
        assert not resolver.has_all(deps, options)
        assert resolver.has_all({"lodash": "4.17.21"}, options)

"""Shared fixtures for flashcache tests."""

import json
from pathlib import Path

import pytest

from flashcache.cache import CacheConfig, LocalCacheStore


def write_package(root: Path, name: str, version: str, extra: str = "") -> Path:
    """Create a minimal package directory and return it."""
    package_dir = Path(root) / f"{name.replace('/', '__')}-{version}"
    (package_dir / "lib").mkdir(parents=True, exist_ok=True)
    (package_dir / "package.json").write_text(
        json.dumps({"name": name, "version": version})
    )
    (package_dir / "index.js").write_text(f"module.exports = '{name}@{version}{extra}';\n")
    (package_dir / "lib" / "util.js").write_text("exports.noop = () => {};\n")
    return package_dir


def write_npm_lockfile(project_dir: Path, dependencies: dict) -> Path:
    """Write a package-lock.json (v3) listing ``dependencies``."""
    packages = {"": {"name": "app", "version": "1.0.0"}}
    for name, version in dependencies.items():
        packages[f"node_modules/{name}"] = {"version": version}
    path = Path(project_dir) / "package-lock.json"
    path.write_text(json.dumps({"name": "app", "lockfileVersion": 3, "packages": packages}))
    return path


@pytest.fixture
def make_package(tmp_path):
    """Factory creating package source directories under tmp_path/sources."""

    def _make(name: str, version: str, extra: str = "") -> Path:
        return write_package(tmp_path / "sources", name, version, extra)

    return _make


@pytest.fixture
def cache_config(tmp_path):
    """Cache configuration rooted in a temporary directory."""
    return CacheConfig(cache_dir=tmp_path / "cache")


@pytest.fixture
def store(cache_config):
    """Empty local cache store."""
    return LocalCacheStore(cache_config)


@pytest.fixture
def project_dir(tmp_path):
    """Empty project directory."""
    path = tmp_path / "project"
    path.mkdir()
    return path

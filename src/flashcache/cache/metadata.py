"""Cache index management."""

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from filelock import FileLock, Timeout

from flashcache.errors import CacheLockError
from flashcache.utils import CacheIndexEntry, INDEX_FILE, LOCKS_DIR, atomic_write_bytes, now_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


def entry_key(name: str, version: str) -> str:
    """Index key of a package version."""
    return f"{name}@{version}"


class CacheMetadata:
    """Manages the cache index (metadata.json).

    The index tracks:
    - Per-entry records (digest, relative path, size, timestamps)
    - Cache statistics (hits, misses, evictions)

    Every mutation is a read-modify-write of the file under a
    ``filelock.FileLock`` (across processes) and a thread lock (within
    one), so concurrent writers never lose each other's updates.
    """

    def __init__(self, cache_dir: Path, lock_timeout: int = 30):
        """Initialize cache index manager.

        Args:
            cache_dir: Cache root holding metadata.json
            lock_timeout: Seconds to wait for the index lock
        """
        self.cache_dir = Path(cache_dir)
        self.meta_path = self.cache_dir / INDEX_FILE
        self.lock_path = self.cache_dir / LOCKS_DIR / "index.lock"
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.RLock()
        self._file_lock = FileLock(str(self.lock_path), timeout=lock_timeout)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock:
            try:
                with self._file_lock:
                    yield
            except Timeout as e:
                raise CacheLockError(
                    f"Timeout acquiring cache index lock after {self.lock_timeout} seconds"
                ) from e

    def _load(self) -> Dict[str, Any]:
        """Load the index from file or create a new one."""
        if self.meta_path.exists():
            try:
                with open(self.meta_path, "r") as f:
                    data = json.load(f)
                if isinstance(data, dict) and "entries" in data:
                    return data
            except (json.JSONDecodeError, FileNotFoundError) as e:
                # Corrupted index, start fresh
                logger.warning(f"Cache index unreadable, rebuilding: {e}")
        return self._initialize_new()

    @staticmethod
    def _initialize_new() -> Dict[str, Any]:
        """New index structure."""
        return {
            "schema_version": SCHEMA_VERSION,
            "created_at": now_iso(),
            "entries": {},
            "stats": {
                "cache_hits": 0,
                "cache_misses": 0,
                "evictions": 0,
                "integrity_failures": 0,
            },
        }

    def _save(self, data: Dict[str, Any]) -> None:
        atomic_write_bytes(
            self.meta_path, json.dumps(data, indent=2).encode("utf-8")
        )

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        with self._locked():
            data = self._load()
            yield data
            self._save(data)

    def get_entry(self, name: str, version: str) -> Optional[CacheIndexEntry]:
        """Index record for name@version, or None."""
        with self._locked():
            return self._load()["entries"].get(entry_key(name, version))

    def set_entry(self, entry: CacheIndexEntry) -> None:
        """Insert or replace the record for an entry.

        Access counters survive a replacement.
        """
        key = entry_key(entry["name"], entry["version"])
        with self._transaction() as data:
            previous = data["entries"].get(key, {})
            record = dict(entry)
            record.setdefault("access_count", previous.get("access_count", 0))
            record.setdefault("last_accessed", previous.get("last_accessed"))
            data["entries"][key] = record

    def update_access(self, name: str, version: str) -> None:
        """Record a hit on an entry."""
        key = entry_key(name, version)
        with self._transaction() as data:
            data["stats"]["cache_hits"] += 1
            if key in data["entries"]:
                data["entries"][key]["access_count"] = (
                    data["entries"][key].get("access_count", 0) + 1
                )
                data["entries"][key]["last_accessed"] = now_iso()

    def update_verification(self, name: str, version: str) -> None:
        """Update last verification timestamp."""
        key = entry_key(name, version)
        with self._transaction() as data:
            if key in data["entries"]:
                data["entries"][key]["last_verified"] = now_iso()

    def record_cache_miss(self) -> None:
        """Record a cache miss in statistics."""
        with self._transaction() as data:
            data["stats"]["cache_misses"] += 1

    def record_integrity_failure(self) -> None:
        with self._transaction() as data:
            data["stats"]["integrity_failures"] += 1

    def remove_entry(self, name: str, version: str, eviction: bool = False) -> None:
        """Remove an entry from the index.

        Args:
            name: Package name
            version: Package version
            eviction: Count the removal as an eviction in statistics
        """
        key = entry_key(name, version)
        with self._transaction() as data:
            if data["entries"].pop(key, None) is not None and eviction:
                data["stats"]["evictions"] += 1

    def get_all_entries(self) -> Dict[str, CacheIndexEntry]:
        """All index records keyed by name@version."""
        with self._locked():
            return dict(self._load()["entries"])

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Statistics dict with cache metrics
        """
        with self._locked():
            data = self._load()
        stats = dict(data["stats"])
        stats["total_items"] = len(data["entries"])
        stats["total_size_bytes"] = sum(
            e.get("size_bytes", 0) for e in data["entries"].values()
        )
        return stats

    def reset(self) -> None:
        """Replace the index with an empty one."""
        with self._locked():
            self._save(self._initialize_new())

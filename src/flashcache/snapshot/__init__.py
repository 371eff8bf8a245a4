"""Project snapshots tagged with a validity fingerprint."""

from flashcache.snapshot.archive import ArchiveFormat
from flashcache.snapshot.config import SnapshotConfig
from flashcache.snapshot.fingerprint import Fingerprint, create_fingerprint, is_valid
from flashcache.snapshot.manager import RestoreResult, Snapshot, SnapshotManager

__all__ = [
    "ArchiveFormat",
    "Fingerprint",
    "RestoreResult",
    "Snapshot",
    "SnapshotConfig",
    "SnapshotManager",
    "create_fingerprint",
    "is_valid",
]

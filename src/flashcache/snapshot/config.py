"""Snapshot configuration."""

from dataclasses import dataclass

from flashcache.snapshot.archive import ArchiveFormat
from flashcache.utils import config_degraded


@dataclass
class SnapshotConfig:
    """Settings of snapshot archives.

    Attributes:
        format: Archive format ('tar', 'tar.gz', 'zip')
        compression_level: 0-9 (ignored for 'tar')
        prefer_native: Use the native tar/zip executables when available
    """

    format: ArchiveFormat = ArchiveFormat.TAR_GZ
    compression_level: int = 6
    prefer_native: bool = True

    def __post_init__(self):
        try:
            self.format = ArchiveFormat.parse(getattr(self.format, "value", self.format))
        except ValueError:
            config_degraded(f"Unknown snapshot format {self.format!r}")
            self.format = ArchiveFormat.TAR_GZ
        if not 0 <= int(self.compression_level) <= 9:
            config_degraded(f"compression_level must be 0-9, got {self.compression_level}")
            self.compression_level = 6

"""Sync policies and the per-object reconciliation decision."""

from enum import Enum
from typing import Optional


class SyncPolicy(str, Enum):
    """Which side wins when local and remote copies are reconciled."""

    ALWAYS_UPLOAD = "always-upload"
    ALWAYS_DOWNLOAD = "always-download"
    UPLOAD_IF_MISSING = "upload-if-missing"
    DOWNLOAD_IF_MISSING = "download-if-missing"
    NEWEST = "newest"


class SyncDecision(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    NONE = "none"  # already in sync under this policy
    NOT_PERFORMED = "not-performed"  # nothing to transfer from


def _millis(timestamp: Optional[float]) -> int:
    return int(round((timestamp or 0.0) * 1000))


def decide(
    policy: SyncPolicy,
    remote_exists: bool,
    local_exists: bool,
    local_mtime: Optional[float] = None,
    remote_mtime: Optional[float] = None,
    metadata_available: bool = True,
) -> SyncDecision:
    """Decide what to transfer for one object.

    Timestamps are epoch seconds and compared at millisecond precision.

    Args:
        policy: Sync policy in effect
        remote_exists: Whether the remote store holds the object
        local_exists: Whether the local cache holds the object
        local_mtime: Modification time of the local copy
        remote_mtime: Last-modified time of the remote copy
        metadata_available: False when remote metadata could not be
            fetched; under ``newest`` the local copy is then uploaded

    Returns:
        SyncDecision

    Examples:
        >>> decide(SyncPolicy.UPLOAD_IF_MISSING, remote_exists=True, local_exists=True)
        <SyncDecision.NONE: 'none'>
        >>> decide(SyncPolicy.NEWEST, True, True, local_mtime=10.0, remote_mtime=10.0)
        <SyncDecision.NONE: 'none'>
    """
    policy = SyncPolicy(policy)

    if policy is SyncPolicy.ALWAYS_UPLOAD:
        return SyncDecision.UPLOAD if local_exists else SyncDecision.NOT_PERFORMED

    if policy is SyncPolicy.ALWAYS_DOWNLOAD:
        return SyncDecision.DOWNLOAD if remote_exists else SyncDecision.NOT_PERFORMED

    if not remote_exists and not local_exists:
        return SyncDecision.NOT_PERFORMED

    if policy is SyncPolicy.UPLOAD_IF_MISSING:
        return SyncDecision.UPLOAD if not remote_exists else SyncDecision.NONE

    if policy is SyncPolicy.DOWNLOAD_IF_MISSING:
        return SyncDecision.DOWNLOAD if not local_exists else SyncDecision.NONE

    # newest
    if not remote_exists:
        return SyncDecision.UPLOAD
    if not local_exists:
        return SyncDecision.DOWNLOAD
    if not metadata_available:
        return SyncDecision.UPLOAD

    local_ms, remote_ms = _millis(local_mtime), _millis(remote_mtime)
    if remote_ms > local_ms:
        return SyncDecision.DOWNLOAD
    if local_ms > remote_ms:
        return SyncDecision.UPLOAD
    return SyncDecision.NONE

"""Cache validation utilities for entry age and content digests."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from flashcache.errors import IntegrityError
from flashcache.hashing import integrity_digest
from flashcache.utils import parse_iso

logger = logging.getLogger(__name__)


def entry_age_seconds(created_at: str, now: Optional[datetime] = None) -> float:
    """Seconds elapsed since an ISO ``created_at`` timestamp."""
    now = now or datetime.now(timezone.utc)
    return (now - parse_iso(created_at)).total_seconds()


def is_expired(
    created_at: str, max_age_seconds: Optional[float], now: Optional[datetime] = None
) -> bool:
    """Check if an entry is older than the allowed age.

    Args:
        created_at: ISO format timestamp of the entry's creation
        max_age_seconds: Allowed age in seconds (None means never expire)
        now: Reference time (defaults to current UTC time)

    Returns:
        True if the entry should be evicted
    """
    if max_age_seconds is None:
        return False
    return entry_age_seconds(created_at, now) > max_age_seconds


def verify_digest(
    path: Path,
    expected_digest: str,
    algorithm: str = "sha256",
    strict: bool = False,
) -> bool:
    """Verify stored content matches its recorded digest.

    Args:
        path: Entry directory or archive
        expected_digest: Digest recorded at insert time
        algorithm: Hash algorithm
        strict: If True, raise on mismatch; if False, return False

    Returns:
        True if digests match, False otherwise (including unreadable content)

    Raises:
        IntegrityError: If strict=True and digests don't match
    """
    try:
        actual = integrity_digest(path, algorithm)
    except OSError as e:
        logger.debug(f"Cannot read cache content at {path}: {e}")
        actual = None

    if actual != expected_digest:
        if strict:
            raise IntegrityError(
                f"Digest mismatch for {path}: expected {expected_digest}, got {actual}",
                context={"path": str(path)},
            )
        return False

    return True

"""Object storage backend on top of cloudfiles (gs://, file://, mem://)."""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, List, Optional

from flashcache.cloud.provider import CloudFileMetadata, CloudProvider, PathLike, ensure_parent
from flashcache.errors import CloudError, wrap_exception

logger = logging.getLogger(__name__)

SCHEMES = {"gcs": "gs", "gs": "gs", "file": "file", "mem": "mem"}


def _timestamp(value: Any) -> Optional[float]:
    """Epoch seconds from whatever a cloudfiles backend reports."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class CloudFilesProvider(CloudProvider):
    """Provider backed by a ``cloudfiles.CloudFiles`` handle.

    Args:
        type: 'gcs', 'file' or 'mem'
        bucket: Bucket name, or base directory for 'file'
        prefix: Key prefix applied to every object
        credentials: Optional ``token`` passed to cloudfiles as secrets
    """

    def __init__(
        self,
        type: str,
        bucket: Optional[str],
        prefix: str = "",
        credentials: Optional[dict] = None,
    ):
        super().__init__(prefix)
        if type not in SCHEMES:
            raise CloudError(f"Unsupported cloudfiles storage type: {type}")
        if not bucket:
            raise CloudError(f"A bucket is required for {type} storage")
        self.type = type
        self.bucket = bucket
        self.credentials = credentials or {}
        self._cf = None

    @property
    def cloudpath(self) -> str:
        return f"{SCHEMES[self.type]}://{self.bucket}"

    @property
    def cf(self):
        if self._cf is None:
            self.init()
        return self._cf

    def init(self) -> None:
        from cloudfiles import CloudFiles

        kwargs = {}
        if self.credentials.get("token"):
            kwargs["secrets"] = self.credentials["token"]
        try:
            self._cf = CloudFiles(self.cloudpath, **kwargs)
        except Exception as e:
            raise wrap_exception(e, f"Cannot open {self.cloudpath}", CloudError) from e
        logger.debug(f"cloudfiles provider ready at {self.cloudpath}")

    def upload_file(self, local_path: PathLike, key: str) -> None:
        content = Path(local_path).read_bytes()
        try:
            self.cf.put(self.full_key(key), content, compress=None)
        except Exception as e:
            raise wrap_exception(e, f"Upload of {key} failed", CloudError) from e
        logger.debug(f"Uploaded {local_path} to {self.cloudpath}/{self.full_key(key)}")

    def download_file(self, key: str, local_path: PathLike) -> None:
        try:
            content = self.cf.get(self.full_key(key))
        except Exception as e:
            raise wrap_exception(e, f"Download of {key} failed", CloudError) from e
        if content is None:
            raise CloudError(f"Remote object not found: {key}")
        ensure_parent(local_path).write_bytes(content)

    def file_exists(self, key: str) -> bool:
        try:
            return bool(self.cf.exists(self.full_key(key)))
        except Exception as e:
            raise wrap_exception(e, f"Existence check of {key} failed", CloudError) from e

    def list_files(self, prefix: str = "") -> List[str]:
        try:
            keys = self.cf.list(prefix=self.full_key(prefix), flat=False)
            return sorted(self.logical_key(k) for k in keys)
        except Exception as e:
            raise wrap_exception(e, f"Listing {prefix!r} failed", CloudError) from e

    def delete_file(self, key: str) -> None:
        try:
            self.cf.delete(self.full_key(key))
        except Exception as e:
            raise wrap_exception(e, f"Delete of {key} failed", CloudError) from e

    def get_metadata(self, key: str) -> Optional[CloudFileMetadata]:
        full_key = self.full_key(key)
        try:
            if not self.cf.exists(full_key):
                return None
            head = self.cf.head(full_key) or {}
        except Exception as e:
            raise wrap_exception(e, f"Metadata lookup of {key} failed", CloudError) from e

        size = head.get("Content-Length", head.get("Size"))
        return CloudFileMetadata(
            last_modified=_timestamp(head.get("Last-Modified")),
            size=int(size) if size is not None else None,
            etag=head.get("ETag"),
            content_type=head.get("Content-Type"),
        )

"""Object storage provider interface.

A provider moves whole files between the local disk and a remote object
store addressed by logical keys. The configured key prefix is applied on
the way out and stripped on the way back, so callers never see it.

Providers that can upload one object in independently transferred parts
implement :class:`MultipartProvider` and report it through
``capabilities.multipart``.
"""

import logging
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from flashcache.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ProgressCallback = Callable[[int, int], None]  # (bytes done, bytes total)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_CONCURRENCY = 3


@dataclass
class CloudFileMetadata:
    """Metadata of a remote object.

    Attributes:
        last_modified: Epoch seconds, None when the backend does not say
        size: Size in bytes
        etag: Backend entity tag
        content_type: MIME type
    """

    last_modified: Optional[float] = None
    size: Optional[int] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ProviderCapabilities:
    multipart: bool = False


def normalize_prefix(prefix: Optional[str]) -> str:
    """'a/b' -> 'a/b/', '' -> ''."""
    prefix = (prefix or "").strip("/")
    return f"{prefix}/" if prefix else ""


class CloudProvider(ABC):
    """Abstract base class for object storage backends.

    Args:
        prefix: Key prefix applied to every object
    """

    capabilities = ProviderCapabilities()

    def __init__(self, prefix: str = ""):
        self.prefix = normalize_prefix(prefix)

    @property
    def name(self) -> str:
        return type(self).__name__

    def full_key(self, key: str) -> str:
        """Physical key of a logical key."""
        return f"{self.prefix}{key.lstrip('/')}"

    def logical_key(self, full_key: str) -> str:
        """Logical key of a physical key."""
        return full_key.removeprefix(self.prefix)

    @abstractmethod
    def init(self) -> None:
        """Connect to the backend.

        Raises:
            CloudError: If the backend cannot be used
        """

    @abstractmethod
    def upload_file(self, local_path: PathLike, key: str) -> None:
        pass

    @abstractmethod
    def download_file(self, key: str, local_path: PathLike) -> None:
        """Download an object, creating parent directories of ``local_path``."""

    @abstractmethod
    def file_exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def list_files(self, prefix: str = "") -> List[str]:
        """Logical keys of all objects under ``prefix``."""

    @abstractmethod
    def delete_file(self, key: str) -> None:
        pass

    @abstractmethod
    def get_metadata(self, key: str) -> Optional[CloudFileMetadata]:
        """Metadata of an object, or None if it does not exist."""


class MultipartProvider(CloudProvider):
    """Provider that uploads large objects as parts of one object.

    Subclasses implement the four part primitives and ranged reads;
    :meth:`upload_large_file` and :meth:`download_large_file` drive them
    with bounded concurrency.
    """

    capabilities = ProviderCapabilities(multipart=True)

    @abstractmethod
    def init_multipart_upload(self, key: str) -> str:
        """Start a multipart upload and return its upload id."""

    @abstractmethod
    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """Upload one part (numbered from 1) and return its etag."""

    @abstractmethod
    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: List[Tuple[int, str]]
    ) -> None:
        pass

    @abstractmethod
    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        pass

    @abstractmethod
    def download_range(self, key: str, start: int, end: int) -> bytes:
        """Bytes ``start`` through ``end`` (inclusive) of an object."""

    def upload_large_file(
        self,
        local_path: PathLike,
        key: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload a file as parts of a single object.

        The upload is aborted if any part fails, so no partial object is
        left behind.
        """
        local_path = Path(local_path)
        total = local_path.stat().st_size
        offsets = list(range(0, total, chunk_size)) or [0]
        upload_id = self.init_multipart_upload(key)
        done = 0

        def send(numbered: Tuple[int, int]) -> Tuple[int, str]:
            part_number, offset = numbered
            with open(local_path, "rb") as f:
                f.seek(offset)
                data = f.read(chunk_size)
            return part_number, self.upload_part(key, upload_id, part_number, data)

        try:
            parts = []
            with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
                for part_number, etag in pool.map(send, enumerate(offsets, start=1)):
                    parts.append((part_number, etag))
                    done = min(total, done + chunk_size)
                    if progress:
                        progress(done, total)
            self.complete_multipart_upload(key, upload_id, parts)
        except BaseException:
            logger.warning(f"Aborting multipart upload of {key}")
            self.abort_multipart_upload(key, upload_id)
            raise

        logger.debug(f"Uploaded {local_path} to {key} in {len(parts)} parts")

    def download_large_file(
        self,
        key: str,
        local_path: PathLike,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Download an object with parallel ranged reads."""
        metadata = self.get_metadata(key)
        if metadata is None or metadata.size is None:
            self.download_file(key, local_path)
            return

        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        total = metadata.size
        done = 0

        def fetch(offset: int) -> Tuple[int, bytes]:
            end = min(offset + chunk_size, total) - 1
            return offset, self.download_range(key, offset, end)

        with open(local_path, "wb") as f:
            with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
                for offset, data in pool.map(fetch, range(0, total, chunk_size)):
                    f.seek(offset)
                    f.write(data)
                    done += len(data)
                    if progress:
                        progress(done, total)
            f.truncate(total)


class UnavailableProvider(CloudProvider):
    """Stand-in for a backend that could not be created or initialized.

    Every operation raises :class:`ProviderUnavailableError` carrying the
    original cause.
    """

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__()
        self.reason = reason
        self.cause = cause

    def _unavailable(self, *args, **kwargs):
        raise ProviderUnavailableError(
            f"Cloud provider unavailable: {self.reason}", cause=self.cause
        )

    init = _unavailable
    upload_file = _unavailable
    download_file = _unavailable
    file_exists = _unavailable
    list_files = _unavailable
    delete_file = _unavailable
    get_metadata = _unavailable


def ensure_parent(local_path: PathLike) -> Path:
    local_path = Path(local_path)
    os.makedirs(local_path.parent, exist_ok=True)
    return local_path

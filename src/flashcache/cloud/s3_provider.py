"""S3-compatible object storage backend (AWS S3, MinIO, R2, ...)."""

import logging
from typing import List, Optional, Tuple

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from flashcache.cloud.provider import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONCURRENCY,
    CloudFileMetadata,
    MultipartProvider,
    PathLike,
    ensure_parent,
)
from flashcache.errors import CloudError, wrap_exception

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_missing(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code", "")) in _MISSING_CODES


class S3Provider(MultipartProvider):
    """Provider for S3-compatible stores with native multipart uploads.

    Args:
        bucket: Bucket name
        region: Region name (``us-east-1`` when unset)
        endpoint: Custom endpoint URL for S3-compatible services
        prefix: Key prefix applied to every object
        credentials: ``access_key_id``, ``secret_access_key`` and optional
            ``session_token``; the default boto3 chain is used otherwise
        client: Pre-built boto3 client (tests)
    """

    def __init__(
        self,
        bucket: Optional[str],
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        prefix: str = "",
        credentials: Optional[dict] = None,
        client=None,
    ):
        super().__init__(prefix)
        if not bucket:
            raise CloudError("A bucket is required for S3 storage")
        self.bucket = bucket
        self.region = region or "us-east-1"
        self.endpoint = endpoint
        self.credentials = credentials or {}
        self.client = client
        self.transfer_config = TransferConfig(
            multipart_threshold=DEFAULT_CHUNK_SIZE,
            multipart_chunksize=DEFAULT_CHUNK_SIZE,
            max_concurrency=DEFAULT_CONCURRENCY,
        )

    def init(self) -> None:
        if self.client is None:
            kwargs = {"region_name": self.region}
            if self.endpoint:
                kwargs["endpoint_url"] = self.endpoint
            if self.credentials.get("access_key_id"):
                kwargs["aws_access_key_id"] = self.credentials["access_key_id"]
                kwargs["aws_secret_access_key"] = self.credentials.get("secret_access_key")
                if self.credentials.get("session_token"):
                    kwargs["aws_session_token"] = self.credentials["session_token"]
            try:
                self.client = boto3.client("s3", **kwargs)
            except (BotoCoreError, ValueError) as e:
                raise wrap_exception(e, "Cannot create S3 client", CloudError) from e

        if not self.credentials.get("access_key_id"):
            logger.debug("No explicit S3 credentials, using the default credential chain")
            return

        try:
            self.client.list_objects_v2(Bucket=self.bucket, MaxKeys=1, Prefix=self.prefix)
            logger.debug(f"S3 provider initialized for bucket {self.bucket}")
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to connect to S3 bucket {self.bucket}: {e}")

    def _call(self, description: str, method: str, **kwargs):
        try:
            return getattr(self.client, method)(Bucket=self.bucket, **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise wrap_exception(e, description, CloudError) from e

    def upload_file(self, local_path: PathLike, key: str) -> None:
        try:
            self.client.upload_file(
                str(local_path), self.bucket, self.full_key(key), Config=self.transfer_config
            )
        except (BotoCoreError, ClientError) as e:
            raise wrap_exception(e, f"Upload of {key} failed", CloudError) from e
        logger.debug(f"Uploaded {local_path} to s3://{self.bucket}/{self.full_key(key)}")

    def download_file(self, key: str, local_path: PathLike) -> None:
        local_path = ensure_parent(local_path)
        try:
            self.client.download_file(
                self.bucket, self.full_key(key), str(local_path), Config=self.transfer_config
            )
        except (BotoCoreError, ClientError) as e:
            raise wrap_exception(e, f"Download of {key} failed", CloudError) from e

    def file_exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.full_key(key))
            return True
        except ClientError as e:
            if _is_missing(e):
                return False
            raise wrap_exception(e, f"Existence check of {key} failed", CloudError) from e
        except BotoCoreError as e:
            raise wrap_exception(e, f"Existence check of {key} failed", CloudError) from e

    def list_files(self, prefix: str = "") -> List[str]:
        keys = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.full_key(prefix)):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise wrap_exception(e, f"Listing {prefix!r} failed", CloudError) from e
        return sorted(self.logical_key(k) for k in keys)

    def delete_file(self, key: str) -> None:
        self._call(f"Delete of {key} failed", "delete_object", Key=self.full_key(key))

    def get_metadata(self, key: str) -> Optional[CloudFileMetadata]:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=self.full_key(key))
        except ClientError as e:
            if _is_missing(e):
                return None
            raise wrap_exception(e, f"Metadata lookup of {key} failed", CloudError) from e
        except BotoCoreError as e:
            raise wrap_exception(e, f"Metadata lookup of {key} failed", CloudError) from e

        last_modified = head.get("LastModified")
        return CloudFileMetadata(
            last_modified=last_modified.timestamp() if last_modified else None,
            size=head.get("ContentLength"),
            etag=head.get("ETag"),
            content_type=head.get("ContentType"),
        )

    # multipart primitives

    def init_multipart_upload(self, key: str) -> str:
        response = self._call(
            f"Starting multipart upload of {key} failed",
            "create_multipart_upload",
            Key=self.full_key(key),
        )
        return response["UploadId"]

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        response = self._call(
            f"Upload of part {part_number} of {key} failed",
            "upload_part",
            Key=self.full_key(key),
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: List[Tuple[int, str]]
    ) -> None:
        self._call(
            f"Completing multipart upload of {key} failed",
            "complete_multipart_upload",
            Key=self.full_key(key),
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": n, "ETag": etag} for n, etag in sorted(parts)]
            },
        )

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(
                Bucket=self.bucket, Key=self.full_key(key), UploadId=upload_id
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Could not abort multipart upload of {key}: {e}")

    def download_range(self, key: str, start: int, end: int) -> bytes:
        response = self._call(
            f"Ranged download of {key} failed",
            "get_object",
            Key=self.full_key(key),
            Range=f"bytes={start}-{end}",
        )
        return response["Body"].read()

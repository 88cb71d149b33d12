"""S3 blob stage between the stream and the warehouse.

Staged blobs are write-once. Uploads retry transient S3 errors; after an
upload the stored size is read back and compared with the local size. A
mismatch that persists is logged and the URL is still handed to the bulk
load unless strict verification is enabled.

Example:
    >>> stage = BlobStage.from_settings(settings)
    >>> prefix = stage.prefix("page_views", date.today(), "1f0c...")
    >>> url = stage.put("/tmp/shard-0.gz", prefix + "shardId-000.0.gz")
"""

from __future__ import annotations

import logging
import os
import time
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from shardloader.lib.errors import ConfigurationError, StageError, StageVerificationError
from shardloader.lib.resilience import RetryConfig, retry_operation
from shardloader.lib.settings import LoaderSettings

logger = logging.getLogger(__name__)

__all__ = ["BlobStage", "should_retry_s3"]

# delete_objects accepts at most this many keys per call
_DELETE_BATCH = 1000


def should_retry_s3(exc: BaseException) -> bool:
    """True for S3 errors worth retrying (throttling, 5xx, connection errors)."""
    if isinstance(exc, S3UploadFailedError):
        return True
    if isinstance(exc, BotoCoreError):
        return True
    if isinstance(exc, ClientError):
        try:
            status = int(
                exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            )
        except (TypeError, ValueError):
            status = 0
        code = exc.response.get("Error", {}).get("Code")
        return (
            status == 429
            or status >= 500
            or code in {"SlowDown", "RequestLimitExceeded"}
        )
    return False


class BlobStage:
    """Write-once S3 staging area addressed by ``s3://bucket/key`` URLs."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        cluster_name: Optional[str],
        dbname: Optional[str],
        *,
        root: str = "shardloader",
        strict_verification: bool = False,
        verify_attempts: int = 3,
        verify_delay_seconds: float = 5.0,
        upload_attempts: int = 3,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.cluster_name = cluster_name
        self.dbname = dbname
        self.root = root.strip("/")
        self.strict_verification = strict_verification
        self.verify_attempts = verify_attempts
        self.verify_delay_seconds = verify_delay_seconds
        self.upload_retry = RetryConfig(
            max_attempts=upload_attempts,
            backoff_seconds=1.0,
            retry_if=should_retry_s3,
        )

    @classmethod
    def from_settings(cls, settings: LoaderSettings, *, client: Optional[Any] = None) -> "BlobStage":
        if not settings.stage.s3_bucket:
            raise ConfigurationError(
                "An S3 bucket is required for staging",
                field="stage.s3_bucket",
            )
        if client is None:
            client = boto3.client("s3", **settings.aws.client_kwargs())
        return cls(
            client,
            settings.stage.s3_bucket,
            settings.warehouse.cluster_name,
            settings.warehouse.dbname,
            root=settings.stage.root,
            strict_verification=settings.stage.strict_verification,
            verify_attempts=settings.stage.verify_attempts,
            verify_delay_seconds=settings.stage.verify_delay_seconds,
            upload_attempts=settings.stage.upload_attempts,
        )

    def url(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def _table_prefix(self, table: str, day: date) -> str:
        if not self.cluster_name or not self.dbname:
            raise ConfigurationError(
                "Need to specify cluster_name and dbname to build stage paths",
                field="redshift.cluster_name" if not self.cluster_name else "redshift.dbname",
                table=table,
            )
        return f"{self.root}/{self.cluster_name}/{self.dbname}/{table}/{day:%Y%m%d}/"

    def prefix(self, table: str, day: date, load_id: str) -> str:
        """Key prefix for one load cycle's blobs."""
        return f"{self._table_prefix(table, day)}{load_id}/"

    def _stored_size(self, key: str) -> Optional[int]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.debug("head_object failed for %s: %s", key, e)
            return None
        return int(response["ContentLength"])

    def _verify(self, key: str, expected: int) -> None:
        actual: Optional[int] = None
        for attempt in range(1, self.verify_attempts + 1):
            actual = self._stored_size(key)
            if actual == expected:
                return
            logger.debug(
                "Size check %d/%d for %s: expected %d, got %s",
                attempt,
                self.verify_attempts,
                key,
                expected,
                actual,
            )
            if attempt < self.verify_attempts:
                time.sleep(self.verify_delay_seconds)

        if self.strict_verification:
            raise StageVerificationError(
                f"Stored size of {self.url(key)} does not match local file",
                url=self.url(key),
                expected=expected,
                actual=actual,
            )
        logger.warning(
            "S3 upload verification failed for %s (expected %d bytes, got %s); "
            "loading it anyway",
            self.url(key),
            expected,
            actual,
        )

    def put(self, local_path: Union[str, Path], key: str) -> str:
        """Upload a local file and return its URL."""
        local_path = Path(local_path)
        expected = os.path.getsize(local_path)
        try:
            retry_operation(
                lambda: self.client.upload_file(str(local_path), self.bucket, key),
                self.upload_retry,
                f"upload({key})",
            )
        except (BotoCoreError, ClientError, S3UploadFailedError) as e:
            raise StageError(
                f"Failed to upload {local_path}", url=self.url(key), cause=e
            ) from e

        self._verify(key, expected)
        logger.debug("Staged %s (%d bytes) at %s", local_path, expected, self.url(key))
        return self.url(key)

    def put_bytes(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        """Upload an in-memory object and return its URL."""
        request: Dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            request["ContentType"] = content_type
        try:
            retry_operation(
                lambda: self.client.put_object(**request),
                self.upload_retry,
                f"put_object({key})",
            )
        except (BotoCoreError, ClientError) as e:
            raise StageError(f"Failed to write {key}", url=self.url(key), cause=e) from e
        return self.url(key)

    def read_bytes(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StageError(f"Failed to read {key}", url=self.url(key), cause=e) from e

    def cleanup(self, table: str, day: date) -> int:
        """Delete every staged blob of a table for one day.

        Returns:
            Number of objects deleted
        """
        prefix = self._table_prefix(table, day)
        keys: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))

            for i in range(0, len(keys), _DELETE_BATCH):
                batch = keys[i : i + _DELETE_BATCH]
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
        except (BotoCoreError, ClientError) as e:
            raise StageError(
                f"Failed to clean up {prefix}", url=self.url(prefix), cause=e, table=table
            ) from e

        logger.info("Deleted %d staged objects under %s", len(keys), self.url(prefix))
        return len(keys)

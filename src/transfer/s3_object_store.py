# src/transfer/s3_object_store.py — v1
"""S3-compatible object store backend (object_store = "s3").

Works against the OCI S3 compatibility endpoint of the same bucket, MinIO
and other S3-compatible storage. Requires 'boto3': pip install boto3.
"""

from __future__ import annotations

import logging
from typing import Any

from imagebuilder.transfer.base_object_store import BaseObjectStore

logger = logging.getLogger(__name__)


class S3ObjectStore(BaseObjectStore):
    """Upload through the S3 multipart API."""

    backend = "s3"

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str | None = None,
        client: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the store.

        Args:
            bucket: Bucket name.
            endpoint_url: Custom endpoint for S3-compatible storage.
            region: Region name (optional, uses the boto3 default if not set).
            client: Pre-built boto3 S3 client (tests).
            **kwargs: Forwarded to BaseObjectStore (part_size, retry, sleep).
        """
        super().__init__(bucket, **kwargs)
        if client is None:
            client = self._create_client(endpoint_url, region)
        self._s3 = client

    @staticmethod
    def _create_client(endpoint_url: str | None, region: str | None) -> Any:
        try:
            import boto3
            from botocore.config import Config
        except ImportError as e:
            raise ImportError(
                "boto3 package required for S3 object store: pip install boto3"
            ) from e

        kwargs: dict = {
            # One attempt per call; RetryPolicy owns retries.
            "config": Config(retries={"total_max_attempts": 1, "mode": "standard"}),
        }
        if region:
            kwargs["region_name"] = region
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        return boto3.client("s3", **kwargs)

    def _put_object(self, object_name: str, data: bytes) -> None:
        self._s3.put_object(Bucket=self._bucket, Key=object_name, Body=data)
        logger.debug("S3 put: s3://%s/%s (%d bytes)", self._bucket, object_name, len(data))

    def _create_multipart(self, object_name: str) -> str:
        response = self._s3.create_multipart_upload(Bucket=self._bucket, Key=object_name)
        return response["UploadId"]

    def _upload_part(self, object_name: str, upload_id: str, part_num: int, data: bytes) -> str:
        response = self._s3.upload_part(
            Bucket=self._bucket, Key=object_name,
            PartNumber=part_num, UploadId=upload_id, Body=data,
        )
        return response["ETag"]

    def _commit_multipart(self, object_name: str, upload_id: str, etags: list[tuple[int, str]]) -> None:
        self._s3.complete_multipart_upload(
            Bucket=self._bucket, Key=object_name, UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": num, "ETag": etag} for num, etag in etags]
            },
        )

    def _abort_multipart(self, object_name: str, upload_id: str) -> None:
        self._s3.abort_multipart_upload(Bucket=self._bucket, Key=object_name, UploadId=upload_id)

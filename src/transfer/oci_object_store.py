# src/transfer/oci_object_store.py — v1
"""OCI Object Storage backend (object_store = "oci").

Requires the 'oci' package: pip install oci.
"""

from __future__ import annotations

import logging
from typing import Any

from imagebuilder.transfer.base_object_store import BaseObjectStore

logger = logging.getLogger(__name__)


class OCIObjectStore(BaseObjectStore):
    """Upload to an OCI bucket with the native multipart API."""

    backend = "oci"

    def __init__(self, client: Any, bucket: str, namespace: str = "", **kwargs: Any) -> None:
        """Initialize the store.

        Args:
            client: oci.object_storage.ObjectStorageClient.
            bucket: Bucket name.
            namespace: Object Storage namespace. Looked up on first use if empty.
            **kwargs: Forwarded to BaseObjectStore (part_size, retry, sleep).
        """
        super().__init__(bucket, **kwargs)
        self._client = client
        self._namespace = namespace

    async def namespace(self) -> str:
        """Object Storage namespace of the tenancy, cached after the first lookup."""
        if not self._namespace:
            response = await self._call("get namespace", self._client.get_namespace)
            self._namespace = response.data
            logger.debug("Object Storage namespace: %s", self._namespace)
        return self._namespace

    async def _prepare(self) -> None:
        await self.namespace()

    def _put_object(self, object_name: str, data: bytes) -> None:
        self._client.put_object(self._namespace, self._bucket, object_name, data)

    def _create_multipart(self, object_name: str) -> str:
        from oci.object_storage.models import CreateMultipartUploadDetails

        response = self._client.create_multipart_upload(
            self._namespace, self._bucket,
            CreateMultipartUploadDetails(object=object_name),
        )
        return response.data.upload_id

    def _upload_part(self, object_name: str, upload_id: str, part_num: int, data: bytes) -> str:
        response = self._client.upload_part(
            self._namespace, self._bucket, object_name, upload_id, part_num, data
        )
        return response.headers["etag"]

    def _commit_multipart(self, object_name: str, upload_id: str, etags: list[tuple[int, str]]) -> None:
        from oci.object_storage.models import (
            CommitMultipartUploadDetails,
            CommitMultipartUploadPartDetails,
        )

        details = CommitMultipartUploadDetails(
            parts_to_commit=[
                CommitMultipartUploadPartDetails(part_num=num, etag=etag)
                for num, etag in etags
            ]
        )
        self._client.commit_multipart_upload(
            self._namespace, self._bucket, object_name, upload_id, details
        )

    def _abort_multipart(self, object_name: str, upload_id: str) -> None:
        self._client.abort_multipart_upload(
            self._namespace, self._bucket, object_name, upload_id
        )

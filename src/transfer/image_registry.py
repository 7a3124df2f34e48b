# src/transfer/image_registry.py — v1
"""Compute image registration and lifecycle lookups (OCI Compute API).

Requires the 'oci' package: pip install oci.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from imagebuilder.config.settings import OCIConfig
from imagebuilder.core.models import RegisteredImage
from imagebuilder.transfer.retry import RetryPolicy, Sleep, http_status, with_retry

logger = logging.getLogger(__name__)

# Lifecycle state reported for an id the service does not (yet) know.
NOT_FOUND = "NOT_FOUND"


class OCIImageRegistry:
    """Register uploaded objects as custom images and query their state."""

    def __init__(
        self,
        compute: Any,
        object_storage: Any,
        oci: OCIConfig,
        retry: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the registry.

        Args:
            compute: oci.core.ComputeClient.
            object_storage: oci.object_storage.ObjectStorageClient, used for
                the namespace lookup.
            oci: [oci] settings (compartment, bucket, image metadata).
        """
        self._compute = compute
        self._object_storage = object_storage
        self._oci = oci
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._namespace = ""

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await with_retry(
            asyncio.to_thread, fn, *args,
            operation=operation, policy=self._retry, sleep=self._sleep, **kwargs,
        )

    async def namespace(self) -> str:
        if not self._namespace:
            response = await self._call("get namespace", self._object_storage.get_namespace)
            self._namespace = response.data
        return self._namespace

    async def create_image(self, object_name: str, display_name: str) -> str:
        """Start importing object_name; returns the pending image id."""
        from oci.core.models import CreateImageDetails, ImageSourceViaObjectStorageTupleDetails

        source = ImageSourceViaObjectStorageTupleDetails(
            namespace_name=await self.namespace(),
            bucket_name=self._oci.bucket_name,
            object_name=object_name,
            source_image_type=self._oci.source_image_type,
            operating_system=self._oci.operating_system,
            operating_system_version=self._oci.operating_system_version,
        )
        details = CreateImageDetails(
            compartment_id=self._oci.compartment_ocid,
            display_name=display_name,
            image_source_details=source,
            launch_mode=self._oci.launch_mode,
        )
        response = await self._call(f"create image {display_name}", self._compute.create_image, details)
        return response.data.id

    async def get_image_status(self, image_id: str) -> str:
        """Lifecycle state of an image; NOT_FOUND when the service returns 404."""
        try:
            response = await self._call(f"get image {image_id}", self._compute.get_image, image_id)
        except Exception as e:
            if http_status(e) == 404:
                return NOT_FOUND
            raise
        return response.data.lifecycle_state

    async def list_images(self, prefix: str = "") -> list[RegisteredImage]:
        """Custom images in the compartment whose display name starts with prefix."""
        from oci.pagination import list_call_get_all_results

        response = await self._call(
            "list images",
            list_call_get_all_results,
            self._compute.list_images,
            self._oci.compartment_ocid,
        )
        return [
            RegisteredImage(
                id=item.id,
                display_name=item.display_name,
                lifecycle_state=item.lifecycle_state,
                time_created=item.time_created,
            )
            for item in response.data
            if item.display_name and item.display_name.startswith(prefix)
        ]

# src/transfer/store_factory.py — v1
"""Factory for object store instantiation."""

from __future__ import annotations

import asyncio
from typing import Any

from imagebuilder.config.settings import Settings
from imagebuilder.transfer.base_object_store import BaseObjectStore
from imagebuilder.transfer.retry import RetryPolicy, Sleep


def create_object_store(
    settings: Settings,
    object_storage_client: Any = None,
    sleep: Sleep = asyncio.sleep,
) -> BaseObjectStore:
    """Instantiate the configured object store backend.

    Args:
        settings: Application settings.
        object_storage_client: oci ObjectStorageClient, required for "oci".
        sleep: Backoff sleep (tests inject a fake).

    Returns:
        Configured BaseObjectStore implementation.
    """
    common = {
        "part_size": settings.upload_part_size,
        "retry": RetryPolicy.from_settings(settings),
        "sleep": sleep,
    }

    if settings.object_store == "oci":
        from imagebuilder.transfer.oci_object_store import OCIObjectStore
        if object_storage_client is None:
            raise ValueError("object_store = 'oci' requires an ObjectStorageClient")
        return OCIObjectStore(object_storage_client, settings.oci.bucket_name, **common)

    if settings.object_store == "s3":
        from imagebuilder.transfer.s3_object_store import S3ObjectStore
        return S3ObjectStore(
            settings.oci.bucket_name,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region or settings.oci.region or None,
            **common,
        )

    raise ValueError(f"Unsupported object store: {settings.object_store!r}")

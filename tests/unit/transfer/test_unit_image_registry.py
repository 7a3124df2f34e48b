# tests/unit/transfer/test_unit_image_registry.py — v1
"""Tests for OCIImageRegistry against a mocked ComputeClient."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from imagebuilder.core.errors import TransientNetworkError
from imagebuilder.transfer.image_registry import NOT_FOUND, OCIImageRegistry


class ServiceError(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"service error {status}")
        self.status = status


@pytest.fixture
def compute() -> MagicMock:
    compute = MagicMock()
    compute.create_image.return_value.data.id = "ocid1.image.oc1..new"
    return compute


@pytest.fixture
def object_storage() -> MagicMock:
    client = MagicMock()
    client.get_namespace.return_value.data = "tenancy-ns"
    return client


@pytest.fixture
def registry(compute, object_storage, oci_config) -> OCIImageRegistry:
    return OCIImageRegistry(compute, object_storage, oci_config, sleep=AsyncMock())


class TestCreateImage:
    @pytest.mark.asyncio
    async def test_create(self, registry, compute):
        image_id = await registry.create_image("a-20240115-123456.qcow2", "a-nixos-20240115-123456")

        assert image_id == "ocid1.image.oc1..new"
        details = compute.create_image.call_args.args[0]
        assert details.compartment_id == "ocid1.compartment.oc1..test"
        assert details.display_name == "a-nixos-20240115-123456"
        assert details.launch_mode == "PARAVIRTUALIZED"
        source = details.image_source_details
        assert source.namespace_name == "tenancy-ns"
        assert source.bucket_name == "nixos-images"
        assert source.object_name == "a-20240115-123456.qcow2"
        assert source.source_image_type == "QCOW2"
        assert source.operating_system == "NixOS"

    @pytest.mark.asyncio
    async def test_namespace_looked_up_once(self, registry, object_storage):
        await registry.create_image("a.qcow2", "a")
        await registry.create_image("b.qcow2", "b")
        object_storage.get_namespace.assert_called_once()

    @pytest.mark.asyncio
    async def test_create_retries_server_errors(self, compute, object_storage, oci_config):
        sleep = AsyncMock()
        ok = MagicMock()
        ok.data.id = "ocid1.image.oc1..retried"
        compute.create_image.side_effect = [ServiceError(502), ok]
        registry = OCIImageRegistry(compute, object_storage, oci_config, sleep=sleep)

        assert await registry.create_image("a.qcow2", "a") == "ocid1.image.oc1..retried"
        assert sleep.await_count == 1


class TestGetImageStatus:
    @pytest.mark.asyncio
    async def test_state(self, registry, compute):
        compute.get_image.return_value.data.lifecycle_state = "IMPORTING"
        assert await registry.get_image_status("ocid1.image.oc1..x") == "IMPORTING"
        compute.get_image.assert_called_once_with("ocid1.image.oc1..x")

    @pytest.mark.asyncio
    async def test_404_is_not_found(self, registry, compute):
        compute.get_image.side_effect = ServiceError(404)
        assert await registry.get_image_status("ocid1.image.oc1..x") == NOT_FOUND

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, registry, compute):
        compute.get_image.side_effect = ServiceError(401)
        with pytest.raises(ServiceError):
            await registry.get_image_status("ocid1.image.oc1..x")

    @pytest.mark.asyncio
    async def test_persistent_server_error(self, registry, compute):
        compute.get_image.side_effect = ServiceError(503)
        with pytest.raises(TransientNetworkError):
            await registry.get_image_status("ocid1.image.oc1..x")
        assert compute.get_image.call_count == 5


class TestListImages:
    @pytest.mark.asyncio
    async def test_filters_by_prefix(self, registry, compute):
        created = datetime(2024, 1, 15, tzinfo=timezone.utc)
        items = [
            SimpleNamespace(id="id-1", display_name="headscale-nixos-20240115-1", lifecycle_state="AVAILABLE", time_created=created),
            SimpleNamespace(id="id-2", display_name="derp-nixos-20240115-1", lifecycle_state="IMPORTING", time_created=created),
            SimpleNamespace(id="id-3", display_name=None, lifecycle_state="AVAILABLE", time_created=None),
        ]
        with patch("oci.pagination.list_call_get_all_results", return_value=SimpleNamespace(data=items)) as paged:
            images = await registry.list_images("headscale")

        paged.assert_called_once_with(compute.list_images, "ocid1.compartment.oc1..test")
        assert [i.id for i in images] == ["id-1"]
        assert images[0].time_created == created

    @pytest.mark.asyncio
    async def test_no_prefix(self, registry):
        items = [
            SimpleNamespace(id="id-1", display_name="a", lifecycle_state="AVAILABLE", time_created=None),
            SimpleNamespace(id="id-2", display_name="b", lifecycle_state="AVAILABLE", time_created=None),
        ]
        with patch("oci.pagination.list_call_get_all_results", return_value=SimpleNamespace(data=items)):
            images = await registry.list_images()
        assert len(images) == 2

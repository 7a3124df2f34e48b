# tests/unit/transfer/test_unit_object_stores.py — v1
"""Tests for the chunked upload algorithm and the OCI / S3 backends."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import TransientNetworkError, UploadFailed
from imagebuilder.transfer.base_object_store import chunk_percent
from imagebuilder.transfer.oci_object_store import OCIObjectStore
from imagebuilder.transfer.s3_object_store import S3ObjectStore
from imagebuilder.transfer.store_factory import create_object_store


class ServiceError(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"service error {status}")
        self.status = status


@pytest.fixture
def artifact(tmp_path) -> Path:
    path = tmp_path / "nixos.qcow2"
    path.write_bytes(bytes(range(20)))
    return path


class TestChunkPercent:
    def test_intermediate(self):
        assert chunk_percent(8, 20, 1, 3) == pytest.approx(40.0)

    def test_last_part_is_exactly_100(self):
        assert chunk_percent(20, 20, 3, 3) == 100.0
        assert chunk_percent(19, 20, 3, 3) == 100.0

    def test_empty_file(self):
        assert chunk_percent(0, 0, 1, 1) == 100.0


class TestChunkedUpload:
    @pytest.mark.asyncio
    async def test_multipart(self, fake_object_store, artifact):
        reports: list[tuple[int, int, float]] = []
        result = await fake_object_store.upload_file(
            artifact, "a-20240115-123456.qcow2", "a", lambda *r: reports.append(r)
        )

        assert result.multipart is True
        assert result.parts == 3
        assert result.size_bytes == 20
        assert fake_object_store.objects["a-20240115-123456.qcow2"] == bytes(range(20))
        assert [r[0] for r in reports] == [1, 2, 3]
        assert reports[0][2] == pytest.approx(40.0)
        assert reports[-1] == (3, 3, 100.0)

    @pytest.mark.asyncio
    async def test_single_put(self, fake_store_cls, tmp_path):
        path = tmp_path / "small.qcow2"
        path.write_bytes(b"tiny")
        store = fake_store_cls(part_size=8, sleep=AsyncMock())
        reports: list[tuple[int, int, float]] = []

        result = await store.upload_file(path, "small.qcow2", "small", lambda *r: reports.append(r))

        assert result.multipart is False
        assert result.parts == 1
        assert store.objects["small.qcow2"] == b"tiny"
        assert store.parts == {}
        assert reports == [(1, 1, 100.0)]

    @pytest.mark.asyncio
    async def test_exact_multiple_of_part_size(self, fake_store_cls, tmp_path):
        path = tmp_path / "even.qcow2"
        path.write_bytes(b"x" * 16)
        store = fake_store_cls(part_size=8, sleep=AsyncMock())
        result = await store.upload_file(path, "even.qcow2", "even")
        assert result.parts == 2
        assert store.objects["even.qcow2"] == b"x" * 16

    @pytest.mark.asyncio
    async def test_failed_part_aborts(self, fake_object_store, artifact):
        fake_object_store.fail_part = 2
        fake_object_store.part_error = ServiceError(403)

        with pytest.raises(UploadFailed) as exc_info:
            await fake_object_store.upload_file(artifact, "a.qcow2", "a")

        assert exc_info.value.image == "a"
        assert isinstance(exc_info.value.cause, ServiceError)
        assert fake_object_store.aborted == ["upload-a.qcow2"]
        assert "a.qcow2" not in fake_object_store.objects

    @pytest.mark.asyncio
    async def test_final_part_failure_aborts(self, fake_object_store, artifact):
        fake_object_store.fail_part = 3
        with pytest.raises(UploadFailed):
            await fake_object_store.upload_file(artifact, "a.qcow2", "a")
        assert fake_object_store.aborted == ["upload-a.qcow2"]

    @pytest.mark.asyncio
    async def test_part_retried_on_transient_error(self, fake_store_cls, artifact):
        sleep = AsyncMock()
        store = fake_store_cls(part_size=8, sleep=sleep)
        original = store._upload_part
        failures = iter([ServiceError(503), ServiceError(502)])

        def flaky(object_name, upload_id, part_num, data):
            if part_num == 2:
                error = next(failures, None)
                if error is not None:
                    raise error
            return original(object_name, upload_id, part_num, data)

        store._upload_part = flaky
        result = await store.upload_file(artifact, "a.qcow2", "a")

        assert result.parts == 3
        assert store.objects["a.qcow2"] == bytes(range(20))
        assert sleep.await_count == 2
        assert store.aborted == []

    @pytest.mark.asyncio
    async def test_part_exhausts_retries(self, fake_object_store, artifact):
        fake_object_store.fail_part = 1
        fake_object_store.part_error = ServiceError(500)

        with pytest.raises(UploadFailed) as exc_info:
            await fake_object_store.upload_file(artifact, "a.qcow2", "a")

        assert isinstance(exc_info.value.cause, TransientNetworkError)
        assert exc_info.value.cause.attempts == 5
        assert fake_object_store.aborted == ["upload-a.qcow2"]

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_aborts(self, fake_store_cls, artifact):
        backing_off = asyncio.Event()

        async def stalled_sleep(delay: float) -> None:
            backing_off.set()
            await asyncio.Event().wait()

        store = fake_store_cls(part_size=8, sleep=stalled_sleep)
        store.fail_part = 2
        store.part_error = ServiceError(503)

        task = asyncio.create_task(store.upload_file(artifact, "a.qcow2", "a"))
        await backing_off.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.aborted == ["upload-a.qcow2"]
        assert store.parts == {}
        assert "a.qcow2" not in store.objects

    @pytest.mark.asyncio
    async def test_abort_failure_is_logged(self, fake_object_store, artifact, caplog):
        fake_object_store.fail_part = 1

        def broken_abort(object_name, upload_id):
            raise RuntimeError("abort refused")

        fake_object_store._abort_multipart = broken_abort
        with pytest.raises(UploadFailed, match="part failed"):
            await fake_object_store.upload_file(artifact, "a.qcow2", "a")
        assert "Failed to abort multipart upload" in caplog.text


class TestOCIObjectStore:
    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.get_namespace.return_value.data = "tenancy-ns"
        client.create_multipart_upload.return_value.data.upload_id = "up-1"
        client.upload_part.side_effect = lambda ns, bucket, obj, uid, num, data: MagicMock(
            headers={"etag": f"etag-{num}"}
        )
        return client

    @pytest.mark.asyncio
    async def test_namespace_cached(self, client):
        store = OCIObjectStore(client, "nixos-images", sleep=AsyncMock())
        assert await store.namespace() == "tenancy-ns"
        assert await store.namespace() == "tenancy-ns"
        client.get_namespace.assert_called_once()

    @pytest.mark.asyncio
    async def test_multipart_upload(self, client, artifact):
        store = OCIObjectStore(client, "nixos-images", part_size=8, sleep=AsyncMock())
        result = await store.upload_file(artifact, "a.qcow2", "a")

        assert result.parts == 3
        create_args = client.create_multipart_upload.call_args.args
        assert create_args[:2] == ("tenancy-ns", "nixos-images")
        assert create_args[2].object == "a.qcow2"
        assert client.upload_part.call_count == 3
        first = client.upload_part.call_args_list[0].args
        assert first[:5] == ("tenancy-ns", "nixos-images", "a.qcow2", "up-1", 1)

        commit_args = client.commit_multipart_upload.call_args.args
        assert commit_args[:4] == ("tenancy-ns", "nixos-images", "a.qcow2", "up-1")
        parts = [(p.part_num, p.etag) for p in commit_args[4].parts_to_commit]
        assert parts == [(1, "etag-1"), (2, "etag-2"), (3, "etag-3")]

    @pytest.mark.asyncio
    async def test_single_put(self, client, tmp_path):
        path = tmp_path / "small.qcow2"
        path.write_bytes(b"tiny")
        store = OCIObjectStore(client, "nixos-images", namespace="given-ns", sleep=AsyncMock())
        await store.upload_file(path, "small.qcow2", "small")
        client.put_object.assert_called_once_with("given-ns", "nixos-images", "small.qcow2", b"tiny")
        client.get_namespace.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_on_failure(self, client, artifact):
        client.upload_part.side_effect = ServiceError(400)
        store = OCIObjectStore(client, "nixos-images", part_size=8, sleep=AsyncMock())
        with pytest.raises(UploadFailed):
            await store.upload_file(artifact, "a.qcow2", "a")
        client.abort_multipart_upload.assert_called_once_with(
            "tenancy-ns", "nixos-images", "a.qcow2", "up-1"
        )

    @pytest.mark.asyncio
    async def test_namespace_failure(self, client, artifact):
        client.get_namespace.side_effect = ServiceError(401)
        store = OCIObjectStore(client, "nixos-images", sleep=AsyncMock())
        with pytest.raises(UploadFailed):
            await store.upload_file(artifact, "a.qcow2", "a")
        client.create_multipart_upload.assert_not_called()


class TestS3ObjectStore:
    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.create_multipart_upload.return_value = {"UploadId": "s3-up"}
        client.upload_part.side_effect = lambda **kw: {"ETag": f'"e{kw["PartNumber"]}"'}
        return client

    @pytest.mark.asyncio
    async def test_multipart_upload(self, client, artifact):
        store = S3ObjectStore("nixos-images", client=client, part_size=8, sleep=AsyncMock())
        result = await store.upload_file(artifact, "a.qcow2", "a")

        assert result.multipart is True
        client.create_multipart_upload.assert_called_once_with(Bucket="nixos-images", Key="a.qcow2")
        bodies = [c.kwargs["Body"] for c in client.upload_part.call_args_list]
        assert b"".join(bodies) == bytes(range(20))
        client.complete_multipart_upload.assert_called_once_with(
            Bucket="nixos-images", Key="a.qcow2", UploadId="s3-up",
            MultipartUpload={"Parts": [
                {"PartNumber": 1, "ETag": '"e1"'},
                {"PartNumber": 2, "ETag": '"e2"'},
                {"PartNumber": 3, "ETag": '"e3"'},
            ]},
        )

    @pytest.mark.asyncio
    async def test_commit_failure_aborts(self, client, artifact):
        client.complete_multipart_upload.side_effect = ServiceError(400)
        store = S3ObjectStore("nixos-images", client=client, part_size=8, sleep=AsyncMock())
        with pytest.raises(UploadFailed):
            await store.upload_file(artifact, "a.qcow2", "a")
        client.abort_multipart_upload.assert_called_once_with(
            Bucket="nixos-images", Key="a.qcow2", UploadId="s3-up"
        )


class TestStoreFactory:
    def test_oci_requires_client(self):
        with pytest.raises(ValueError, match="ObjectStorageClient"):
            create_object_store(Settings(_env_file=None))

    def test_oci(self):
        settings = Settings(_env_file=None, upload_part_size=1024)
        store = create_object_store(settings, MagicMock())
        assert isinstance(store, OCIObjectStore)
        assert store._part_size == 1024

    def test_s3(self, monkeypatch):
        created = {}

        def fake_create_client(endpoint_url, region):
            created.update(endpoint_url=endpoint_url, region=region)
            return MagicMock()

        monkeypatch.setattr(S3ObjectStore, "_create_client", staticmethod(fake_create_client))
        settings = Settings(
            _env_file=None, object_store="s3",
            s3_endpoint_url="https://ns.compat.objectstorage.eu-frankfurt-1.oraclecloud.com",
            oci={"bucket_name": "nixos-images", "region": "eu-frankfurt-1"},
        )
        store = create_object_store(settings)
        assert isinstance(store, S3ObjectStore)
        assert store.bucket == "nixos-images"
        assert created["region"] == "eu-frankfurt-1"

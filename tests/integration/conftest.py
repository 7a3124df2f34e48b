# tests/integration/conftest.py — v8
"""Shared fixtures for integration tests.

The pipeline runs end to end with real settings, state store, build
backend, S3 object store and transfer client. Only the outermost edges are
replaced: child processes (nix), the boto3 S3 client and the compute API.
"""

from __future__ import annotations

from pathlib import Path

import pytest


class ClientError(Exception):
    """Shaped like botocore.exceptions.ClientError."""

    def __init__(self, status: int, code: str = "Error") -> None:
        super().__init__(f"An error occurred ({code}) (HTTP {status})")
        self.response = {"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}}


class InMemoryS3:
    """The subset of the boto3 S3 client the object store calls."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.uploads: dict[str, dict[int, bytes]] = {}
        self.aborted: list[str] = []
        self.completed: list[str] = []
        self.reject_prefix: str | None = None
        self.transient: list[Exception] = []

    def put_object(self, Bucket, Key, Body):
        self.objects[Key] = Body

    def create_multipart_upload(self, Bucket, Key):
        upload_id = f"upload-{len(self.uploads) + len(self.aborted) + len(self.completed)}"
        self.uploads[upload_id] = {}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, PartNumber, UploadId, Body):
        if self.transient:
            raise self.transient.pop(0)
        if self.reject_prefix and Key.startswith(self.reject_prefix):
            raise ClientError(403, "AccessDenied")
        self.uploads[UploadId][PartNumber] = Body
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        parts = self.uploads.pop(UploadId)
        self.objects[Key] = b"".join(parts[p["PartNumber"]] for p in MultipartUpload["Parts"])
        self.completed.append(Key)

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.uploads.pop(UploadId, None)
        self.aborted.append(Key)


class FakeNix:
    """Stands in for process.run_command; `nix build` writes a store path and out-link."""

    def __init__(self, size: int = 20) -> None:
        self.builds: list[str] = []
        self.size = size

    async def __call__(self, argv, sink, cwd=None):
        assert argv[:2] == ["nix", "build"], argv
        workdir = Path(cwd)
        target = argv[2].removeprefix(".#")
        out_link = workdir / argv[4]
        store_path = workdir / "nix-store" / f"{len(self.builds)}-{target}"
        store_path.mkdir(parents=True)
        (store_path / "nixos.qcow2").write_bytes(bytes(range(self.size)))
        if out_link.is_symlink():
            out_link.unlink()
        out_link.symlink_to(store_path)
        self.builds.append(target)
        sink(f"built {target}")


@pytest.fixture
def s3() -> InMemoryS3:
    return InMemoryS3()


@pytest.fixture
def fake_nix() -> FakeNix:
    return FakeNix()


@pytest.fixture
def client_error_cls() -> type[ClientError]:
    return ClientError

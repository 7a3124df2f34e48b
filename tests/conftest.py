# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides settings pointed at temp directories, a run state store, and
in-memory fakes for the object store and the compute image registry.
SDKs, child processes and sleeps are all mocked.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from imagebuilder.config.settings import OCIConfig, RemoteBuilderConfig, Settings
from imagebuilder.core.models import ImageDefinition
from imagebuilder.state.store import RunStateStore
from imagebuilder.transfer.base_object_store import BaseObjectStore


# === FIXTURES: Settings ===


@pytest.fixture
def oci_config() -> OCIConfig:
    return OCIConfig(
        compartment_ocid="ocid1.compartment.oc1..test",
        bucket_name="nixos-images",
        region="eu-frankfurt-1",
        initial_delay_secs=30,
        poll_interval_secs=30,
        max_wait_secs=1800,
    )


@pytest.fixture
def images() -> list[ImageDefinition]:
    return [
        ImageDefinition(name="a", build_target="oci-a-image", arch="x86_64", output_var="a_ocid"),
        ImageDefinition(name="b", build_target="oci-b-image", arch="x86_64"),
    ]


@pytest.fixture
def settings(tmp_path: Path, oci_config: OCIConfig, images: list[ImageDefinition]) -> Settings:
    """Settings with workdir and state under tmp_path, native-only images."""
    return Settings(
        _env_file=None,
        oci=oci_config,
        workdir=tmp_path / "repo",
        state_dir=tmp_path / "state",
        images=images,
    )


@pytest.fixture
def remote_builder() -> RemoteBuilderConfig:
    return RemoteBuilderConfig(
        host="builder.example.com",
        user="nix",
        ssh_key="/keys/id_ed25519",
        repo_path="/home/nix/repo",
    )


@pytest.fixture
def store(settings: Settings) -> RunStateStore:
    return RunStateStore(settings.state_path)


# === FIXTURES: Fakes ===


class FakeObjectStore(BaseObjectStore):
    """Object store keeping uploaded objects in memory."""

    backend = "fake"

    def __init__(self, bucket: str = "nixos-images", **kwargs) -> None:
        super().__init__(bucket, **kwargs)
        self.objects: dict[str, bytes] = {}
        self.parts: dict[str, dict[int, bytes]] = {}
        self.aborted: list[str] = []
        self.fail_part: int | None = None
        self.part_error: Exception | None = None

    def _put_object(self, object_name: str, data: bytes) -> None:
        self.objects[object_name] = data

    def _create_multipart(self, object_name: str) -> str:
        upload_id = f"upload-{object_name}"
        self.parts[upload_id] = {}
        return upload_id

    def _upload_part(self, object_name: str, upload_id: str, part_num: int, data: bytes) -> str:
        if part_num == self.fail_part:
            raise self.part_error or RuntimeError("part failed")
        self.parts[upload_id][part_num] = data
        return f"etag-{part_num}"

    def _commit_multipart(self, object_name: str, upload_id: str, etags: list[tuple[int, str]]) -> None:
        parts = self.parts.pop(upload_id)
        self.objects[object_name] = b"".join(parts[num] for num, _ in etags)

    def _abort_multipart(self, object_name: str, upload_id: str) -> None:
        self.parts.pop(upload_id, None)
        self.aborted.append(upload_id)


class FakeImageRegistry:
    """Registry handing out sequential ids; every image is immediately AVAILABLE."""

    def __init__(self) -> None:
        self.created: list[tuple[str, str]] = []
        self.states: dict[str, str] = {}

    async def create_image(self, object_name: str, display_name: str) -> str:
        image_id = f"ocid1.image.oc1..{len(self.created) + 1:04d}"
        self.created.append((object_name, display_name))
        self.states[image_id] = "AVAILABLE"
        return image_id

    async def get_image_status(self, image_id: str) -> str:
        return self.states.get(image_id, "NOT_FOUND")

    async def list_images(self, prefix: str = ""):
        return []


@pytest.fixture
def fake_store_cls() -> type[FakeObjectStore]:
    return FakeObjectStore


@pytest.fixture
def fake_object_store() -> FakeObjectStore:
    return FakeObjectStore(part_size=8, sleep=AsyncMock())


@pytest.fixture
def fake_registry() -> FakeImageRegistry:
    return FakeImageRegistry()


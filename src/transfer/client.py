# src/transfer/client.py — v1
"""Transfer client: upload built artifacts, register them as images, wait.

Every network call goes through the retry policy (see transfer/retry.py).
Waits are plain asyncio sleeps, so cancelling the calling task interrupts
the initial delay and the inter-poll sleep with asyncio.CancelledError
rather than an ImportTimeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import ArtifactNotFound, ImportTimeout, UnexpectedImageState
from imagebuilder.core.models import LogSink, RegisteredImage, UploadResult
from imagebuilder.transfer.base_object_store import BaseObjectStore
from imagebuilder.transfer.image_registry import NOT_FOUND, OCIImageRegistry
from imagebuilder.transfer.retry import Sleep

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
AVAILABLE = "AVAILABLE"
IMPORTING = "IMPORTING"


def extract_image_name(object_name: str) -> str:
    """Image name encoded in an object name.

    "headscale-20240115-123456.qcow2" -> "headscale"
    """
    name, sep, _ = object_name.partition("-")
    if sep:
        return name
    if len(object_name) > 6 and object_name.endswith(".qcow2"):
        return object_name[: -len(".qcow2")]
    return object_name


def truncate_id(image_id: str) -> str:
    return image_id if len(image_id) <= 20 else image_id[:20] + "..."


def result_key(image_ids: dict[str, str], image_name: str, object_name: str) -> str:
    """Key an import result by image name, or by object name once that is taken.

    "derp-east-...qcow2" and "derp-west-...qcow2" both carry the image name
    "derp"; the second one is keyed by its object name so neither id is lost.
    """
    return object_name if image_name in image_ids else image_name


class TransferClient:
    """Upload, import and wait operations against the object store and compute API."""

    def __init__(
        self,
        settings: Settings,
        store: BaseObjectStore,
        registry: OCIImageRegistry,
        sink: LogSink | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings
        self._store = store
        self._registry = registry
        self._sink: LogSink = sink or logger.info
        self._sleep = sleep
        self._clock = clock
        self._now = now

    @property
    def store(self) -> BaseObjectStore:
        return self._store

    def _log(self, message: str) -> None:
        self._sink(message)

    def timestamp(self) -> str:
        """Batch timestamp used in object and display names."""
        return self._now().strftime(TIMESTAMP_FORMAT)

    # --- Upload ---

    def artifact_path(self, name: str) -> Path:
        """Expected local artifact of an image: result-<name>/<artifact>."""
        return self._settings.workdir.expanduser() / f"result-{name}" / self._settings.artifact_filename

    async def upload_image(
        self,
        name: str,
        timestamp: str | None = None,
        source: Path | None = None,
    ) -> UploadResult:
        """Upload one built image; the object name is <name>-<timestamp>.qcow2.

        Args:
            name: Image name.
            timestamp: Shared timestamp of a batch. Defaults to now.
            source: Artifact to upload. Defaults to artifact_path(name).

        Raises:
            ArtifactNotFound: The image has not been built.
            UploadFailed: The transfer could not be completed.
        """
        path = source or self.artifact_path(name)
        if not path.is_file():
            raise ArtifactNotFound(name, str(path))

        object_name = f"{name}-{timestamp or self.timestamp()}.qcow2"
        size_mb = path.stat().st_size // (1024 * 1024)
        self._log(f"Uploading {name} ({size_mb} MB) to bucket '{self._store.bucket}'...")
        self._log(f"  Object name: {object_name}")

        def progress(part: int, total: int, percent: float) -> None:
            self._log(f"  Part {part}/{total} complete ({percent:.1f}%)")

        result = await self._store.upload_file(path, object_name, name, progress)

        if result.multipart:
            self._log(f"  Upload complete (multipart): {object_name}")
        else:
            self._log(f"  Upload complete: {object_name}")
        return result

    async def upload(self, names: Iterable[str]) -> list[str]:
        """Upload several images in order; returns their object names."""
        timestamp = self.timestamp()
        return [(await self.upload_image(name, timestamp)).object_name for name in names]

    # --- Import ---

    async def import_image(self, object_name: str, timestamp: str | None = None) -> tuple[str, str]:
        """Register one uploaded object as a custom image.

        Returns:
            (image name, pending image id)
        """
        image_name = extract_image_name(object_name)
        os_label = self._settings.oci.operating_system.lower()
        display_name = f"{image_name}-{os_label}-{timestamp or self.timestamp()}"

        self._log(f"Importing {object_name} as custom image...")
        self._log(f"  Display name: {display_name}")
        self._log(f"  Source bucket: {self._settings.oci.bucket_name}")

        try:
            image_id = await self._registry.create_image(object_name, display_name)
        except Exception as e:
            self._log(f"  Import failed: {e}")
            raise
        self._log(f"  Import initiated: {image_id}")
        return image_name, image_id

    async def import_images(self, object_names: Iterable[str]) -> dict[str, str]:
        """Register several objects; returns image name -> pending image id.

        Objects sharing an image name are keyed by object name after the first.
        """
        timestamp = self.timestamp()
        image_ids: dict[str, str] = {}
        for object_name in object_names:
            image_name, image_id = await self.import_image(object_name, timestamp)
            image_ids[result_key(image_ids, image_name, object_name)] = image_id
        return image_ids

    # --- Wait ---

    async def wait_for_image(self, image_name: str, image_id: str) -> None:
        """Poll until the image is AVAILABLE.

        Raises:
            UnexpectedImageState: Any state besides AVAILABLE, IMPORTING, NOT_FOUND.
            ImportTimeout: Still not available after max_wait_secs.
            asyncio.CancelledError: The calling task was cancelled.
        """
        oci = self._settings.oci
        self._log(f"Waiting for image {truncate_id(image_id)} to be available...")
        self._log(
            f"  Initial delay: {oci.initial_delay_secs}s, poll interval: "
            f"{oci.poll_interval_secs}s, max wait: {oci.max_wait_secs}s"
        )

        # Newly registered ids take a while to become visible.
        await self._sleep(oci.initial_delay_secs)
        start = self._clock()

        while True:
            elapsed = self._clock() - start
            status = await self._registry.get_image_status(image_id)

            if status == AVAILABLE:
                self._log(f"  Image is AVAILABLE ({int(elapsed)}s elapsed)")
                return
            if status == IMPORTING:
                self._log(f"  Status: IMPORTING ({int(elapsed)}s elapsed)")
            elif status == NOT_FOUND:
                self._log(f"  Status: NOT_FOUND - waiting for import to register ({int(elapsed)}s elapsed)")
            else:
                raise UnexpectedImageState(image_name, status)

            if elapsed >= oci.max_wait_secs:
                self._log(f"  Timeout waiting for image after {int(elapsed)}s")
                raise ImportTimeout(image_name, image_id, elapsed)

            await self._sleep(oci.poll_interval_secs)

    async def wait_for_images(self, image_ids: dict[str, str]) -> None:
        """Wait for each image in turn; the first failure stops the wait."""
        for image_name, image_id in image_ids.items():
            await self.wait_for_image(image_name, image_id)

    # --- Queries ---

    async def get_image_status(self, image_id: str) -> str:
        return await self._registry.get_image_status(image_id)

    async def list_images(self, prefix: str = "") -> list[RegisteredImage]:
        return await self._registry.list_images(prefix)


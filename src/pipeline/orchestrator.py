# src/pipeline/orchestrator.py — v3
"""Pipeline orchestrator: build -> upload -> import for a set of images.

Each image moves through the stages one at a time and every completed step
is checkpointed in the run state store before the next one starts, so a
crash or failure loses at most the in-flight step. The first failure
aborts the whole call; `resume` picks up from the last checkpoint.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable, NoReturn

from imagebuilder.build.backend import BuildBackend
from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import (
    ConfigurationError,
    NothingToResume,
    StageFailed,
    UnknownImage,
)
from imagebuilder.core.models import BuildResult, ImageDefinition
from imagebuilder.logging.context import image_context, set_run_context
from imagebuilder.state.models import RUN_STAGE_ORDER, ImageProgress, RunStage, StageName
from imagebuilder.state.store import RunStateStore
from imagebuilder.transfer.client import TransferClient, result_key

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Drive images through the pipeline, checkpointing after every step."""

    def __init__(
        self,
        settings: Settings,
        store: RunStateStore,
        backend: BuildBackend,
        transfer_factory: Callable[[], TransferClient],
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Application settings.
            store: Run state store.
            backend: Build backend.
            transfer_factory: Creates the transfer client on first use, so
                build-only invocations never touch cloud credentials.
        """
        self._settings = settings
        self._store = store
        self._backend = backend
        self._transfer_factory = transfer_factory
        self._transfer: TransferClient | None = None

    @property
    def transfer(self) -> TransferClient:
        if self._transfer is None:
            self._transfer = self._transfer_factory()
        return self._transfer

    # --- Entry points ---

    async def run_all(self, names: Iterable[str] = ()) -> dict[str, str]:
        """Fresh run of every stage for the images; returns name -> image id."""
        images = self.resolve_images(names)
        self._backend.check_prerequisites(images)
        run = self._store.start_new_run([i.name for i in images])
        set_run_context(run.run_id)
        return await self._drive("build")

    async def resume(self) -> dict[str, str] | None:
        """Continue the saved run to completion.

        Returns:
            name -> image id, or None when the saved run is already complete.

        Raises:
            NothingToResume: No saved run.
        """
        run = self._store.load()
        if run is None:
            raise NothingToResume()
        if run.complete:
            logger.info("Previous run %s completed successfully. Nothing to resume.", run.run_id)
            return None

        set_run_context(run.run_id)
        start = self._resume_stage()
        logger.info("Resuming run %s from stage: %s", run.run_id, start)
        if start == "build":
            pending = [n for n in run.image_names() if self._needs_build(n)]
            self._backend.check_prerequisites(self._definitions(pending))
        return await self._drive(start)

    async def build(self, names: Iterable[str] = (), upload: bool = True) -> dict[str, str]:
        """Build the images (and upload them unless upload is False).

        Always rebuilds; stale object names and image ids of the rebuilt
        images are dropped from the run.

        Returns:
            name -> object name when uploading, otherwise name -> local path.
        """
        images = self.resolve_images(names)
        self._backend.check_prerequisites(images)
        run = self._store.ensure_run([i.name for i in images])
        set_run_context(run.run_id)

        for image in images:
            await self._build_one(image)
        self._advance("upload")
        if not upload:
            return {i.name: self._progress(i.name).local_path for i in images}
        return await self.upload([i.name for i in images])

    async def upload(self, names: Iterable[str] = ()) -> dict[str, str]:
        """Upload already-built images; returns name -> object name.

        Raises:
            StageFailed: Wrapping ArtifactNotFound if an image was never built.
        """
        image_names = [i.name for i in self.resolve_images(names)]
        run = self._store.ensure_run(image_names)
        set_run_context(run.run_id)

        timestamp = self.transfer.timestamp()
        for name in image_names:
            await self._upload_one(name, timestamp)
        self._advance("import")
        return {n: self._progress(n).object_name for n in image_names}

    async def import_objects(self, objects: Iterable[str]) -> dict[str, str]:
        """Register uploaded objects as images and wait for them.

        Objects recorded in the active run are checkpointed there; others
        are imported without touching the run state.

        Returns:
            image name -> image id. An untracked object whose image name is
            already taken is keyed by its object name instead.
        """
        run = self._store.load()
        run_names: dict[str, str] = {}
        if run is not None and not run.complete:
            set_run_context(run.run_id)
            run_names = {i.object_name: i.name for i in run.images if i.object_name}

        timestamp = self.transfer.timestamp()
        reserved = set(run_names.values())
        image_ids: dict[str, str] = {}
        tracked: set[str] = set()
        for object_name in objects:
            name = run_names.get(object_name)
            if name:
                image_ids[name] = await self._import_one(name, timestamp)
                tracked.add(name)
                continue
            image_name, image_id = await self.transfer.import_image(object_name, timestamp)
            key = image_name if image_name not in reserved else object_name
            image_ids[result_key(image_ids, key, object_name)] = image_id

        for key, image_id in image_ids.items():
            if key in tracked:
                await self._wait({key: image_id})
            else:
                await self.transfer.wait_for_image(key, image_id)
        if tracked and all(i.image_id for i in self._store.run.images):
            self._store.mark_complete()
        return image_ids

    # --- Stage drivers ---

    async def _drive(self, start: RunStage) -> dict[str, str]:
        names = self._store.run.image_names()
        if start in ("pending", "build"):
            await self._build_stage(names)
            self._advance("upload")
            start = "upload"
        if start == "upload":
            await self._upload_stage(names)
            self._advance("import")
        await self._import_stage(names)
        return self._store.image_ids()

    def _resume_stage(self) -> RunStage:
        """Recorded stage, moved earlier when an image lacks that stage's input.

        An image recorded past build whose artifact vanished before upload
        is rebuilt instead of failing the upload.
        """
        run = self._store.run
        stage = "build" if run.stage == "pending" else run.stage
        names = run.image_names()
        if any(self._needs_build(n) for n in names):
            return "build"
        if stage == "import" and any(not self._progress(n).object_name for n in names):
            return "upload"
        return stage

    async def _build_stage(self, names: list[str]) -> None:
        for name in names:
            if not self._needs_build(name):
                logger.info("Skipping build for %s (already built)", name)
                continue
            await self._build_one(self._definition(name))

    async def _upload_stage(self, names: list[str]) -> None:
        pending = [n for n in names if not self._store.should_skip_upload(n)]
        for name in names:
            if name not in pending:
                logger.info("Skipping upload for %s (already uploaded)", name)
        if not pending:
            return
        timestamp = self.transfer.timestamp()
        for name in pending:
            await self._upload_one(name, timestamp)

    async def _import_stage(self, names: list[str]) -> None:
        # Registered earlier but never confirmed available.
        in_flight = {
            n: self._progress(n).image_id
            for n in names
            if self._progress(n).image_id and self._progress(n).stage != "complete"
        }
        if in_flight:
            logger.info("Checking status of previously initiated imports...")
            await self._wait(in_flight)

        to_import = [n for n in names if not self._store.should_skip_import(n)]
        if to_import:
            timestamp = self.transfer.timestamp()
            new_ids = {n: await self._import_one(n, timestamp) for n in to_import}
            await self._wait(new_ids)

        self._store.mark_complete()
        logger.info("Pipeline complete")

    # --- Per-image steps ---

    async def _build_one(self, image: ImageDefinition) -> BuildResult:
        with image_context(image.name, "build"):
            self._store.record_stage_start(image.name, "build")
            try:
                result = await self._backend.build_image(image)
            except Exception as e:
                self._fail(image.name, "build", e)

            def apply(img: ImageProgress) -> None:
                img.local_path = result.output_path
                img.object_name = ""
                img.image_id = ""
                img.stage = "build_complete"
                img.error = ""
                img.metrics.build_size_bytes = result.size_bytes

            self._store.update_image(image.name, apply)
            self._store.record_stage_complete(image.name, "build")
            return result

    async def _upload_one(self, name: str, timestamp: str) -> str:
        progress = self._progress(name)
        source = Path(progress.local_path) if progress.local_path else self.transfer.artifact_path(name)
        with image_context(name, "upload"):
            self._store.record_stage_start(name, "upload")
            try:
                result = await self.transfer.upload_image(name, timestamp, source=source)
            except Exception as e:
                self._fail(name, "upload", e)

            def apply(img: ImageProgress) -> None:
                img.local_path = img.local_path or str(source)
                img.object_name = result.object_name
                img.image_id = ""
                img.stage = "upload_complete"
                img.error = ""
                img.metrics.upload_size_bytes = result.size_bytes
                img.metrics.upload_parts = result.parts

            self._store.update_image(name, apply)
            self._store.record_stage_complete(name, "upload")
            return result.object_name

    async def _import_one(self, name: str, timestamp: str) -> str:
        object_name = self._progress(name).object_name
        with image_context(name, "import"):
            self._store.record_stage_start(name, "import")
            try:
                _, image_id = await self.transfer.import_image(object_name, timestamp)
            except Exception as e:
                self._fail(name, "import", e)
            self._store.update_image(name, _set_fields(image_id=image_id, stage="importing", error=""))
            return image_id

    async def _wait(self, image_ids: dict[str, str]) -> None:
        for name, image_id in image_ids.items():
            with image_context(name, "import"):
                try:
                    await self.transfer.wait_for_image(name, image_id)
                except Exception as e:
                    self._fail(name, "import", e)
                self._store.update_image(name, _set_fields(stage="complete", error=""))
                self._store.record_stage_complete(name, "import")

    # --- Helpers ---

    def resolve_images(self, names: Iterable[str]) -> list[ImageDefinition]:
        """Definitions for names; every configured image when names is empty."""
        names = list(names)
        if not names:
            return list(self._settings.images)
        return self._definitions(names)

    def _definitions(self, names: Iterable[str]) -> list[ImageDefinition]:
        return [self._definition(n) for n in names]

    def _definition(self, name: str) -> ImageDefinition:
        image = self._settings.get_image(name)
        if image is None:
            raise ConfigurationError(
                f"unknown image: {name} (configured: {', '.join(self._settings.image_names())})"
            )
        return image

    def _progress(self, name: str) -> ImageProgress:
        progress = self._store.get_image(name)
        if progress is None:
            raise UnknownImage(name)
        return progress

    def _needs_build(self, name: str) -> bool:
        return not (self._store.should_skip_upload(name) or self._store.should_skip_build(name))

    def _advance(self, stage: RunStage) -> None:
        """Move the run stage forward; never backwards."""
        current = self._store.run.stage
        if RUN_STAGE_ORDER.index(stage) > RUN_STAGE_ORDER.index(current):
            self._store.set_stage(stage)

    def _fail(self, name: str, stage: StageName, error: Exception) -> NoReturn:
        """Checkpoint the failure on the image and abort the call."""
        logger.error("%s failed for %s: %s", stage, name, error)
        self._store.update_image(name, _set_fields(stage="error", error=str(error)))
        raise StageFailed(name, stage, error) from error


def _set_fields(**fields: object) -> Callable[[ImageProgress], None]:
    def apply(img: ImageProgress) -> None:
        for key, value in fields.items():
            setattr(img, key, value)

    return apply

# src/state/store.py — v1
"""Run State Store: the single persisted pipeline run and its skip predicates.

Every mutating call rewrites the whole run record atomically (temp file +
rename) before returning, so the file always reflects the last completed
stage step. An in-process lock serialises writers; running two CLI
processes against the same state file is not supported and its outcome is
undefined.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from imagebuilder.core.errors import (
    CorruptState,
    InvalidStageTransition,
    InvariantViolation,
    NoActiveRun,
    UnknownImage,
)
from imagebuilder.state.models import (
    RUN_STAGE_ORDER,
    ImageProgress,
    PipelineRun,
    PipelineStatistics,
    RunStage,
    StageName,
)
from imagebuilder.state.statistics import compute_statistics

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_run_id(timestamp: datetime | None = None) -> str:
    """Generate a run_id: yyyymmdd-hhmmss_{uuid4_short}."""
    ts = timestamp or _utcnow()
    return f"{ts.strftime('%Y%m%d-%H%M%S')}_{uuid.uuid4().hex[:5]}"


class RunStateStore:
    """Load, mutate and persist the active PipelineRun."""

    def __init__(self, state_path: Path, clock: Callable[[], datetime] = _utcnow) -> None:
        self._path = Path(state_path).expanduser()
        self._clock = clock
        self._run: PipelineRun | None = None
        self._lock = threading.RLock()

    @property
    def state_path(self) -> Path:
        return self._path

    @property
    def run(self) -> PipelineRun | None:
        return self._run

    # --- Persistence ---

    def load(self) -> PipelineRun | None:
        """Load the run from disk; None when no state file exists.

        Raises:
            CorruptState: If the file exists but cannot be parsed.
        """
        with self._lock:
            if not self._path.exists():
                self._run = None
                return None
            try:
                raw = self._path.read_text(encoding="utf-8")
                self._run = PipelineRun.model_validate_json(raw)
            except (ValidationError, ValueError, UnicodeDecodeError) as e:
                raise CorruptState(str(self._path), str(e)) from e
            return self._run

    def save(self) -> None:
        """Persist the current run, stamping updated_at."""
        with self._lock:
            self._commit(self._require_run())

    def _commit(self, run: PipelineRun) -> PipelineRun:
        """Write run to disk; it becomes the current run only once the write succeeded."""
        staged = run.model_copy(update={"updated_at": self._clock()})
        self._write(staged.model_dump_json(indent=2))
        self._run = staged
        return staged

    def _write(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".state-", suffix=".tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        """Remove the state file. Only ever called on explicit operator request."""
        with self._lock:
            self._path.unlink(missing_ok=True)
            self._run = None

    # --- Run lifecycle ---

    def start_new_run(self, image_names: list[str]) -> PipelineRun:
        """Create and persist a fresh run with every image pending."""
        with self._lock:
            now = self._clock()
            unique = list(dict.fromkeys(image_names))
            run = self._commit(PipelineRun(
                run_id=generate_run_id(now),
                started_at=now,
                updated_at=now,
                stage="build",
                images=[ImageProgress(name=name) for name in unique],
            ))
            logger.info("Started run %s for %s", run.run_id, ", ".join(unique))
            return run

    def ensure_run(self, image_names: list[str]) -> PipelineRun:
        """Reuse the active non-complete run, adding missing images, or start a new one."""
        with self._lock:
            if self._run is None:
                self.load()
            if self._run is None or self._run.complete:
                return self.start_new_run(image_names)

            added = [n for n in dict.fromkeys(image_names) if self._run.get_image(n) is None]
            if added:
                images = [*self._run.images, *(ImageProgress(name=n) for n in added)]
                self._commit(self._run.model_copy(update={"images": images}))
            return self._run

    def update_image(
        self, name: str, mutation: Callable[[ImageProgress], None]
    ) -> ImageProgress:
        """Apply a mutation to one image and persist the whole run.

        The mutation runs on a copy; it is discarded if it breaks the
        local_path -> object_name -> image_id dependency chain.

        Raises:
            UnknownImage: If name is not part of the current run.
            InvariantViolation: If the mutated record is inconsistent.
        """
        with self._lock:
            run = self._require_run()
            for index, image in enumerate(run.images):
                if image.name != name:
                    continue
                candidate = image.model_copy(deep=True)
                mutation(candidate)
                violation = candidate.dependency_violation()
                if violation:
                    raise InvariantViolation(violation)
                images = list(run.images)
                images[index] = candidate
                self._commit(run.model_copy(update={"images": images}))
                return candidate
            raise UnknownImage(name)

    def set_stage(self, stage: RunStage) -> None:
        """Advance the run stage; moving backwards is refused."""
        with self._lock:
            run = self._require_run()
            current = RUN_STAGE_ORDER.index(run.stage)
            if RUN_STAGE_ORDER.index(stage) < current:
                raise InvalidStageTransition(run.stage, stage)
            self._commit(run.model_copy(update={"stage": stage}))

    def mark_complete(self) -> None:
        """Flag the run complete once every image has a registered image id."""
        with self._lock:
            run = self._require_run()
            missing = [image.name for image in run.images if not image.image_id]
            if missing:
                raise InvariantViolation(
                    f"cannot complete run {run.run_id}: no image id for {', '.join(missing)}"
                )
            self._commit(run.model_copy(
                update={"stage": "complete", "complete": True, "completed_at": self._clock()}
            ))

    # --- Queries ---

    def get_image(self, name: str) -> ImageProgress | None:
        if self._run is None:
            return None
        return self._run.get_image(name)

    def should_skip_build(self, name: str) -> bool:
        """True if a build artifact is recorded and still present on disk."""
        image = self.get_image(name)
        if image is None or not image.local_path:
            return False
        return Path(image.local_path).exists()

    def should_skip_upload(self, name: str) -> bool:
        image = self.get_image(name)
        return image is not None and bool(image.object_name)

    def should_skip_import(self, name: str) -> bool:
        image = self.get_image(name)
        return image is not None and bool(image.image_id)

    def object_names(self) -> list[str]:
        if self._run is None:
            return []
        return [image.object_name for image in self._run.images if image.object_name]

    def image_ids(self) -> dict[str, str]:
        if self._run is None:
            return {}
        return {image.name: image.image_id for image in self._run.images if image.image_id}

    # --- Timings and metrics ---

    def record_stage_start(self, name: str, stage: StageName) -> None:
        now = self._clock()
        self.update_image(name, lambda img: setattr(img.timings, f"{stage}_started_at", now))

    def record_stage_complete(self, name: str, stage: StageName) -> None:
        now = self._clock()
        self.update_image(name, lambda img: setattr(img.timings, f"{stage}_completed_at", now))

    def record_build_metrics(self, name: str, size_bytes: int) -> None:
        self.update_image(name, lambda img: setattr(img.metrics, "build_size_bytes", size_bytes))

    def record_upload_metrics(self, name: str, size_bytes: int, parts: int) -> None:
        def apply(img: ImageProgress) -> None:
            img.metrics.upload_size_bytes = size_bytes
            img.metrics.upload_parts = parts

        self.update_image(name, apply)

    def compute_statistics(self) -> PipelineStatistics | None:
        if self._run is None:
            return None
        return compute_statistics(self._run)

    def _require_run(self) -> PipelineRun:
        if self._run is None:
            raise NoActiveRun()
        return self._run

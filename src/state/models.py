# src/state/models.py — v1
"""Persisted run state: PipelineRun, ImageProgress, timings and metrics."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

RunStage = Literal["pending", "build", "upload", "import", "complete"]
ImageStage = Literal[
    "pending", "build_complete", "upload_complete", "importing", "complete", "error"
]
StageName = Literal["build", "upload", "import"]

# Forward-only ordering of run stages.
RUN_STAGE_ORDER: tuple[str, ...] = ("pending", "build", "upload", "import", "complete")


class StageTimings(BaseModel):
    """Start/completion timestamps per stage; None means not reached."""

    build_started_at: datetime | None = None
    build_completed_at: datetime | None = None
    upload_started_at: datetime | None = None
    upload_completed_at: datetime | None = None
    import_started_at: datetime | None = None
    import_completed_at: datetime | None = None


class ImageMetrics(BaseModel):
    build_size_bytes: int = 0
    upload_size_bytes: int = 0
    upload_parts: int = 0


class ImageProgress(BaseModel):
    """Progress of a single image through the pipeline."""

    name: str
    local_path: str = ""
    object_name: str = ""
    image_id: str = ""
    stage: ImageStage = "pending"
    error: str = ""
    timings: StageTimings = Field(default_factory=StageTimings)
    metrics: ImageMetrics = Field(default_factory=ImageMetrics)

    def dependency_violation(self) -> str | None:
        """Describe a broken stage data dependency, or None if consistent."""
        if self.object_name and not self.local_path:
            return f"{self.name}: object_name set without local_path"
        if self.image_id and not self.object_name:
            return f"{self.name}: image_id set without object_name"
        return None


class PipelineRun(BaseModel):
    """The single active pipeline run, written to state.json."""

    run_id: str
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    stage: RunStage = "build"
    images: list[ImageProgress] = Field(default_factory=list)
    complete: bool = False

    def get_image(self, name: str) -> ImageProgress | None:
        for image in self.images:
            if image.name == name:
                return image
        return None

    def image_names(self) -> list[str]:
        return [image.name for image in self.images]


# === STATISTICS ===


class ImageStatistics(BaseModel):
    name: str
    build_seconds: float = 0.0
    upload_seconds: float = 0.0
    import_seconds: float = 0.0
    total_seconds: float = 0.0
    upload_size_mb: float = 0.0
    upload_throughput_mbps: float = 0.0


class PipelineStatistics(BaseModel):
    """Durations and throughput derived from a PipelineRun."""

    run_id: str
    total_seconds: float = 0.0
    build_seconds: float = 0.0
    upload_seconds: float = 0.0
    import_seconds: float = 0.0
    total_bytes_uploaded: int = 0
    upload_throughput_mbps: float = 0.0
    images: list[ImageStatistics] = Field(default_factory=list)

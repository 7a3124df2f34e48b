# src/state/statistics.py — v1
"""Derive per-stage and per-image statistics from a persisted run.

Stages missing a start or completion timestamp contribute zero duration.
"""

from __future__ import annotations

from datetime import datetime

from imagebuilder.state.models import (
    ImageProgress,
    ImageStatistics,
    PipelineRun,
    PipelineStatistics,
)

MiB = 1024 * 1024


def compute_statistics(run: PipelineRun) -> PipelineStatistics:
    """Compute durations and upload throughput for a run."""
    end = run.completed_at or run.updated_at
    stats = PipelineStatistics(
        run_id=run.run_id,
        total_seconds=_span(run.started_at, end),
    )

    total_upload_bytes = 0
    total_upload_seconds = 0.0

    for image in run.images:
        img_stats = _image_statistics(image)
        stats.build_seconds += img_stats.build_seconds
        stats.upload_seconds += img_stats.upload_seconds
        stats.import_seconds += img_stats.import_seconds

        if image.metrics.upload_size_bytes > 0:
            stats.total_bytes_uploaded += image.metrics.upload_size_bytes
            total_upload_bytes += image.metrics.upload_size_bytes
            total_upload_seconds += img_stats.upload_seconds

        stats.images.append(img_stats)

    if total_upload_bytes > 0 and total_upload_seconds > 0:
        stats.upload_throughput_mbps = total_upload_bytes / MiB / total_upload_seconds

    return stats


def _image_statistics(image: ImageProgress) -> ImageStatistics:
    t = image.timings
    result = ImageStatistics(
        name=image.name,
        build_seconds=_span(t.build_started_at, t.build_completed_at),
        upload_seconds=_span(t.upload_started_at, t.upload_completed_at),
        import_seconds=_span(t.import_started_at, t.import_completed_at),
    )
    result.total_seconds = result.build_seconds + result.upload_seconds + result.import_seconds

    if image.metrics.upload_size_bytes > 0:
        result.upload_size_mb = image.metrics.upload_size_bytes / MiB
        if result.upload_seconds > 0:
            result.upload_throughput_mbps = result.upload_size_mb / result.upload_seconds
    return result


def _span(start: datetime | None, end: datetime | None) -> float:
    """Seconds between two timestamps; 0 when either is unset or the span is negative."""
    if start is None or end is None:
        return 0.0
    return max((end - start).total_seconds(), 0.0)


def format_duration(seconds: float) -> str:
    """Format a duration for display, e.g. "3m12s"."""
    if seconds < 1:
        return "0s"
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"

# src/logging/context.py — v2
"""Contextual logging support: attach run_id, image and stage to log records."""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

# Context variables for structured logging, set by the orchestrator.
_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)
_image: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "image", default=None
)
_stage: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "stage", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    run_id: str | None = None
    image: str | None = None
    stage: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(run_id=_run_id.get(), image=_image.get(), stage=_stage.get())


def set_run_context(run_id: str | None) -> None:
    _run_id.set(run_id)


@contextmanager
def image_context(image: str, stage: str) -> Iterator[None]:
    """Tag every record logged inside the block with image and stage."""
    image_token = _image.set(image)
    stage_token = _stage.set(stage)
    try:
        yield
    finally:
        _image.reset(image_token)
        _stage.reset(stage_token)


def clear_context() -> None:
    """Reset all context variables."""
    _run_id.set(None)
    _image.set(None)
    _stage.set(None)

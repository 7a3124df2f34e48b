# src/core/errors.py — v1
"""Error taxonomy for the image pipeline.

Every failure raised by the engine derives from ImageBuilderError so the CLI
can map it to a non-zero exit status. Best-effort cleanup failures are logged
as warnings and never raised.
"""

from __future__ import annotations


class ImageBuilderError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(ImageBuilderError):
    """Missing or internally inconsistent static configuration."""


class PrerequisiteMissing(ImageBuilderError):
    """A required external tool is not on PATH."""

    def __init__(self, tool: str, hint: str = "") -> None:
        self.tool = tool
        message = f"{tool} not found in PATH"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


# === BUILD ===


class BuilderNotConfigured(ImageBuilderError):
    """A foreign-architecture build was requested without a remote builder."""

    def __init__(self, image: str) -> None:
        self.image = image
        super().__init__(
            f"Image '{image}' needs a remote builder but [remote_builder] is not "
            "configured (use --local-only to build locally)"
        )


class BuildError(ImageBuilderError):
    """A build step failed for one image."""

    def __init__(self, image: str, step: str, reason: str) -> None:
        self.image = image
        self.step = step
        self.reason = reason
        super().__init__(f"Build of '{image}' failed during {step}: {reason}")


class CommandFailed(ImageBuilderError):
    """A child process exited with a non-zero status."""

    def __init__(self, argv: list[str], returncode: int) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        super().__init__(f"{argv[0]} exited with status {returncode}")


# === TRANSFER ===


class ArtifactNotFound(ImageBuilderError):
    """Upload requested for an image that has not been built."""

    def __init__(self, image: str, path: str) -> None:
        self.image = image
        self.path = path
        super().__init__(f"Image not found: {path} (run build first)")


class UploadFailed(ImageBuilderError):
    """The transfer of one artifact could not be completed."""

    def __init__(self, image: str, cause: BaseException) -> None:
        self.image = image
        self.cause = cause
        super().__init__(f"Upload failed for {image}: {cause}")


class TransientNetworkError(ImageBuilderError):
    """A retryable network failure persisted through every attempt."""

    def __init__(self, operation: str, attempts: int, status: int | None, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.status = status
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts (HTTP {status}): {last_error}"
        )


class UnexpectedImageState(ImageBuilderError):
    """The registered image entered a lifecycle state other than the expected ones."""

    def __init__(self, image: str, state: str) -> None:
        self.image = image
        self.state = state
        super().__init__(f"Unexpected state for image {image}: {state}")


class ImportTimeout(ImageBuilderError):
    """The registered image did not become available within the maximum wait."""

    def __init__(self, image: str, image_id: str, elapsed_s: float) -> None:
        self.image = image
        self.image_id = image_id
        self.elapsed_s = elapsed_s
        super().__init__(
            f"Timeout waiting for image {image} ({image_id}) after {int(elapsed_s)}s"
        )


# === RUN STATE ===


class StateError(ImageBuilderError):
    """Run state integrity problem; the operator must inspect the state file."""


class UnknownImage(StateError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown image: {name}")


class CorruptState(StateError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Failed to parse state file {path}: {reason}")


class NoActiveRun(StateError):
    def __init__(self) -> None:
        super().__init__("No active run")


class InvariantViolation(StateError):
    """A mutation would break the stage data dependencies."""


class InvalidStageTransition(StateError):
    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move run stage backwards from {current} to {requested}")


# === ORCHESTRATION ===


class NothingToResume(ImageBuilderError):
    def __init__(self) -> None:
        super().__init__("No saved state to resume. Run 'all' or 'build' first")


class StageFailed(ImageBuilderError):
    """One image failed a pipeline stage; progress up to here is checkpointed."""

    def __init__(self, image: str, stage: str, cause: BaseException) -> None:
        self.image = image
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed for {image}: {cause}")

# src/build/base_builder.py — v1
"""Abstract build strategy and the shell helpers the strategies share."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from imagebuilder.build import process
from imagebuilder.config.settings import RemoteBuilderConfig, Settings
from imagebuilder.core.errors import BuildError, CommandFailed, ConfigurationError
from imagebuilder.core.models import BuildResult, ImageDefinition, LogSink

logger = logging.getLogger(__name__)

# Only the files the build capability needs are shipped to a remote builder.
SYNC_FILTERS = [
    "--include=flake.nix",
    "--include=flake.lock",
    "--include=nix/***",
    "--exclude=*",
]


class BaseBuilder(ABC):
    """One build strategy: turn an ImageDefinition into a local artifact."""

    def __init__(self, settings: Settings, sink: LogSink | None = None) -> None:
        self._settings = settings
        self._sink: LogSink = sink or logger.info
        self._workdir = settings.workdir.expanduser()

    @abstractmethod
    async def build(self, image: ImageDefinition) -> BuildResult:
        """Build one image and return its local artifact."""

    # --- Helpers ---

    def _log(self, message: str) -> None:
        self._sink(message)

    def _local_output(self, image: ImageDefinition) -> Path:
        return self._workdir / image.output_link / self._settings.artifact_filename

    def _result(self, image: ImageDefinition, path: Path) -> BuildResult:
        try:
            size = path.stat().st_size
        except OSError as e:
            raise BuildError(image.name, "inspect artifact", str(e)) from e
        self._log(f"Build complete: {path} ({size // (1024 * 1024)} MB)")
        return BuildResult(image_name=image.name, output_path=str(path), size_bytes=size)

    async def _step(self, image: ImageDefinition, step: str, argv: list[str]) -> None:
        """Run one required build step; failure aborts the image build."""
        try:
            await process.run_command(argv, self._sink, cwd=self._workdir)
        except CommandFailed as e:
            raise BuildError(image.name, step, str(e)) from e

    async def _cleanup(self, description: str, argv: list[str]) -> None:
        """Run a best-effort cleanup step; failures are only logged."""
        try:
            await process.run_command(argv, self._sink, cwd=self._workdir)
        except CommandFailed as e:
            logger.warning("%s cleanup failed (non-fatal): %s", description, e)
            self._log(f"  {description} cleanup warning (non-fatal): {e}")

    def _prepare_local_output(self, image: ImageDefinition) -> Path:
        """Make result-<name>/ a plain directory ready to receive a copied artifact."""
        link = self._workdir / image.output_link
        if link.is_symlink():
            link.unlink()
        link.mkdir(parents=True, exist_ok=True)
        return self._local_output(image)


class RemoteShellMixin:
    """ssh / rsync / scp invocations against the configured remote builder."""

    _settings: Settings

    @property
    def _remote(self) -> RemoteBuilderConfig:
        builder = self._settings.remote_builder
        if builder is None:
            raise ConfigurationError("remote build strategy selected without [remote_builder]")
        return builder

    def _ssh_options(self) -> list[str]:
        options = ["-o", "BatchMode=yes"]
        if self._remote.ssh_key:
            options += ["-i", str(Path(self._remote.ssh_key).expanduser())]
        return options

    def ssh_argv(self, command: str) -> list[str]:
        return ["ssh", *self._ssh_options(), self._remote.ssh_target, command]

    def rsync_argv(self) -> list[str]:
        return [
            "rsync", "-az", "--delete", "-v",
            "-e", " ".join(["ssh", *self._ssh_options()]),
            *SYNC_FILTERS,
            "./",
            f"{self._remote.ssh_target}:{self._remote.repo_path}/",
        ]

    def scp_from_remote_argv(self, remote_path: str, local_path: Path) -> list[str]:
        return [
            "scp", *self._ssh_options(),
            f"{self._remote.ssh_target}:{remote_path}",
            str(local_path),
        ]

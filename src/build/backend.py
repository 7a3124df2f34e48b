# src/build/backend.py — v1
"""Build backend: turns image definitions into local artifacts.

Each image is routed to one strategy (local, remote Linux host, or the
linux-builder VM of a macOS host). Images build sequentially; the first
failure aborts the batch.
"""

from __future__ import annotations

import logging
import shutil
from typing import Iterable

from imagebuilder.build.builder_factory import create_builder
from imagebuilder.build.strategy import BuildStrategy, select_strategy
from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import PrerequisiteMissing
from imagebuilder.core.models import BuildResult, ImageDefinition, LogSink

logger = logging.getLogger(__name__)

LOCAL_TOOLS = {"nix": "Install Nix: https://nixos.org/download"}
REMOTE_TOOLS = {
    "ssh": "Install an OpenSSH client",
    "rsync": "Install rsync",
    "scp": "Install an OpenSSH client",
}


class BuildBackend:
    """Build images with the strategy each one needs."""

    def __init__(
        self,
        settings: Settings,
        sink: LogSink | None = None,
        local_only: bool = False,
    ) -> None:
        self._settings = settings
        self._sink = sink
        self._local_only = local_only

    def strategy_for(self, image: ImageDefinition) -> BuildStrategy:
        return select_strategy(image, self._settings, local_only=self._local_only)

    def needs_remote_build(self, images: Iterable[ImageDefinition]) -> bool:
        """True when at least one image goes to the remote builder."""
        return any(self.strategy_for(i) is not BuildStrategy.LOCAL for i in images)

    def check_prerequisites(self, images: Iterable[ImageDefinition]) -> None:
        """Verify the external tools the selected strategies invoke.

        The build capability itself is only required on this machine when
        some image builds locally.

        Raises:
            PrerequisiteMissing: First missing tool.
            BuilderNotConfigured: Foreign image without a remote builder.
        """
        strategies = {self.strategy_for(i) for i in images}
        required: dict[str, str] = {}
        if BuildStrategy.LOCAL in strategies:
            required.update(LOCAL_TOOLS)
        if strategies - {BuildStrategy.LOCAL}:
            required.update(REMOTE_TOOLS)
        for tool, hint in required.items():
            if shutil.which(tool) is None:
                raise PrerequisiteMissing(tool, hint)

    async def build_image(self, image: ImageDefinition) -> BuildResult:
        """Build one image.

        Raises:
            BuilderNotConfigured: Foreign image without a remote builder.
            BuildError: A required step failed.
        """
        strategy = self.strategy_for(image)
        logger.info("Building %s (%s, strategy=%s)", image.name, image.arch, strategy.value)
        builder = create_builder(strategy, self._settings, self._sink)
        return await builder.build(image)

    async def build(self, images: Iterable[ImageDefinition]) -> dict[str, BuildResult]:
        """Build every image in order. Stops at the first failure."""
        results: dict[str, BuildResult] = {}
        for image in images:
            results[image.name] = await self.build_image(image)
        return results

# src/build/strategy.py — v1
"""Choose how each image gets built."""

from __future__ import annotations

from enum import Enum

from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import BuilderNotConfigured
from imagebuilder.core.models import ImageDefinition


class BuildStrategy(str, Enum):
    LOCAL = "local"
    REMOTE_LINUX = "remote_linux"
    REMOTE_MACOS = "remote_macos"


def select_strategy(
    image: ImageDefinition, settings: Settings, local_only: bool = False
) -> BuildStrategy:
    """Pick the build strategy for one image.

    Native images, and every image when local_only is set, build locally.
    Foreign images go to the remote builder: directly on a Linux host, or
    through the nested linux-builder VM on a macOS host.

    Raises:
        BuilderNotConfigured: Foreign image and no [remote_builder].
    """
    if local_only or not settings.is_foreign(image):
        return BuildStrategy.LOCAL
    builder = settings.remote_builder
    if builder is None:
        raise BuilderNotConfigured(image.name)
    if builder.is_macos:
        return BuildStrategy.REMOTE_MACOS
    return BuildStrategy.REMOTE_LINUX

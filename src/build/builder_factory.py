# src/build/builder_factory.py — v1
"""Factory for build strategy instantiation."""

from __future__ import annotations

from imagebuilder.build.base_builder import BaseBuilder
from imagebuilder.build.strategy import BuildStrategy
from imagebuilder.config.settings import Settings
from imagebuilder.core.models import LogSink


def create_builder(
    strategy: BuildStrategy, settings: Settings, sink: LogSink | None = None
) -> BaseBuilder:
    """Instantiate the builder for a strategy.

    Args:
        strategy: Strategy chosen by select_strategy().
        settings: Application settings.
        sink: Receives build output line by line. Defaults to the module logger.

    Returns:
        Configured BaseBuilder implementation.
    """
    if strategy is BuildStrategy.LOCAL:
        from imagebuilder.build.local_builder import LocalBuilder
        return LocalBuilder(settings, sink)

    if strategy is BuildStrategy.REMOTE_LINUX:
        from imagebuilder.build.remote_builder import RemoteLinuxBuilder
        return RemoteLinuxBuilder(settings, sink)

    if strategy is BuildStrategy.REMOTE_MACOS:
        from imagebuilder.build.macos_builder import RemoteMacOSBuilder
        return RemoteMacOSBuilder(settings, sink)

    raise ValueError(f"Unsupported build strategy: {strategy!r}")

# src/build/local_builder.py — v1
"""Build an image on this machine with the build capability."""

from __future__ import annotations

from imagebuilder.build.base_builder import BaseBuilder
from imagebuilder.core.errors import BuildError
from imagebuilder.core.models import BuildResult, ImageDefinition


class LocalBuilder(BaseBuilder):
    """`nix build .#<target> --out-link result-<name>` in the working directory."""

    async def build(self, image: ImageDefinition) -> BuildResult:
        target = f".#{image.build_target}"
        self._log(f"Building {image.name} locally...")
        self._log(f"  Target: {target}")
        self._log(f"  Output: {image.output_link}")

        await self._step(
            image, "nix build",
            ["nix", "build", target, "--out-link", image.output_link],
        )

        # The out-link points into the store; report the real file.
        output = self._local_output(image)
        try:
            resolved = output.resolve(strict=True)
        except OSError as e:
            raise BuildError(image.name, "resolve output", str(e)) from e
        return self._result(image, resolved)
